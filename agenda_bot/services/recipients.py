"""Recipient address and message text variants for outbound sends."""

import re
from typing import Any, Iterable

RECIPIENT_SUFFIXES = ("@s.whatsapp.net", "@c.us")

_SURROGATES_RE = re.compile(r"[\ud800-\udfff]")
_VARIATION_SELECTORS_RE = re.compile(r"[\ufe0e\ufe0f]")
_NON_LATIN1_RE = re.compile(r"[^\t\n\r\x20-\x7e\xa0-\xff]")

RECIPIENT_ERROR_FRAGMENTS = (
    "quote command returned error",
    "jid",
    "not a whatsapp user",
    "is not on whatsapp",
    "invalid number",
    "number invalid",
)


def sanitize_phone(value: Any) -> str:
    return re.sub(r"\D", "", str(value or ""))


def _dedupe(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        value = value.strip()
        if value and value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


def build_recipient_candidates(raw: str, country_code: str = "55") -> list[str]:
    """Return recipient encodings to try, most likely first.

    A 10-11 digit local number also gets a country-code-prefixed base. Every
    base is offered bare, ``+``-prefixed and with both domain suffixes.
    """
    digits = sanitize_phone(raw)
    if not digits:
        return []

    bases = [digits]
    if country_code and not digits.startswith(country_code) and len(digits) in (10, 11):
        bases.append(f"{country_code}{digits}")

    candidates: list[str] = []
    for base in bases:
        candidates.append(base)
        candidates.append(f"+{base}")
        candidates.extend(f"{base}{suffix}" for suffix in RECIPIENT_SUFFIXES)
    return _dedupe(candidates)


def mask_recipient(value: str) -> str:
    """Keep only the last 4 digits visible."""
    digits = sanitize_phone(value)
    if not digits:
        return ""
    return "*" * max(0, len(digits) - 4) + digits[-4:]


def normalize_text(text: str) -> str:
    return str(text or "").replace("\r\n", "\n")


def strip_unsupported_chars(text: str) -> str:
    """Drop surrogates, variation selectors and anything outside Latin-1."""
    cleaned = _SURROGATES_RE.sub("", normalize_text(text))
    cleaned = _VARIATION_SELECTORS_RE.sub("", cleaned)
    return _NON_LATIN1_RE.sub("", cleaned)


def build_text_candidates(text: str) -> list[tuple[str, str]]:
    """Return ``(variant, text)`` pairs: the raw text, then a stripped copy if it differs."""
    raw = normalize_text(text)
    stripped = strip_unsupported_chars(raw)
    pairs = [("raw", raw)]
    if stripped != raw:
        pairs.append(("stripped", stripped))

    seen: set[str] = set()
    result: list[tuple[str, str]] = []
    for variant, value in pairs:
        value = value.strip()
        if value and value not in seen:
            seen.add(value)
            result.append((variant, value))
    return result


# === ERROR DETAILS ===


def unwrap_not_found(details: Any) -> Any:
    if isinstance(details, dict) and details.get("error") == "not_found" and "last" in details:
        return details["last"]
    return details


def extract_text_fragments(value: Any) -> list[str]:
    """Collect human-readable strings from an upstream error body."""
    if isinstance(value, str):
        return [value]
    if not value:
        return []
    if isinstance(value, list):
        return [fragment for item in value for fragment in extract_text_fragments(item)]
    if not isinstance(value, dict):
        return []

    fragments: list[str] = []
    for key in ("message", "error", "details", "response", "data", "description"):
        if key in value:
            fragments.extend(extract_text_fragments(value[key]))
    if fragments:
        return fragments
    return [fragment for item in value.values() for fragment in extract_text_fragments(item)]


def details_text(details: Any) -> str:
    return " | ".join(extract_text_fragments(unwrap_not_found(details))).lower()


def has_exists_false(value: Any) -> bool:
    if isinstance(value, list):
        return any(has_exists_false(item) for item in value)
    if not isinstance(value, dict):
        return False
    if value.get("exists") is False:
        return True
    return any(has_exists_false(item) for item in value.values())


def is_recipient_format_error(details: Any) -> bool:
    """True when the upstream rejected the recipient encoding rather than the request."""
    if has_exists_false(unwrap_not_found(details)):
        return True
    text = details_text(details)
    if not text:
        return False
    return any(fragment in text for fragment in RECIPIENT_ERROR_FRAGMENTS)
