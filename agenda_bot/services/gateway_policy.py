"""Request candidates and the short-circuit policy for the messaging gateway.

The gateway's base path and auth header are not known up front, so a
logical operation walks an ordered list of base URLs x auth variants. The
walk itself lives in ``gateway_client``; this module only builds the lists and
decides when to stop, so it can be tested without HTTP.
"""

import ipaddress
import re
import time
from dataclasses import dataclass, field
from typing import Callable, Optional
from urllib.parse import urlsplit, urlunsplit

API_SUFFIXES = ("", "/api", "/api/v2", "/api/v1", "/v2", "/v1")
UNREACHABLE_STATUSES = (502, 504)

_QUOTES = "'\"` \t\r\n"
_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)
_IPV4_RE = re.compile(r"^\d{1,3}(\.\d{1,3}){3}$")
_DEFAULT_PORTS = {"http": 80, "https": 443}


def clean_url(value: Optional[str]) -> str:
    """Trim quotes and trailing slashes; add ``https://`` (``http://`` for localhost) when no scheme."""
    raw = str(value or "").strip().strip(_QUOTES)
    if not raw:
        return ""
    if not _SCHEME_RE.match(raw):
        if re.match(r"^(localhost|127\.0\.0\.1)(:|/|$)", raw, re.IGNORECASE):
            raw = f"http://{raw}"
        else:
            raw = f"https://{raw}"
    return raw.rstrip("/")


def is_forbidden_host(hostname: Optional[str]) -> bool:
    host = (hostname or "").strip().lower()
    if not host:
        return True
    if host in {"localhost", "0.0.0.0"} or host.endswith(".local"):
        return True
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False
    return address.is_private or address.is_loopback or address.is_unspecified or address.is_link_local


@dataclass(frozen=True)
class UrlValidation:
    ok: bool
    cleaned: str = ""
    reason: Optional[str] = None
    hostname: Optional[str] = None


def validate_gateway_url(value: Optional[str]) -> UrlValidation:
    """Reject missing, malformed, non-HTTP and private/loopback gateway URLs."""
    cleaned = clean_url(value)
    if not cleaned:
        return UrlValidation(ok=False, reason="missing")
    try:
        parts = urlsplit(cleaned)
        hostname = parts.hostname
        parts.port  # raises on a non-numeric port
    except ValueError:
        return UrlValidation(ok=False, cleaned=cleaned, reason="invalid")
    if parts.scheme.lower() not in _DEFAULT_PORTS:
        return UrlValidation(ok=False, cleaned=cleaned, reason="invalid_protocol", hostname=hostname)
    if not hostname:
        return UrlValidation(ok=False, cleaned=cleaned, reason="invalid")
    if is_forbidden_host(hostname):
        return UrlValidation(ok=False, cleaned=cleaned, reason="local_address", hostname=hostname)
    return UrlValidation(ok=True, cleaned=cleaned, hostname=hostname)


def _swap_scheme(url: str) -> Optional[str]:
    lower = url.lower()
    if lower.startswith("https://"):
        return "http://" + url[len("https://") :]
    if lower.startswith("http://"):
        return "https://" + url[len("http://") :]
    return None


def _without_port(url: str) -> Optional[str]:
    parts = urlsplit(url)
    try:
        port = parts.port
    except ValueError:
        return None
    if not port or _DEFAULT_PORTS.get(parts.scheme.lower()) == port:
        return None
    host = parts.hostname or ""
    if ":" in host:
        host = f"[{host}]"
    return clean_url(urlunsplit((parts.scheme, host, parts.path, parts.query, parts.fragment)))


def _dedupe(values) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        if value and value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


def build_base_url_candidates(value: str) -> list[str]:
    """Expand a configured gateway URL into base URLs to probe, most likely first."""
    base = clean_url(value)
    if not base:
        return []

    hostname = urlsplit(base).hostname or ""
    is_ip = bool(_IPV4_RE.match(hostname)) or ":" in hostname
    alt_scheme = _swap_scheme(base)
    without_port = _without_port(base)
    alt_without_port = _swap_scheme(without_port) if without_port else None

    if without_port:
        # Hostnames usually sit behind a proxy on 443; bare IPs usually do not.
        if is_ip:
            roots = [base, without_port, alt_scheme, alt_without_port]
        else:
            roots = [without_port, base, alt_without_port, alt_scheme]
    else:
        roots = [base, alt_scheme]

    candidates: list[str] = []
    for root in _dedupe(roots):
        lower = root.lower()
        versioned = any(lower.endswith(v) or f"{v}/" in lower for v in ("/v1", "/v2"))
        api_prefixed = lower.endswith("/api") or "/api/" in lower
        if versioned or api_prefixed:
            candidates.append(root)
            continue
        candidates.extend(f"{root}{suffix}" for suffix in API_SUFFIXES)
    return _dedupe(candidates)


@dataclass(frozen=True)
class AuthVariant:
    kind: str
    headers: dict = field(default_factory=dict)
    params: dict = field(default_factory=dict)


AUTH_HEADER_TEMPLATES: tuple[tuple[str, Callable[[str], dict]], ...] = (
    ("apikey", lambda key: {"apikey": key}),
    ("apiKey", lambda key: {"apiKey": key}),
    ("x-api-key", lambda key: {"x-api-key": key}),
    ("x-api_key", lambda key: {"x-api_key": key}),
    ("authorization_bearer", lambda key: {"Authorization": f"Bearer {key}"}),
    ("authorization_raw", lambda key: {"Authorization": key}),
    ("token", lambda key: {"token": key}),
    ("x-access-token", lambda key: {"x-access-token": key}),
)

AUTH_QUERY_PARAMS = ("apikey", "apiKey", "token")


def key_forms(api_key: Optional[str]) -> list[str]:
    raw = str(api_key or "").strip()
    normalized = raw.strip(_QUOTES)
    return _dedupe([normalized, raw])


def build_auth_variants(api_key: Optional[str]) -> list[AuthVariant]:
    """Header variants for every key form, then query-parameter variants as a last resort."""
    keys = key_forms(api_key)
    if not keys:
        return [AuthVariant(kind="no_key")]

    variants: list[AuthVariant] = []
    for index, key in enumerate(keys):
        suffix = f"#{index + 1}" if len(keys) > 1 else ""
        for kind, build in AUTH_HEADER_TEMPLATES:
            variants.append(AuthVariant(kind=f"{kind}{suffix}", headers=build(key)))
    for index, key in enumerate(keys):
        suffix = f"#{index + 1}" if len(keys) > 1 else ""
        for param in AUTH_QUERY_PARAMS:
            variants.append(AuthVariant(kind=f"query_{param}{suffix}", params={param: key}))
    return variants


@dataclass
class GatewaySendAttempt:
    base_url: str
    auth_kind: str
    status: int
    recipient: Optional[str] = None
    text_variant: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"base_url": self.base_url, "auth_kind": self.auth_kind, "status": self.status}
        if self.recipient is not None:
            data["recipient"] = self.recipient
        if self.text_variant is not None:
            data["text_variant"] = self.text_variant
        return data


class AttemptPolicy:
    """Budget shared by every request of one logical gateway operation.

    Bounds the number of distinct base URLs and the wall-clock time, counts
    502/504 answers toward an "unreachable" short-circuit, and remembers the
    base URL / auth variant that last got a real answer so later requests in
    the same operation try them first.
    """

    def __init__(
        self,
        max_base_urls: int = 4,
        deadline_seconds: float = 35.0,
        request_timeout_seconds: float = 20.0,
        max_unreachable: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_base_urls = max_base_urls
        self.deadline_seconds = deadline_seconds
        self.request_timeout_seconds = request_timeout_seconds
        self.max_unreachable = max_unreachable
        self.clock = clock
        self.started_at = clock()
        self.base_urls: list[str] = []
        self.unreachable_count = 0
        self.preferred_base_url: Optional[str] = None
        self.preferred_auth_kind: Optional[str] = None
        self.attempts: list[GatewaySendAttempt] = []

    def elapsed(self) -> float:
        return self.clock() - self.started_at

    def remaining(self) -> float:
        return max(0.0, self.deadline_seconds - self.elapsed())

    @property
    def expired(self) -> bool:
        return self.elapsed() >= self.deadline_seconds

    @property
    def unreachable(self) -> bool:
        return self.unreachable_count >= self.max_unreachable

    def request_timeout(self) -> float:
        return max(0.001, min(self.request_timeout_seconds, self.remaining()))

    def admit_base_url(self, base_url: str) -> bool:
        """Reserve ``base_url`` against the cap; already-used URLs are always admitted."""
        if self.expired:
            return False
        if base_url in self.base_urls:
            return True
        if len(self.base_urls) >= self.max_base_urls:
            return False
        self.base_urls.append(base_url)
        return True

    def order_base_urls(self, candidates: list[str]) -> list[str]:
        if self.preferred_base_url in candidates:
            return [self.preferred_base_url] + [c for c in candidates if c != self.preferred_base_url]
        return list(candidates)

    def order_auth_variants(self, variants: list[AuthVariant]) -> list[AuthVariant]:
        preferred = [v for v in variants if v.kind == self.preferred_auth_kind]
        return preferred + [v for v in variants if v.kind != self.preferred_auth_kind]

    def record(self, attempt: GatewaySendAttempt) -> None:
        self.attempts.append(attempt)
        if attempt.status in UNREACHABLE_STATUSES:
            self.unreachable_count += 1

    def prefer(self, base_url: str, auth_kind: str) -> None:
        self.preferred_base_url = base_url
        self.preferred_auth_kind = auth_kind

    def attempts_as_dicts(self) -> list[dict]:
        return [attempt.to_dict() for attempt in self.attempts]
