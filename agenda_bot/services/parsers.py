"""Pattern parsers for the booking dialogue (pt-BR conventions).

Everything here is pure: callers pass "today" explicitly so results never
depend on the server clock or timezone. Text is always run through
``normalize_for_matching`` first, so case and accents do not matter.
"""

import re
import unicodedata
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

MONTHS = {
    "janeiro": 1,
    "fevereiro": 2,
    "marco": 3,
    "abril": 4,
    "maio": 5,
    "junho": 6,
    "julho": 7,
    "agosto": 8,
    "setembro": 9,
    "outubro": 10,
    "novembro": 11,
    "dezembro": 12,
}

WEEKDAYS = {
    "segunda": 0,
    "terca": 1,
    "quarta": 2,
    "quinta": 3,
    "sexta": 4,
    "sabado": 5,
    "domingo": 6,
}

NUMBER_WORDS = {
    "um": 1,
    "uma": 1,
    "dois": 2,
    "duas": 2,
    "tres": 3,
    "quatro": 4,
    "cinco": 5,
    "seis": 6,
    "sete": 7,
    "oito": 8,
    "nove": 9,
    "dez": 10,
}

AFFIRMATIVE_PHRASES = (
    "sim",
    "s",
    "confirmar",
    "confirmo",
    "confirma",
    "confirmado",
    "ok",
    "okay",
    "pode",
    "pode ser",
    "isso",
    "certo",
    "claro",
    "beleza",
    "fechado",
    "positivo",
    "yes",
)

NEGATIVE_PHRASES = (
    "nao",
    "n",
    "cancelar",
    "cancela",
    "cancelo",
    "sair",
    "parar",
    "pare",
    "desistir",
    "desisto",
    "negativo",
)
# "no" is also the pt-BR contraction "on the" ("no sabado"), so it only counts alone.
NEGATIVE_EXACT = frozenset({"no"})

NUMERIC_DATE_RE = re.compile(r"(?<!\d)(\d{1,2})[/-](\d{1,2})(?:[/-](\d{2}|\d{4}))?(?!\d)")
DAY_MONTH_RE = re.compile(r"(?<!\d)(\d{1,2})\s*(?:de\s+)?([a-z]{3,})\.?(?:\s+(?:de\s+)?(\d{4}))?")
MONTH_DAY_RE = re.compile(r"\b([a-z]{3,})\.?\s+(?:dia\s+)?(\d{1,2})(?!\d)")
WEEKDAY_RE = re.compile(r"\b(" + "|".join(WEEKDAYS) + r")(?:[- ]feira)?\b")
BARE_DAY_RE = re.compile(r"^(?:dia\s+)?(\d{1,2})$|\bdia\s+(\d{1,2})(?!\d)")
TIME_RE = re.compile(r"(?<![\d:/])(\d{1,2})(?:\s*(?::|h)\s*(\d{2}))?(?:\s*h(?:rs?|oras?)?)?(?![\d:/])")
QUANTITY_RE = re.compile(r"(?<!\d)(\d{1,3})(?!\d)")

BOOKING_TRIGGER_RE = re.compile(
    r"^(?:(?:oi|ola|bom dia|boa tarde|boa noite)[\s,!.]+)?"
    r"(?:(?:eu\s+)?(?:quero|queria|gostaria de|preciso)\s+)?"
    r"(?:agendar|agendamento|marcar|reservar)\b"
)
PRICE_REQUEST_RE = re.compile(
    r"\b(precos?|valor(?:es)?|quanto custa|quanto e|tabela|servicos|catalogo|cardapio|lista|opcoes)\b"
)
TIMES_REQUEST_RE = re.compile(r"\b(horarios?|quais horas|que horas|disponive(?:l|is)|vagas|opcoes)\b")


def normalize_for_matching(text: str) -> str:
    """Casefold, strip diacritics, collapse whitespace and trim edge punctuation."""
    if not text:
        return ""

    decomposed = unicodedata.normalize("NFKD", text)
    without_marks = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    normalized = without_marks.strip().casefold()
    normalized = re.sub(r"\s+", " ", normalized)
    # "Não!" -> "nao", "...25/12?" -> "25/12"
    normalized = re.sub(r"^[^\w]+|[^\w]+$", "", normalized)
    return normalized


def _words(normalized: str) -> list[str]:
    return re.findall(r"[a-z0-9]+", normalized)


def _starts_with_phrase(text: str, phrases: Iterable[str]) -> bool:
    words = _words(normalize_for_matching(text))
    if not words:
        return False
    for phrase in phrases:
        phrase_words = phrase.split()
        if words[: len(phrase_words)] == phrase_words:
            return True
    return False


def is_affirmative(text: str) -> bool:
    return _starts_with_phrase(text, AFFIRMATIVE_PHRASES)


def is_negative(text: str) -> bool:
    if normalize_for_matching(text) in NEGATIVE_EXACT:
        return True
    return _starts_with_phrase(text, NEGATIVE_PHRASES)


def is_booking_trigger(text: str) -> bool:
    return bool(BOOKING_TRIGGER_RE.search(normalize_for_matching(text)))


def is_price_request(text: str) -> bool:
    return bool(PRICE_REQUEST_RE.search(normalize_for_matching(text)))


def is_times_request(text: str) -> bool:
    return bool(TIMES_REQUEST_RE.search(normalize_for_matching(text)))


def resolve_timezone(name: Optional[str], default: str) -> ZoneInfo:
    for candidate in (name, default):
        if not candidate:
            continue
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            continue
    return ZoneInfo("UTC")


def today_in_timezone(tz: ZoneInfo, now: Optional[datetime] = None) -> date:
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    return current.astimezone(tz).date()


def _month_from_token(token: str) -> Optional[int]:
    token = token.rstrip(".")
    if token in MONTHS:
        return MONTHS[token]
    if len(token) in (3, 4):
        for name, number in MONTHS.items():
            if name.startswith(token):
                return number
    return None


def _build_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _coerce_year(raw: Optional[str], today: date) -> int:
    if not raw:
        return today.year
    year = int(raw)
    return 2000 + year if year < 100 else year


def _not_past(value: Optional[date], today: date) -> Optional[date]:
    if value is None or value < today:
        return None
    return value


def _parse_numeric_date(normalized: str, today: date) -> tuple[bool, Optional[date]]:
    match = NUMERIC_DATE_RE.search(normalized)
    if not match:
        return False, None
    day, month = int(match.group(1)), int(match.group(2))
    value = _build_date(_coerce_year(match.group(3), today), month, day)
    return True, _not_past(value, today)


def _parse_month_name_date(normalized: str, today: date) -> tuple[bool, Optional[date]]:
    for match in DAY_MONTH_RE.finditer(normalized):
        month = _month_from_token(match.group(2))
        if month is None:
            continue
        value = _build_date(_coerce_year(match.group(3), today), month, int(match.group(1)))
        return True, _not_past(value, today)

    for match in MONTH_DAY_RE.finditer(normalized):
        month = _month_from_token(match.group(1))
        if month is None:
            continue
        value = _build_date(today.year, month, int(match.group(2)))
        return True, _not_past(value, today)

    return False, None


def _parse_relative_day(normalized: str, today: date) -> tuple[bool, Optional[date]]:
    words = _words(normalized)
    if "depois" in words and "amanha" in words:
        return True, today + timedelta(days=2)
    if "amanha" in words:
        return True, today + timedelta(days=1)
    if "hoje" in words:
        return True, today
    return False, None


def _parse_weekday(normalized: str, today: date) -> tuple[bool, Optional[date]]:
    match = WEEKDAY_RE.search(normalized)
    if not match:
        return False, None
    target = WEEKDAYS[match.group(1)]
    candidate = today + timedelta(days=(target - today.weekday()) % 7)
    # Only the rest of the current month is offered.
    if candidate.month != today.month:
        return True, None
    return True, candidate


def _parse_bare_day(normalized: str, today: date) -> tuple[bool, Optional[date]]:
    match = BARE_DAY_RE.search(normalized)
    if not match:
        return False, None
    day = int(match.group(1) or match.group(2))
    value = _build_date(today.year, today.month, day)
    return True, _not_past(value, today)


DATE_PARSERS = (
    _parse_numeric_date,
    _parse_month_name_date,
    _parse_relative_day,
    _parse_weekday,
    _parse_bare_day,
)


def parse_date(text: str, today: date) -> Optional[date]:
    """Parse a date expression relative to ``today``.

    The first form that matches decides the outcome: a matched but invalid
    or past date fails instead of falling through to looser forms.
    """
    normalized = normalize_for_matching(text)
    if not normalized:
        return None
    for parser in DATE_PARSERS:
        matched, value = parser(normalized, today)
        if matched:
            return value
    return None


def parse_time(text: str) -> Optional[str]:
    """Parse ``H``, ``HH``, ``H:MM``, ``HH:MM`` or ``HhMM`` into ``HH:MM``."""
    normalized = normalize_for_matching(text)
    for match in TIME_RE.finditer(normalized):
        hour = int(match.group(1))
        minute = int(match.group(2)) if match.group(2) else 0
        if 0 <= hour <= 23 and 0 <= minute <= 59:
            return f"{hour:02d}:{minute:02d}"
    return None


def parse_quantity(text: str) -> Optional[int]:
    normalized = normalize_for_matching(text)
    match = QUANTITY_RE.search(normalized)
    if match:
        return int(match.group(1))
    for word in _words(normalized):
        if word in NUMBER_WORDS:
            return NUMBER_WORDS[word]
    return None


def normalize_time(value: str) -> str:
    """Pad ``9:5`` / ``09:00:00`` style values to ``HH:MM``."""
    raw = str(value or "").strip()
    parts = raw.split(":")
    if len(parts) < 2:
        return raw
    return f"{parts[0].strip().zfill(2)}:{parts[1].strip().zfill(2)}"


def group_times(times: Iterable[str]) -> list[tuple[str, list[str]]]:
    """Group ``HH:MM`` values into morning / afternoon / evening buckets."""
    groups: dict[str, list[str]] = {"Manhã": [], "Tarde": [], "Noite": []}
    for value in sorted(set(times)):
        hour = int(value.split(":")[0])
        if hour < 12:
            groups["Manhã"].append(value)
        elif hour < 18:
            groups["Tarde"].append(value)
        else:
            groups["Noite"].append(value)
    return [(label, values) for label, values in groups.items() if values]
