"""Availability and booking collaborator.

The dialogue only depends on the ``BookingBackend`` protocol. The default
implementation talks to the booking database's public RPC functions over a
PostgREST-style HTTP API.
"""

from dataclasses import dataclass
from datetime import date
from typing import Any, Optional, Protocol

import httpx

from agenda_bot.config import settings
from agenda_bot.logging_config import get_logger
from agenda_bot.services.parsers import normalize_time
from agenda_bot.services.result import Result

logger = get_logger("booking_service")

SLOTS_FUNCTION = "public_get_slots_publicos"
CREATE_FUNCTION = "public_create_agendamento_publico"
CUSTOMER_NAME_FUNCTION = "public_get_cliente_nome"

FAILURE_DATE_IN_PAST = "date_in_past"
FAILURE_DATE_TOO_FAR = "date_too_far"
FAILURE_LEAD_TIME = "lead_time"
FAILURE_CAPACITY_EXHAUSTED = "capacity_exhausted"
FAILURE_SLOT_TAKEN = "slot_taken"
FAILURE_MONTHLY_LIMIT = "monthly_limit"
FAILURE_UNKNOWN = "unknown"
FAILURE_UNAVAILABLE = "unavailable"

# Checked in order; "capacidade_esgotada" must win over the looser "ocupado".
FAILURE_MARKERS = (
    ("data_passada", FAILURE_DATE_IN_PAST),
    ("data_muito_futura", FAILURE_DATE_TOO_FAR),
    ("antecedencia_minima", FAILURE_LEAD_TIME),
    ("capacidade_esgotada", FAILURE_CAPACITY_EXHAUSTED),
    ("limite_mensal_atingido", FAILURE_MONTHLY_LIMIT),
    ("ocupado", FAILURE_SLOT_TAKEN),
)


class BookingBackendError(Exception):
    """Availability or lookup call failed (transport error or rejected query)."""

    def __init__(self, message: str, code: str = FAILURE_UNAVAILABLE):
        self.code = code
        super().__init__(message)


@dataclass(frozen=True)
class SlotQuery:
    tenant_id: str
    date: date
    service_id: str
    staff_id: Optional[str] = None


@dataclass(frozen=True)
class SlotAvailability:
    time: str
    remaining_capacity: Optional[int] = None

    def fits(self, quantity: int) -> bool:
        return self.remaining_capacity is None or self.remaining_capacity >= quantity


@dataclass(frozen=True)
class BookingRequest:
    tenant_id: str
    date: date
    time: str
    service_id: str
    customer_name: str
    customer_phone: str
    quantity: int = 1
    origin_tag: str = "whatsapp_bot"
    staff_id: Optional[str] = None


class BookingBackend(Protocol):
    def get_available_slots(self, query: SlotQuery) -> list[SlotAvailability]: ...

    def create_booking(self, request: BookingRequest) -> Result[str]: ...

    def find_customer_name(self, tenant_id: str, phone: str) -> Optional[str]: ...


def classify_failure(error_text: str) -> str:
    lower = (error_text or "").lower()
    for marker, code in FAILURE_MARKERS:
        if marker in lower:
            return code
    return FAILURE_UNKNOWN


def parse_slot_rows(rows: Any) -> list[SlotAvailability]:
    """Accept plain ``"HH:MM"`` strings or ``{hora_inicio|hora, vagas_restantes}`` rows."""
    if not isinstance(rows, list):
        return []
    by_time: dict[str, Optional[int]] = {}
    for row in rows:
        remaining: Optional[int] = None
        if isinstance(row, str):
            raw_time = row.strip()
        elif isinstance(row, dict):
            raw_time = str(row.get("hora_inicio") or row.get("hora") or "").strip()
            vagas = row.get("vagas_restantes")
            if isinstance(vagas, (int, float)) and not isinstance(vagas, bool):
                remaining = max(0, int(vagas))
        else:
            continue
        if not raw_time:
            continue
        time_value = normalize_time(raw_time)
        if time_value not in by_time or by_time[time_value] is None:
            by_time[time_value] = remaining
    return [SlotAvailability(time=t, remaining_capacity=by_time[t]) for t in sorted(by_time)]


def _error_text(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(payload, dict):
        parts = [str(payload.get(key)) for key in ("message", "details", "hint", "code") if payload.get(key)]
        if parts:
            return " | ".join(parts)
    return str(payload)


def _booking_id(payload: Any) -> Optional[str]:
    if isinstance(payload, list):
        return _booking_id(payload[0]) if payload else None
    if isinstance(payload, dict):
        for key in ("id", "agendamento_id", "booking_id"):
            if payload.get(key):
                return str(payload[key])
        return None
    if payload in (None, ""):
        return None
    return str(payload)


def _customer_name(payload: Any) -> Optional[str]:
    if isinstance(payload, list):
        return _customer_name(payload[0]) if payload else None
    if isinstance(payload, dict):
        payload = payload.get("cliente_nome") or payload.get("nome")
    if isinstance(payload, str) and payload.strip():
        return payload.strip()
    return None


class RpcBookingBackend:
    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = (base_url or settings.booking_api_url or "").rstrip("/")
        self.api_key = api_key or settings.booking_api_key or ""
        self.timeout = timeout or settings.booking_timeout_seconds
        self.transport = transport

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _call(self, function: str, args: dict) -> httpx.Response:
        if not self.base_url:
            raise BookingBackendError("Booking API URL not configured")
        url = f"{self.base_url}/rest/v1/rpc/{function}"
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                return client.post(url, json=args, headers=self._headers())
        except httpx.HTTPError as e:
            logger.error(
                "Booking RPC transport error",
                extra={"context": {"function": function, "error": str(e)}},
            )
            raise BookingBackendError(str(e)) from e

    def get_available_slots(self, query: SlotQuery) -> list[SlotAvailability]:
        args = {
            "p_usuario_id": query.tenant_id,
            "p_data": query.date.isoformat(),
            "p_servico_id": query.service_id,
            "p_funcionario_id": query.staff_id,
        }
        response = self._call(SLOTS_FUNCTION, args)
        if response.status_code >= 400:
            text = _error_text(response)
            logger.warning(
                "Slot query rejected",
                extra={"context": {"status": response.status_code, "error": text, "date": args["p_data"]}},
            )
            raise BookingBackendError(text, code=classify_failure(text))
        try:
            rows = response.json()
        except ValueError:
            rows = []
        return parse_slot_rows(rows)

    def create_booking(self, request: BookingRequest) -> Result[str]:
        args: dict[str, Any] = {
            "p_usuario_id": request.tenant_id,
            "p_data": request.date.isoformat(),
            "p_hora_inicio": request.time,
            "p_servico_id": request.service_id,
            "p_cliente_nome": request.customer_name,
            "p_cliente_telefone": request.customer_phone,
            "p_funcionario_id": request.staff_id,
            "p_extras": {"origem": request.origin_tag},
        }
        if request.quantity > 1:
            args["p_qtd_vagas"] = request.quantity

        try:
            response = self._call(CREATE_FUNCTION, args)
        except BookingBackendError as e:
            return Result.failure(str(e), code=FAILURE_UNAVAILABLE)

        if response.status_code >= 400:
            text = _error_text(response)
            code = classify_failure(text)
            logger.warning(
                "Booking rejected",
                extra={"context": {"status": response.status_code, "code": code, "error": text}},
            )
            return Result.failure(text, code=code)

        try:
            payload = response.json()
        except ValueError:
            payload = response.text
        booking_id = _booking_id(payload)
        if not booking_id:
            return Result.failure("Booking created without id", code=FAILURE_UNKNOWN, details=payload)
        return Result.success(booking_id)

    def find_customer_name(self, tenant_id: str, phone: str) -> Optional[str]:
        response = self._call(CUSTOMER_NAME_FUNCTION, {"p_usuario_id": tenant_id, "p_telefone": phone})
        if response.status_code >= 400:
            raise BookingBackendError(_error_text(response), code=FAILURE_UNKNOWN)
        try:
            return _customer_name(response.json())
        except ValueError:
            return None
