from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Optional, Union


class BookingState(str, Enum):
    IDLE = "idle"
    AWAIT_SERVICE = "await_service"
    AWAIT_QUANTITY = "await_quantity"
    AWAIT_DATE = "await_date"
    AWAIT_TIME = "await_time"
    AWAIT_NAME = "await_name"
    AWAIT_CONFIRM = "await_confirm"


@dataclass(frozen=True)
class ServiceChoice:
    id: str
    name: str
    capacity: int = 1
    is_full_day: bool = False


@dataclass(frozen=True)
class Idle:
    state = BookingState.IDLE


@dataclass(frozen=True)
class AwaitService:
    state = BookingState.AWAIT_SERVICE


@dataclass(frozen=True)
class AwaitQuantity:
    service: ServiceChoice
    state = BookingState.AWAIT_QUANTITY


@dataclass(frozen=True)
class AwaitDate:
    service: ServiceChoice
    quantity: int
    state = BookingState.AWAIT_DATE


@dataclass(frozen=True)
class AwaitTime:
    service: ServiceChoice
    quantity: int
    date: date
    state = BookingState.AWAIT_TIME


@dataclass(frozen=True)
class AwaitName:
    service: ServiceChoice
    quantity: int
    date: date
    time: str
    state = BookingState.AWAIT_NAME


@dataclass(frozen=True)
class AwaitConfirm:
    service: ServiceChoice
    quantity: int
    date: date
    time: str
    customer_name: str
    state = BookingState.AWAIT_CONFIRM


Dialogue = Union[Idle, AwaitService, AwaitQuantity, AwaitDate, AwaitTime, AwaitName, AwaitConfirm]


VALID_TRANSITIONS = {
    BookingState.IDLE: [BookingState.IDLE, BookingState.AWAIT_SERVICE],
    BookingState.AWAIT_SERVICE: [
        BookingState.IDLE,
        BookingState.AWAIT_SERVICE,
        BookingState.AWAIT_QUANTITY,
        BookingState.AWAIT_DATE,
    ],
    BookingState.AWAIT_QUANTITY: [
        BookingState.IDLE,
        BookingState.AWAIT_SERVICE,
        BookingState.AWAIT_QUANTITY,
        BookingState.AWAIT_DATE,
    ],
    BookingState.AWAIT_DATE: [
        BookingState.IDLE,
        BookingState.AWAIT_SERVICE,
        BookingState.AWAIT_DATE,
        BookingState.AWAIT_TIME,
        BookingState.AWAIT_NAME,
        BookingState.AWAIT_CONFIRM,
    ],
    BookingState.AWAIT_TIME: [
        BookingState.IDLE,
        BookingState.AWAIT_SERVICE,
        BookingState.AWAIT_DATE,
        BookingState.AWAIT_TIME,
        BookingState.AWAIT_NAME,
        BookingState.AWAIT_CONFIRM,
    ],
    BookingState.AWAIT_NAME: [
        BookingState.IDLE,
        BookingState.AWAIT_SERVICE,
        BookingState.AWAIT_NAME,
        BookingState.AWAIT_CONFIRM,
    ],
    BookingState.AWAIT_CONFIRM: [
        BookingState.IDLE,
        BookingState.AWAIT_SERVICE,
        BookingState.AWAIT_DATE,
        BookingState.AWAIT_CONFIRM,
    ],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: BookingState, to_state: BookingState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: BookingState, to_state: BookingState) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(current: Dialogue, target: Dialogue) -> Dialogue:
    """Move to ``target``. Raises InvalidTransitionError if not allowed."""
    if not can_transition(current.state, target.state):
        raise InvalidTransitionError(current.state, target.state)
    return target


# === SERIALIZATION ===


def _service_slots(service: ServiceChoice) -> dict[str, Any]:
    return {
        "service_id": service.id,
        "service_name": service.name,
        "capacity": service.capacity,
        "is_full_day": service.is_full_day,
    }


def dump_dialogue(dialogue: Dialogue) -> tuple[str, dict[str, Any]]:
    """Flatten a dialogue into the stored ``(state, slots)`` pair."""
    slots: dict[str, Any] = {}
    service = getattr(dialogue, "service", None)
    if service is not None:
        slots.update(_service_slots(service))
    for field_name in ("quantity", "time", "customer_name"):
        value = getattr(dialogue, field_name, None)
        if value is not None:
            slots[field_name] = value
    booking_date = getattr(dialogue, "date", None)
    if booking_date is not None:
        slots["date"] = booking_date.isoformat()
    return dialogue.state.value, slots


def _load_service(slots: dict) -> Optional[ServiceChoice]:
    service_id = slots.get("service_id")
    name = slots.get("service_name")
    if not service_id or not name:
        return None
    try:
        capacity = max(int(slots.get("capacity") or 1), 1)
    except (TypeError, ValueError):
        capacity = 1
    return ServiceChoice(
        id=str(service_id),
        name=str(name),
        capacity=capacity,
        is_full_day=bool(slots.get("is_full_day")),
    )


def _load_quantity(slots: dict) -> Optional[int]:
    try:
        quantity = int(slots.get("quantity"))
    except (TypeError, ValueError):
        return None
    return quantity if quantity > 0 else None


def _load_date(slots: dict) -> Optional[date]:
    raw = slots.get("date")
    if not isinstance(raw, str):
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError:
        return None


def _load_text(slots: dict, key: str) -> Optional[str]:
    value = slots.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def load_dialogue(state: Optional[str], slots: Optional[dict]) -> Dialogue:
    """Rebuild a dialogue from a stored row.

    Rows whose slots do not carry every field their state needs load as
    ``Idle``, so a half-written or legacy row can never reach confirmation.
    """
    try:
        booking_state = BookingState(state or BookingState.IDLE.value)
    except ValueError:
        return Idle()
    slots = slots if isinstance(slots, dict) else {}

    if booking_state == BookingState.IDLE:
        return Idle()
    if booking_state == BookingState.AWAIT_SERVICE:
        return AwaitService()

    service = _load_service(slots)
    if service is None:
        return Idle()
    if booking_state == BookingState.AWAIT_QUANTITY:
        return AwaitQuantity(service=service)

    quantity = _load_quantity(slots)
    if quantity is None:
        return Idle()
    if booking_state == BookingState.AWAIT_DATE:
        return AwaitDate(service=service, quantity=quantity)

    booking_date = _load_date(slots)
    if booking_date is None:
        # Date lost mid-flow: ask for it again instead of dropping the service.
        if booking_state == BookingState.AWAIT_TIME:
            return AwaitDate(service=service, quantity=quantity)
        return Idle()
    if booking_state == BookingState.AWAIT_TIME:
        return AwaitTime(service=service, quantity=quantity, date=booking_date)

    time_value = _load_text(slots, "time")
    if time_value is None:
        return Idle()
    if booking_state == BookingState.AWAIT_NAME:
        return AwaitName(service=service, quantity=quantity, date=booking_date, time=time_value)

    customer_name = _load_text(slots, "customer_name")
    if customer_name is None:
        return Idle()
    return AwaitConfirm(
        service=service,
        quantity=quantity,
        date=booking_date,
        time=time_value,
        customer_name=customer_name,
    )
