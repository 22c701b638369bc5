from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from agenda_bot.logging_config import get_logger
from agenda_bot.models import Conversation

logger = get_logger("conversation_service")

STALE_WINDOW = timedelta(hours=2)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def get_conversation(db: Session, tenant_id: UUID, customer_phone: str) -> Optional[Conversation]:
    return (
        db.query(Conversation)
        .filter(Conversation.tenant_id == tenant_id, Conversation.customer_phone == customer_phone)
        .first()
    )


def is_stale(conversation: Optional[Conversation], now: datetime, window: timedelta = STALE_WINDOW) -> bool:
    """True when the last update is older than ``window``. Naive timestamps are UTC."""
    if conversation is None or conversation.updated_at is None:
        return False
    return _as_utc(now) - _as_utc(conversation.updated_at) > window


def _apply(conversation: Conversation, state: str, slots: dict, message_id: Optional[str], now: datetime) -> None:
    conversation.state = state
    conversation.slots = dict(slots)
    if message_id:
        conversation.last_message_id = message_id
    conversation.updated_at = _as_utc(now)


def save_conversation(
    db: Session,
    tenant_id: UUID,
    customer_phone: str,
    state: str,
    slots: dict,
    message_id: Optional[str],
    now: Optional[datetime] = None,
) -> Conversation:
    """Upsert the row for (tenant, phone); last write wins.

    A concurrent first message from the same phone can insert the row between
    our read and our insert; the unique constraint turns that into an
    IntegrityError, which is retried as an update.
    """
    now = now or datetime.now(timezone.utc)
    conversation = get_conversation(db, tenant_id, customer_phone)
    if conversation is not None:
        _apply(conversation, state, slots, message_id, now)
        db.flush()
        return conversation

    conversation = Conversation(tenant_id=tenant_id, customer_phone=customer_phone)
    _apply(conversation, state, slots, message_id, now)
    savepoint = db.begin_nested()
    try:
        db.add(conversation)
        db.flush()
        savepoint.commit()
        return conversation
    except IntegrityError:
        savepoint.rollback()
        logger.info(
            "Conversation insert raced, updating existing row",
            extra={"context": {"tenant_id": str(tenant_id)}},
        )

    conversation = get_conversation(db, tenant_id, customer_phone)
    if conversation is None:
        raise RuntimeError("Conversation row vanished after unique violation")
    _apply(conversation, state, slots, message_id, now)
    db.flush()
    return conversation
