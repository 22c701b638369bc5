"""Normalize inbound gateway webhooks into a single message shape.

Gateway versions nest the message differently (``data.message`` vs
``data.message.message``, sender under ``key.remoteJid`` or flat keys...).
Each field is resolved by an ordered tuple of small extractors; the first one
returning a non-empty value wins.
"""

import re
from dataclasses import dataclass
from typing import Any, Callable, Optional

from agenda_bot.logging_config import get_logger

logger = get_logger("inbound_service")

GROUP_SUFFIX = "@g.us"
MESSAGE_EVENTS = {"messages.upsert", "messages_upsert", "message", "messages"}

SKIP_NOT_MESSAGE_EVENT = "not_message_event"
SKIP_MISSING_SENDER = "missing_sender"
SKIP_FROM_BOT = "from_bot"
SKIP_GROUP_MESSAGE = "group_message"
SKIP_MISSING_TEXT = "missing_text"

Extractor = Callable[[dict], Any]


@dataclass(frozen=True)
class InboundMessage:
    instance_id: Optional[str]
    sender_address: str
    customer_phone: str
    message_id: Optional[str]
    text: str
    is_from_bot: bool = False
    is_group: bool = False


@dataclass(frozen=True)
class InboundParseResult:
    message: Optional[InboundMessage] = None
    skip_reason: Optional[str] = None
    instance_id: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return self.message is None


def _dig(payload: Any, *path: str) -> Any:
    current = payload
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _data(payload: dict) -> dict:
    data = payload.get("data")
    if isinstance(data, list) and data and isinstance(data[0], dict):
        return data[0]
    return data if isinstance(data, dict) else {}


def _message_node(payload: dict) -> dict:
    """Return the innermost message content object (one or two levels deep)."""
    message = _data(payload).get("message")
    if not isinstance(message, dict):
        return {}
    inner = message.get("message")
    if isinstance(inner, dict):
        return inner
    return message


def _key_node(payload: dict) -> dict:
    data = _data(payload)
    for key in (data.get("key"), _dig(data, "message", "key")):
        if isinstance(key, dict):
            return key
    return {}


# --- instance id ---

INSTANCE_EXTRACTORS: tuple[Extractor, ...] = (
    lambda p: _text(p.get("instance")),
    lambda p: _text(_dig(p, "instance", "instanceName")),
    lambda p: _text(p.get("instanceName")),
    lambda p: _text(p.get("instanceId")),
    lambda p: _text(p.get("instance_id")),
    lambda p: _text(_data(p).get("instance")),
    lambda p: _text(_data(p).get("instanceId")),
    lambda p: _text(_data(p).get("instanceName")),
)

# --- sender ---

SENDER_EXTRACTORS: tuple[Extractor, ...] = (
    lambda p: _text(_key_node(p).get("remoteJid")),
    lambda p: _text(_data(p).get("remoteJid")),
    lambda p: _text(_data(p).get("from")),
    lambda p: _text(_data(p).get("chatId")),
    lambda p: _text(p.get("remoteJid")),
    lambda p: _text(p.get("from")),
    # Some gateways put the instance owner here; keep it last.
    lambda p: _text(p.get("sender")),
)

# --- from bot ---

FROM_BOT_EXTRACTORS: tuple[Extractor, ...] = (
    lambda p: _key_node(p).get("fromMe"),
    lambda p: _data(p).get("fromMe"),
    lambda p: p.get("fromMe"),
)

# --- message id ---

MESSAGE_ID_EXTRACTORS: tuple[Extractor, ...] = (
    lambda p: _text(_key_node(p).get("id")),
    lambda p: _text(_data(p).get("messageId")),
    lambda p: _text(_data(p).get("id")),
    lambda p: _text(p.get("messageId")),
    lambda p: _text(p.get("message_id")),
)

# --- text, in priority order ---

TEXT_EXTRACTORS: tuple[Extractor, ...] = (
    lambda p: _text(_message_node(p).get("conversation")),
    lambda p: _text(_dig(_message_node(p), "extendedTextMessage", "text")),
    lambda p: _text(_dig(_message_node(p), "imageMessage", "caption")),
    lambda p: _text(_dig(_message_node(p), "videoMessage", "caption")),
    lambda p: _text(_dig(_message_node(p), "documentMessage", "caption")),
    lambda p: _text(_dig(_message_node(p), "buttonsResponseMessage", "selectedDisplayText")),
    lambda p: _text(_dig(_message_node(p), "buttonsResponseMessage", "selectedButtonId")),
    lambda p: _text(_dig(_message_node(p), "listResponseMessage", "title")),
    lambda p: _text(_dig(_message_node(p), "listResponseMessage", "singleSelectReply", "selectedRowId")),
    lambda p: _text(_dig(_message_node(p), "templateButtonReplyMessage", "selectedDisplayText")),
    lambda p: _text(_data(p).get("message")),
    lambda p: _text(_data(p).get("text")),
    lambda p: _text(_data(p).get("body")),
    lambda p: _text(p.get("text")),
    lambda p: _text(p.get("body")),
)


def first_match(payload: dict, extractors: tuple[Extractor, ...]) -> Any:
    for extractor in extractors:
        value = extractor(payload)
        if value is not None and value != "":
            return value
    return None


def _coerce_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes"}
    return bool(value)


def phone_from_address(address: str) -> str:
    local = address.split("@", 1)[0]
    # Multi-device ids look like "5511999999999:12@s.whatsapp.net".
    local = local.split(":", 1)[0]
    return re.sub(r"\D", "", local)


def event_name(payload: dict) -> Optional[str]:
    raw = payload.get("event") or payload.get("type")
    if not isinstance(raw, str) or not raw.strip():
        return None
    return raw.strip().lower().replace("_", ".")


def looks_like_message_event(payload: Any) -> bool:
    """True when the payload has the shape of an inbound chat message."""
    if not isinstance(payload, dict):
        return False
    name = event_name(payload)
    if name and name not in {e.replace("_", ".") for e in MESSAGE_EVENTS}:
        return False
    return bool(first_match(payload, SENDER_EXTRACTORS)) and bool(_key_node(payload) or _message_node(payload))


def normalize_inbound_event(payload: Any, *, instance_override: Optional[str] = None) -> InboundParseResult:
    if not isinstance(payload, dict):
        return InboundParseResult(skip_reason=SKIP_NOT_MESSAGE_EVENT)

    instance_id = first_match(payload, INSTANCE_EXTRACTORS) or _text(instance_override)

    name = event_name(payload)
    if name and name not in {e.replace("_", ".") for e in MESSAGE_EVENTS}:
        return InboundParseResult(skip_reason=SKIP_NOT_MESSAGE_EVENT, instance_id=instance_id)

    sender = first_match(payload, SENDER_EXTRACTORS)
    if not sender:
        return InboundParseResult(skip_reason=SKIP_MISSING_SENDER, instance_id=instance_id)

    if _coerce_flag(first_match(payload, FROM_BOT_EXTRACTORS)):
        return InboundParseResult(skip_reason=SKIP_FROM_BOT, instance_id=instance_id)

    if GROUP_SUFFIX in sender:
        return InboundParseResult(skip_reason=SKIP_GROUP_MESSAGE, instance_id=instance_id)

    text = first_match(payload, TEXT_EXTRACTORS)
    if not text:
        return InboundParseResult(skip_reason=SKIP_MISSING_TEXT, instance_id=instance_id)

    phone = phone_from_address(sender)
    if not phone:
        return InboundParseResult(skip_reason=SKIP_MISSING_SENDER, instance_id=instance_id)

    message = InboundMessage(
        instance_id=instance_id,
        sender_address=sender,
        customer_phone=phone,
        message_id=first_match(payload, MESSAGE_ID_EXTRACTORS),
        text=text,
    )
    return InboundParseResult(message=message, instance_id=instance_id)
