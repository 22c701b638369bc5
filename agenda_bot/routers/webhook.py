from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from agenda_bot.config import settings
from agenda_bot.database import get_db
from agenda_bot.logging_config import LoggerAdapter, get_logger
from agenda_bot.schemas.webhook import WebhookResponse
from agenda_bot.services.alert_service import alert_critical, alert_warning
from agenda_bot.services.booking_service import BookingBackend, RpcBookingBackend
from agenda_bot.services.conversation_service import get_conversation, save_conversation
from agenda_bot.services.dialogue_service import DialogueContext, DialogueEngine
from agenda_bot.services.gateway_client import (
    CLASS_UNAUTHORIZED,
    CLASS_UNREACHABLE,
    GatewayClient,
    GatewayConfigError,
)
from agenda_bot.services.inbound_service import (
    InboundMessage,
    looks_like_message_event,
    normalize_inbound_event,
)
from agenda_bot.services.recipients import mask_recipient
from agenda_bot.services.tenant_service import (
    TenantConfig,
    instance_name_for,
    list_active_services,
    resolve_tenant,
)

logger = get_logger("webhook")

router = APIRouter()

GatewayFactory = Callable[[TenantConfig], GatewayClient]


# === DEPENDENCIES ===


def get_booking_backend() -> BookingBackend:
    return RpcBookingBackend()


def get_dialogue_engine(backend: BookingBackend = Depends(get_booking_backend)) -> DialogueEngine:
    return DialogueEngine(
        backend,
        origin_tag=settings.booking_origin_tag,
        default_timezone=settings.default_timezone,
        stale_window=timedelta(minutes=settings.conversation_stale_minutes),
    )


def _build_gateway_client(tenant: TenantConfig) -> GatewayClient:
    return GatewayClient.from_config(tenant.gateway_url, tenant.gateway_api_key)


def get_gateway_factory() -> GatewayFactory:
    return _build_gateway_client


def get_clock() -> Callable[[], datetime]:
    return lambda: datetime.now(timezone.utc)


# === REQUEST HELPERS ===


def _clean(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _request_secret(request: Request) -> Optional[str]:
    return _clean(request.headers.get("X-Webhook-Secret")) or _clean(request.query_params.get("webhook_secret"))


def _request_api_key(request: Request, payload: dict) -> Optional[str]:
    return (
        _clean(request.headers.get("apikey"))
        or _clean(request.query_params.get("apikey"))
        or _clean(payload.get("apikey"))
    )


def _query_instance(request: Request) -> Optional[str]:
    return (
        _clean(request.query_params.get("instanceId"))
        or _clean(request.query_params.get("instance_id"))
        or _clean(request.query_params.get("instance"))
    )


async def _read_payload(request: Request) -> Optional[dict]:
    raw = await request.body()
    if not raw or not raw.strip():
        return None
    try:
        payload = await request.json()
    except ValueError as e:
        logger.warning(
            "Webhook payload is not valid JSON",
            extra={"context": {"error": str(e), "body_preview": raw[:200].decode("utf-8", "ignore")}},
        )
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload format")
    return payload


def _authorize(request: Request, payload: dict, tenant: Optional[TenantConfig]) -> bool:
    """Return True for fully authorized requests.

    A matching shared secret authorizes anything. A matching gateway API key
    only authorizes inbound-message payloads (gateways cannot attach secret
    headers); for other events it returns False so the caller skips them.
    Anything else is a 401.
    """
    expected_secrets = {s for s in (settings.webhook_secret, tenant.webhook_secret if tenant else None) if s}
    provided_secret = _request_secret(request)
    if provided_secret and provided_secret in expected_secrets:
        return True

    expected_keys = {k for k in (tenant.gateway_api_key if tenant else None, settings.gateway_api_key) if k}
    provided_key = _request_api_key(request, payload)
    if provided_key and provided_key in expected_keys:
        return looks_like_message_event(payload)

    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook credentials")


# === PROCESSING ===


def _deliver_reply(
    tenant: TenantConfig,
    message: InboundMessage,
    reply: str,
    gateway_factory: GatewayFactory,
    log: LoggerAdapter,
) -> bool:
    try:
        client = gateway_factory(tenant)
    except GatewayConfigError as e:
        log.error("Gateway not usable, reply dropped", context={"code": e.code, "reason": e.reason})
        alert_warning("WhatsApp gateway misconfigured", {"tenant": tenant.name, "code": e.code, "reason": e.reason})
        return False

    instance = message.instance_id or instance_name_for(tenant)
    with client:
        result = client.send_text(instance, message.customer_phone, reply)

    if not result.ok:
        log.warning(
            "Reply delivery failed",
            context={"status": result.status, "classification": result.classification, "attempts": result.attempts},
        )
        if result.classification in {CLASS_UNAUTHORIZED, CLASS_UNREACHABLE}:
            alert_critical(
                "WhatsApp reply not delivered",
                {
                    "tenant": tenant.name,
                    "recipient": mask_recipient(message.customer_phone),
                    "classification": result.classification,
                    "hint": result.hint,
                },
            )
    return result.ok


def _process_message(
    db: Session,
    tenant: TenantConfig,
    message: InboundMessage,
    engine: DialogueEngine,
    gateway_factory: GatewayFactory,
    now: datetime,
) -> WebhookResponse:
    log = LoggerAdapter(
        logger,
        {"tenant_id": str(tenant.id), "phone": mask_recipient(message.customer_phone), "message_id": message.message_id},
    )

    stored = get_conversation(db, tenant.id, message.customer_phone)
    ctx = DialogueContext(
        tenant=tenant,
        customer_phone=message.customer_phone,
        services=list_active_services(db, tenant.id),
    )
    outcome = engine.handle(ctx, stored, message.text, message.message_id, now)

    if outcome.skipped_reason:
        log.info("Message skipped", context={"reason": outcome.skipped_reason})
        return WebhookResponse(success=True, message=outcome.skipped_reason)

    state, slots = outcome.dump()
    # Persist before replying: a redelivery after this point is caught by last_message_id.
    save_conversation(db, tenant.id, message.customer_phone, state, slots, message.message_id, now)
    db.commit()

    if outcome.reply is None:
        return WebhookResponse(success=True, message="no_reply", state=state)

    delivered = _deliver_reply(tenant, message, outcome.reply, gateway_factory, log)
    log.info("Message processed", context={"state": state, "delivered": delivered})
    return WebhookResponse(
        success=True,
        message="processed",
        state=state,
        bot_response=outcome.reply,
        delivered=delivered,
    )


async def _handle_webhook(
    request: Request,
    db: Session,
    engine: DialogueEngine,
    gateway_factory: GatewayFactory,
    clock: Callable[[], datetime],
    instance_id: Optional[str] = None,
) -> WebhookResponse:
    payload = await _read_payload(request)
    if payload is None:
        logger.info("Webhook probe with empty body")
        return WebhookResponse(success=True, message="Empty payload")

    parsed = normalize_inbound_event(payload, instance_override=instance_id or _query_instance(request))
    tenant = resolve_tenant(db, parsed.instance_id)

    if not _authorize(request, payload, tenant):
        return WebhookResponse(success=True, message="not_message_event")

    if parsed.skipped:
        logger.debug("Webhook skipped", extra={"context": {"reason": parsed.skip_reason}})
        return WebhookResponse(success=True, message=parsed.skip_reason)

    if tenant is None:
        return WebhookResponse(success=False, message="tenant_not_found")

    return await run_in_threadpool(_process_message, db, tenant, parsed.message, engine, gateway_factory, clock())


# === ROUTES ===


@router.post("/webhook", response_model=WebhookResponse)
async def handle_webhook(
    request: Request,
    db: Session = Depends(get_db),
    engine: DialogueEngine = Depends(get_dialogue_engine),
    gateway_factory: GatewayFactory = Depends(get_gateway_factory),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    """Inbound gateway event; the instance id comes from the payload or the query string."""
    return await _handle_webhook(request, db, engine, gateway_factory, clock)


@router.post("/webhook/{instance_id}", response_model=WebhookResponse)
async def handle_webhook_for_instance(
    instance_id: str,
    request: Request,
    db: Session = Depends(get_db),
    engine: DialogueEngine = Depends(get_dialogue_engine),
    gateway_factory: GatewayFactory = Depends(get_gateway_factory),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    return await _handle_webhook(request, db, engine, gateway_factory, clock, instance_id=instance_id)


@router.get("/webhook")
async def handle_webhook_probe():
    """Health probe for gateway UI checks; real webhooks must use POST."""
    return {"ok": True, "message": "Use POST with JSON payload"}
