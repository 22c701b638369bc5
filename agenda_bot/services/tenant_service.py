import re
import unicodedata
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from agenda_bot.config import settings
from agenda_bot.logging_config import get_logger
from agenda_bot.models import Service, Tenant
from agenda_bot.services.parsers import resolve_timezone

logger = get_logger("tenant_service")

DEFAULT_INSTANCE_NAME = "agenda"


@dataclass(frozen=True)
class TenantConfig:
    id: UUID
    name: str
    address: Optional[str]
    timezone: str
    bot_enabled: bool
    instance_id: Optional[str]
    gateway_url: Optional[str]
    gateway_api_key: Optional[str]
    webhook_secret: Optional[str] = None
    templates: dict = field(default_factory=dict)


@dataclass(frozen=True)
class ServiceOption:
    id: str
    name: str
    price: Optional[Decimal]
    capacity: int = 1
    is_full_day: bool = False


def sanitize_instance_name(value: Optional[str]) -> str:
    """Lowercase, strip accents, keep ``[a-z0-9_-]``; at most 50 chars."""
    decomposed = unicodedata.normalize("NFKD", (value or "").strip().lower())
    ascii_only = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    cleaned = re.sub(r"[^a-z0-9_-]", "-", ascii_only)
    cleaned = re.sub(r"-+", "-", cleaned).strip("-")
    return cleaned[:50] or DEFAULT_INSTANCE_NAME


def to_tenant_config(tenant: Tenant) -> TenantConfig:
    tz = resolve_timezone(tenant.timezone, settings.default_timezone)
    return TenantConfig(
        id=tenant.id,
        name=tenant.name,
        address=tenant.address,
        timezone=tz.key,
        bot_enabled=bool(tenant.bot_enabled),
        instance_id=tenant.instance_id,
        gateway_url=tenant.gateway_url or settings.gateway_api_url,
        gateway_api_key=tenant.gateway_api_key or settings.gateway_api_key,
        webhook_secret=tenant.webhook_secret,
        templates=dict(tenant.templates or {}),
    )


def instance_name_for(config: TenantConfig) -> str:
    return sanitize_instance_name(config.instance_id or config.name)


def get_tenant(db: Session, tenant_id: UUID) -> Optional[TenantConfig]:
    tenant = db.query(Tenant).filter(Tenant.id == tenant_id).first()
    return to_tenant_config(tenant) if tenant else None


def resolve_tenant(db: Session, instance_id: Optional[str]) -> Optional[TenantConfig]:
    """Map a gateway instance id to a tenant.

    Matches the stored instance id case-insensitively, raw or sanitized. With
    no match, falls back to the only active bot-enabled tenant when exactly
    one exists.
    """
    active = db.query(Tenant).filter(Tenant.status == "active")

    if instance_id and instance_id.strip():
        raw = instance_id.strip().lower()
        tenant = active.filter(func.lower(Tenant.instance_id) == raw).first()
        if tenant is None:
            sanitized = sanitize_instance_name(instance_id)
            for candidate in active.filter(Tenant.instance_id.isnot(None)).all():
                if sanitize_instance_name(candidate.instance_id) == sanitized:
                    tenant = candidate
                    break
        if tenant is not None:
            return to_tenant_config(tenant)

    candidates = active.filter(Tenant.bot_enabled.is_(True)).limit(2).all()
    if len(candidates) == 1:
        logger.info(
            "Tenant resolved by single-tenant fallback",
            extra={"context": {"instance_id": instance_id, "tenant_id": str(candidates[0].id)}},
        )
        return to_tenant_config(candidates[0])

    logger.warning("Tenant not resolved", extra={"context": {"instance_id": instance_id}})
    return None


def list_active_services(db: Session, tenant_id: UUID) -> list[ServiceOption]:
    services = (
        db.query(Service)
        .filter(Service.tenant_id == tenant_id, Service.active.is_(True))
        .order_by(Service.position, Service.name)
        .all()
    )
    return [
        ServiceOption(
            id=str(service.id),
            name=service.name,
            price=service.price,
            capacity=max(int(service.capacity or 1), 1),
            is_full_day=bool(service.is_full_day),
        )
        for service in services
    ]
