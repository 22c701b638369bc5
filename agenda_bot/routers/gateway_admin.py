"""Admin endpoints for a tenant's WhatsApp gateway instance."""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from agenda_bot.config import settings
from agenda_bot.database import get_db
from agenda_bot.logging_config import get_logger
from agenda_bot.routers.webhook import GatewayFactory, get_gateway_factory
from agenda_bot.schemas.gateway import (
    ConnectRequest,
    GatewayActionResponse,
    GatewayConnectResponse,
    GatewayStatusResponse,
    SendTestRequest,
)
from agenda_bot.services.gateway_client import GatewayClient, GatewayConfigError, GatewayResponse
from agenda_bot.services.gateway_diagnostics import extract_instance_state
from agenda_bot.services.tenant_service import TenantConfig, get_tenant, instance_name_for

logger = get_logger("gateway_admin")

router = APIRouter(prefix="/gateway", tags=["gateway"])

CONFIG_ERROR_MESSAGES = {
    "gateway_not_configured": "Configure a URL e a API Key do gateway de WhatsApp.",
    "invalid_gateway_url": "A URL do gateway precisa ser pública (não pode ser localhost/IP privado).",
}


def _require_admin_token(provided: Optional[str]) -> None:
    expected = settings.admin_token
    if not expected:
        raise HTTPException(status_code=500, detail="ADMIN_TOKEN not configured")
    if not provided or provided != expected:
        raise HTTPException(status_code=401, detail="Invalid admin token")


def _load_tenant(db: Session, tenant_id: UUID) -> TenantConfig:
    tenant = get_tenant(db, tenant_id)
    if tenant is None:
        raise HTTPException(status_code=404, detail="Tenant not found")
    return tenant


def _open_client(tenant: TenantConfig, gateway_factory: GatewayFactory) -> GatewayClient:
    try:
        return gateway_factory(tenant)
    except GatewayConfigError as e:
        raise HTTPException(
            status_code=400,
            detail={
                "error": e.code,
                "reason": e.reason,
                "cleaned": e.cleaned,
                "message": CONFIG_ERROR_MESSAGES.get(e.code, e.code),
            },
        )


def _gateway_error(result: GatewayResponse, operation: str, tenant: TenantConfig) -> JSONResponse:
    logger.warning(
        "Gateway admin operation failed",
        extra={
            "context": {
                "operation": operation,
                "tenant_id": str(tenant.id),
                "status": result.status,
                "classification": result.classification,
            }
        },
    )
    return JSONResponse(status_code=result.status, content=result.to_error_dict())


@router.get("/{tenant_id}/status", response_model=GatewayStatusResponse)
async def gateway_status(
    tenant_id: UUID,
    db: Session = Depends(get_db),
    gateway_factory: GatewayFactory = Depends(get_gateway_factory),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    tenant = _load_tenant(db, tenant_id)
    instance = instance_name_for(tenant)
    with _open_client(tenant, gateway_factory) as client:
        result = await run_in_threadpool(client.connection_state, instance)
    if not result.ok:
        return _gateway_error(result, "status", tenant)
    return GatewayStatusResponse(ok=True, instance=instance, state=extract_instance_state(result.body))


@router.post("/{tenant_id}/connect", response_model=GatewayConnectResponse)
async def gateway_connect(
    tenant_id: UUID,
    body: Optional[ConnectRequest] = None,
    db: Session = Depends(get_db),
    gateway_factory: GatewayFactory = Depends(get_gateway_factory),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    """Start a session: QR code by default, pairing code when a number is sent."""
    _require_admin_token(x_admin_token)
    tenant = _load_tenant(db, tenant_id)
    instance = instance_name_for(tenant)
    number = body.number if body else None
    with _open_client(tenant, gateway_factory) as client:
        result = await run_in_threadpool(client.connect, instance, number)
    if not result.ok:
        return _gateway_error(result.error, "connect", tenant)
    return GatewayConnectResponse(
        ok=True,
        instance=instance,
        state=result.state,
        qr_base64=result.qr_base64,
        pairing_code=result.pairing_code,
        hint=result.hint,
    )


@router.post("/{tenant_id}/disconnect", response_model=GatewayActionResponse)
async def gateway_disconnect(
    tenant_id: UUID,
    db: Session = Depends(get_db),
    gateway_factory: GatewayFactory = Depends(get_gateway_factory),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    tenant = _load_tenant(db, tenant_id)
    instance = instance_name_for(tenant)
    with _open_client(tenant, gateway_factory) as client:
        result = await run_in_threadpool(client.disconnect, instance)
    if not result.ok:
        return _gateway_error(result, "disconnect", tenant)
    return GatewayActionResponse(ok=True, instance=instance, attempts=result.attempts)


@router.post("/{tenant_id}/send-test", response_model=GatewayActionResponse)
async def gateway_send_test(
    tenant_id: UUID,
    body: SendTestRequest,
    db: Session = Depends(get_db),
    gateway_factory: GatewayFactory = Depends(get_gateway_factory),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    tenant = _load_tenant(db, tenant_id)
    instance = instance_name_for(tenant)
    with _open_client(tenant, gateway_factory) as client:
        result = await run_in_threadpool(client.send_text, instance, body.number, body.text)
    if not result.ok:
        return _gateway_error(result, "send_test", tenant)
    return GatewayActionResponse(ok=True, instance=instance, attempts=result.attempts)
