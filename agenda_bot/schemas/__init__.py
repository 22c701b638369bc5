from agenda_bot.schemas.gateway import (
    ConnectRequest,
    GatewayActionResponse,
    GatewayConnectResponse,
    GatewayStatusResponse,
    SendTestRequest,
)
from agenda_bot.schemas.webhook import WebhookResponse

__all__ = [
    "WebhookResponse",
    "ConnectRequest",
    "SendTestRequest",
    "GatewayStatusResponse",
    "GatewayConnectResponse",
    "GatewayActionResponse",
]
