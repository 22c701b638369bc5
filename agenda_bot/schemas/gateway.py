from typing import Any, Optional

from pydantic import BaseModel, field_validator


class ConnectRequest(BaseModel):
    number: Optional[str] = None


class SendTestRequest(BaseModel):
    number: str
    text: str

    @field_validator("number", "text")
    @classmethod
    def not_blank(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("must not be empty")
        return value


class GatewayStatusResponse(BaseModel):
    ok: bool
    instance: str
    state: Optional[str] = None


class GatewayConnectResponse(BaseModel):
    ok: bool
    instance: str
    state: Optional[str] = None
    qr_base64: Optional[str] = None
    pairing_code: Optional[str] = None
    hint: Optional[str] = None


class GatewayActionResponse(BaseModel):
    ok: bool
    instance: str
    attempts: list[dict[str, Any]] = []
