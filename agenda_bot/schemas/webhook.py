from typing import Optional

from pydantic import BaseModel


class WebhookResponse(BaseModel):
    success: bool
    message: str
    state: Optional[str] = None
    bot_response: Optional[str] = None
    delivered: Optional[bool] = None
