from agenda_bot.models.conversation import Conversation
from agenda_bot.models.service import Service
from agenda_bot.models.tenant import Tenant

__all__ = [
    "Tenant",
    "Service",
    "Conversation",
]
