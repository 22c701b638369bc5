import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Text, UniqueConstraint, Uuid
from sqlalchemy.dialects.postgresql import JSONB

from agenda_bot.database import Base


class Conversation(Base):
    __tablename__ = "bot_conversations"
    __table_args__ = (UniqueConstraint("tenant_id", "customer_phone", name="uq_bot_conversations_tenant_phone"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id"), nullable=False)
    customer_phone = Column(Text, nullable=False)
    state = Column(Text, nullable=False, default="idle")  # see BookingState
    slots = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=dict)
    last_message_id = Column(Text)
    updated_at = Column(DateTime(timezone=True), nullable=False)
