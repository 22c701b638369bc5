import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from agenda_bot.database import Base


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="active")  # active, suspended
    address = Column(Text)
    timezone = Column(Text)
    bot_enabled = Column(Boolean, nullable=False, default=False)
    instance_id = Column(Text)
    gateway_url = Column(Text)
    gateway_api_key = Column(Text)
    webhook_secret = Column(Text)
    templates = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    services = relationship("Service", back_populates="tenant")
