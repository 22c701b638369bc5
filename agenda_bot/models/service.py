import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Integer, Numeric, Text, Uuid
from sqlalchemy.orm import relationship

from agenda_bot.database import Base


class Service(Base):
    __tablename__ = "services"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id"), nullable=False)
    name = Column(Text, nullable=False)
    price = Column(Numeric(10, 2))
    capacity = Column(Integer, nullable=False, default=1)  # seats per time slot
    is_full_day = Column(Boolean, nullable=False, default=False)
    active = Column(Boolean, nullable=False, default=True)
    position = Column(Integer, nullable=False, default=0)

    tenant = relationship("Tenant", back_populates="services")
