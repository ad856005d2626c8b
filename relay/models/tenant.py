import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Text, Uuid, func
from sqlalchemy.orm import relationship, validates

from relay.database import Base, JSONType
from relay.services.phone import normalize_phone


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    business_type = Column(Text)  # salon, restaurant, clinic, ...
    whatsapp_number = Column(Text, unique=True)  # +14155238886
    whatsapp_active = Column(Boolean, nullable=False, default=True)
    timezone = Column(Text, nullable=False, default="Europe/Paris")
    services = Column(JSONType, nullable=False, default=list)
    assignment_strategy = Column(Text, nullable=False, default="manual")  # manual, round_robin, least_busy
    auto_assign_enabled = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    faqs = relationship("FAQ", back_populates="tenant")
    conversations = relationship("Conversation", back_populates="tenant")

    @validates("whatsapp_number")
    def _normalize_whatsapp_number(self, key, value):
        # Stored in the same +<digits> form the webhook resolves against.
        return normalize_phone(value)


class FAQ(Base):
    __tablename__ = "faqs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id"), nullable=False, index=True)
    question = Column(Text, nullable=False)
    answer = Column(Text, nullable=False)
    category = Column(Text)
    keywords = Column(JSONType, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    sort_order = Column(Integer, nullable=False, default=0)

    tenant = relationship("Tenant", back_populates="faqs")
