import uuid

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, Text, Uuid
from sqlalchemy.orm import relationship

from relay.database import Base, JSONType


class Message(Base):
    __tablename__ = "messages"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Uuid, ForeignKey("conversations.id"), nullable=False, index=True)
    tenant_id = Column(Uuid, ForeignKey("tenants.id"), nullable=False)
    direction = Column(Text, nullable=False)  # inbound, outbound
    content = Column(Text, nullable=False)
    provider_message_id = Column(Text, unique=True)
    status = Column(Text, nullable=False, default="queued")  # queued, sent, delivered, read, failed
    intent = Column(Text)
    confidence = Column(Float)
    tier_used = Column(Integer)
    message_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False)
    status_updated_at = Column(DateTime(timezone=True))

    conversation = relationship("Conversation", back_populates="messages")
