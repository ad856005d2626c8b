import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Text, Uuid, func

from relay.database import Base


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id"), nullable=False, index=True)
    type = Column(Text, nullable=False)
    title = Column(Text, nullable=False)
    message = Column(Text, nullable=False)
    booking_id = Column(Uuid, ForeignKey("bookings.id"))
    conversation_id = Column(Uuid, ForeignKey("conversations.id"))
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
