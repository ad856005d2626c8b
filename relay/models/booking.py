import uuid

from sqlalchemy import Column, Date, DateTime, ForeignKey, Index, Text, Uuid, func

from relay.database import Base


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (Index("ix_bookings_tenant_slot", "tenant_id", "booking_date", "booking_time"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id"), nullable=False)
    conversation_id = Column(Uuid, ForeignKey("conversations.id"))
    customer_phone = Column(Text, nullable=False)
    customer_name = Column(Text)
    service = Column(Text)
    booking_date = Column(Date, nullable=False)
    booking_time = Column(Text, nullable=False)  # HH:MM, tenant local time
    status = Column(Text, nullable=False, default="confirmed")  # confirmed, cancelled, completed, no_show
    created_at = Column(DateTime(timezone=True), server_default=func.now())
