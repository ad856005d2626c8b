import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, Text, Uuid, func, text
from sqlalchemy.orm import relationship

from relay.database import Base, JSONType


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        Index("ix_conversations_tenant_phone", "tenant_id", "customer_phone"),
        # At most one non-archived conversation per customer; a concurrent insert fails instead of forking history.
        Index(
            "uq_conversations_open_customer",
            "tenant_id",
            "customer_phone",
            unique=True,
            postgresql_where=text("status <> 'archived'"),
            sqlite_where=text("status <> 'archived'"),
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id"), nullable=False)
    customer_phone = Column(Text, nullable=False)
    customer_name = Column(Text)
    status = Column(Text, nullable=False, default="active")  # active, resolved, escalated, archived
    current_flow = Column(Text)  # booking, lead_capture
    flow_data = Column(JSONType, nullable=False, default=dict)
    assigned_to_id = Column(Uuid, ForeignKey("users.id"))
    assigned_at = Column(DateTime(timezone=True))
    lead_score = Column(Integer, nullable=False, default=0)
    lead_status = Column(Text)
    needs_human = Column(Boolean, nullable=False, default=False)
    last_message_at = Column(DateTime(timezone=True))
    updated_by = Column(Text)  # pipeline, flow:<id>, assignment, dashboard
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    tenant = relationship("Tenant", back_populates="conversations")
    messages = relationship("Message", back_populates="conversation", order_by="Message.created_at")
