import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Text, Uuid, func

from relay.database import Base

AGENT_ROLES = ("OWNER", "ADMIN", "AGENT")


class User(Base):
    """Dashboard team member; OWNER, ADMIN and AGENT roles take conversations."""

    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id"), nullable=False, index=True)
    name = Column(Text)
    email = Column(Text)
    role = Column(Text, nullable=False, default="AGENT")  # OWNER, ADMIN, AGENT, VIEWER
    is_available = Column(Boolean, nullable=False, default=True)
    max_conversations = Column(Integer, nullable=False, default=10)
    last_assigned_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
