import uuid

from sqlalchemy import Column, Date, Float, ForeignKey, Integer, Text, UniqueConstraint, Uuid

from relay.database import Base


class AIUsage(Base):
    """Token and cost totals per tenant, day, model and tier."""

    __tablename__ = "ai_usage"
    __table_args__ = (UniqueConstraint("tenant_id", "day", "model", "tier", name="uq_ai_usage_bucket"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id"), nullable=False)
    day = Column(Date, nullable=False)
    model = Column(Text, nullable=False)
    tier = Column(Integer, nullable=False)
    input_tokens = Column(Integer, nullable=False, default=0)
    output_tokens = Column(Integer, nullable=False, default=0)
    request_count = Column(Integer, nullable=False, default=0)
    cost = Column(Float, nullable=False, default=0.0)
