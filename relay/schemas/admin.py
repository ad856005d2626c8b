from typing import Optional

from pydantic import BaseModel

from relay.services.state_machine import ConversationStatus


class AgentLoadResponse(BaseModel):
    agent_id: str
    name: Optional[str] = None
    active: int
    max_conversations: int
    is_available: bool


class AssignmentStatsResponse(BaseModel):
    tenant_id: str
    unassigned: int
    agents: list[AgentLoadResponse]


class ReassignResponse(BaseModel):
    tenant_id: str
    agent_id: str
    reassigned: int


class CacheResponse(BaseModel):
    success: bool
    removed: int = 0


class ConversationStatusRequest(BaseModel):
    status: ConversationStatus


class ConversationStatusResponse(BaseModel):
    conversation_id: str
    previous_status: str
    status: str
    flow_cancelled: bool = False
    notified: bool = False


class FlowCancelResponse(BaseModel):
    conversation_id: str
    cancelled: bool
    flow: Optional[str] = None


class BookingCancelResponse(BaseModel):
    booking_id: str
    status: str
    notified: bool
