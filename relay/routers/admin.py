"""Admin API endpoints for tenant caches, agent assignment and dashboard actions."""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from relay.config import Settings, get_settings
from relay.database import get_db
from relay.logging_config import get_logger
from relay.models import Booking, Conversation, Tenant, User
from relay.schemas.admin import (
    AgentLoadResponse,
    AssignmentStatsResponse,
    BookingCancelResponse,
    CacheResponse,
    ConversationStatusRequest,
    ConversationStatusResponse,
    FlowCancelResponse,
    ReassignResponse,
)
from relay.services.assignment_service import assignment_stats, reassign_from_agent
from relay.services.conversation_service import set_status
from relay.services.notification_service import NotificationType
from relay.services.pipeline import InboundPipeline, get_pipeline
from relay.services.state_machine import ConversationStatus, InvalidTransitionError

logger = get_logger("admin")

ACTOR_DASHBOARD = "dashboard"

router = APIRouter(prefix="/admin", tags=["admin"])


def _require_admin_token(provided: Optional[str], settings: Settings) -> None:
    expected = settings.admin_token
    if not expected:
        raise HTTPException(status_code=500, detail="ADMIN_TOKEN not configured")
    if not provided or provided != expected:
        raise HTTPException(status_code=401, detail="Invalid admin token")


def _get_tenant_or_404(db: Session, tenant_id: UUID) -> Tenant:
    tenant = db.query(Tenant).filter(Tenant.id == tenant_id).first()
    if not tenant:
        raise HTTPException(status_code=404, detail=f"Tenant '{tenant_id}' not found")
    return tenant


@router.post("/tenants/{tenant_id}/invalidate-cache", response_model=CacheResponse)
def invalidate_tenant_cache(
    tenant_id: UUID,
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
    settings: Settings = Depends(get_settings),
    pipeline: InboundPipeline = Depends(get_pipeline),
):
    """Call after a tenant's number, FAQs or settings change."""
    _require_admin_token(x_admin_token, settings)
    removed = pipeline.resolver.invalidate(tenant_id)
    return CacheResponse(success=True, removed=removed)


@router.post("/cache/clear", response_model=CacheResponse)
def clear_tenant_cache(
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
    settings: Settings = Depends(get_settings),
    pipeline: InboundPipeline = Depends(get_pipeline),
):
    _require_admin_token(x_admin_token, settings)
    removed = len(pipeline.resolver)
    pipeline.resolver.clear()
    logger.info("Tenant cache cleared", extra={"context": {"removed": removed}})
    return CacheResponse(success=True, removed=removed)


@router.post("/tenants/{tenant_id}/agents/{agent_id}/reassign", response_model=ReassignResponse)
def reassign_agent_conversations(
    tenant_id: UUID,
    agent_id: UUID,
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
    settings: Settings = Depends(get_settings),
    db: Session = Depends(get_db),
):
    """Redistribute an agent's open conversations, e.g. when they go offline."""
    _require_admin_token(x_admin_token, settings)
    _get_tenant_or_404(db, tenant_id)
    agent = db.query(User).filter(User.id == agent_id, User.tenant_id == tenant_id).first()
    if not agent:
        raise HTTPException(status_code=404, detail=f"Agent '{agent_id}' not found")

    reassigned = reassign_from_agent(db, tenant_id, agent_id)
    return ReassignResponse(tenant_id=str(tenant_id), agent_id=str(agent_id), reassigned=reassigned)


@router.get("/tenants/{tenant_id}/assignment-stats", response_model=AssignmentStatsResponse)
def get_assignment_stats(
    tenant_id: UUID,
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
    settings: Settings = Depends(get_settings),
    db: Session = Depends(get_db),
):
    _require_admin_token(x_admin_token, settings)
    _get_tenant_or_404(db, tenant_id)
    stats = assignment_stats(db, tenant_id)
    return AssignmentStatsResponse(
        tenant_id=str(tenant_id),
        unassigned=stats["unassigned"],
        agents=[AgentLoadResponse(**agent) for agent in stats["agents"]],
    )


def _get_conversation_or_404(db: Session, conversation_id: UUID) -> Conversation:
    conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
    if not conversation:
        raise HTTPException(status_code=404, detail=f"Conversation '{conversation_id}' not found")
    return conversation


@router.post("/conversations/{conversation_id}/status", response_model=ConversationStatusResponse)
def change_conversation_status(
    conversation_id: UUID,
    request: ConversationStatusRequest,
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
    settings: Settings = Depends(get_settings),
    db: Session = Depends(get_db),
    pipeline: InboundPipeline = Depends(get_pipeline),
):
    """Dashboard status change. Leaving ``active`` stops any scripted flow."""
    _require_admin_token(x_admin_token, settings)
    conversation = _get_conversation_or_404(db, conversation_id)

    # Same key as the pipeline, so a turn in progress is never overwritten.
    with pipeline.locks.hold(f"{conversation.tenant_id}:{conversation.customer_phone}"):
        db.refresh(conversation)
        previous = conversation.status
        try:
            set_status(db, conversation, request.status, actor=ACTOR_DASHBOARD)
        except InvalidTransitionError as e:
            raise HTTPException(status_code=409, detail=str(e))

        flow_cancelled = False
        if request.status != ConversationStatus.ACTIVE and pipeline.executor.has_active_flow(conversation):
            flow_cancelled = pipeline.executor.cancel(conversation)
            conversation.updated_by = ACTOR_DASHBOARD
        if request.status == ConversationStatus.ESCALATED:
            conversation.needs_human = True
        db.commit()

    notified = False
    if request.status == ConversationStatus.ESCALATED:
        notified = pipeline.notifier.notify_escalation(db, conversation, ACTOR_DASHBOARD).ok

    logger.info(
        "Conversation status changed",
        extra={
            "context": {
                "conversation_id": str(conversation_id),
                "from": previous,
                "to": request.status.value,
                "flow_cancelled": flow_cancelled,
            }
        },
    )
    return ConversationStatusResponse(
        conversation_id=str(conversation_id),
        previous_status=previous,
        status=request.status.value,
        flow_cancelled=flow_cancelled,
        notified=notified,
    )


@router.post("/conversations/{conversation_id}/cancel-flow", response_model=FlowCancelResponse)
def cancel_conversation_flow(
    conversation_id: UUID,
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
    settings: Settings = Depends(get_settings),
    db: Session = Depends(get_db),
    pipeline: InboundPipeline = Depends(get_pipeline),
):
    """Drop a stuck flow; the customer's next message is routed normally."""
    _require_admin_token(x_admin_token, settings)
    conversation = _get_conversation_or_404(db, conversation_id)

    with pipeline.locks.hold(f"{conversation.tenant_id}:{conversation.customer_phone}"):
        db.refresh(conversation)
        flow = conversation.current_flow
        cancelled = pipeline.executor.cancel(conversation)
        if cancelled:
            conversation.updated_by = ACTOR_DASHBOARD
            db.commit()

    return FlowCancelResponse(conversation_id=str(conversation_id), cancelled=cancelled, flow=flow)


@router.post("/bookings/{booking_id}/cancel", response_model=BookingCancelResponse)
def cancel_booking(
    booking_id: UUID,
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
    settings: Settings = Depends(get_settings),
    db: Session = Depends(get_db),
    pipeline: InboundPipeline = Depends(get_pipeline),
):
    _require_admin_token(x_admin_token, settings)
    booking = db.query(Booking).filter(Booking.id == booking_id).first()
    if not booking:
        raise HTTPException(status_code=404, detail=f"Booking '{booking_id}' not found")
    if booking.status != "confirmed":
        raise HTTPException(status_code=409, detail=f"Booking is {booking.status}")

    booking.status = "cancelled"
    db.commit()
    notified = pipeline.notifier.notify_booking(db, booking, NotificationType.BOOKING_CANCELLED).ok
    logger.info(
        "Booking cancelled from dashboard",
        extra={"context": {"booking_id": str(booking_id), "tenant_id": str(booking.tenant_id)}},
    )
    return BookingCancelResponse(booking_id=str(booking_id), status=booking.status, notified=notified)
