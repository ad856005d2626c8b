"""Automatic assignment of conversations to human agents.

Candidate selection reads loads outside any lock; the claim re-checks
capacity inside one transaction that first takes a write lock on the agent
row, so two concurrent claims against an agent with one free slot cannot
both succeed.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from relay.logging_config import get_logger
from relay.models import AGENT_ROLES, Conversation, Tenant, User
from relay.services.result import Result
from relay.services.state_machine import OPEN_STATUSES, ConversationStatus

logger = get_logger("assignment_service")

STRATEGY_MANUAL = "manual"
STRATEGY_ROUND_ROBIN = "round_robin"
STRATEGY_LEAST_BUSY = "least_busy"
STRATEGIES = (STRATEGY_MANUAL, STRATEGY_ROUND_ROBIN, STRATEGY_LEAST_BUSY)


@dataclass
class AgentLoad:
    agent_id: UUID
    name: Optional[str]
    active: int
    max_conversations: int
    last_assigned_at: Optional[datetime]
    is_available: bool = True

    @property
    def ratio(self) -> float:
        if self.max_conversations <= 0:
            return float("inf")
        return self.active / self.max_conversations

    @property
    def has_capacity(self) -> bool:
        return self.active < self.max_conversations


@dataclass
class AssignmentResult:
    assigned: bool
    agent_id: Optional[UUID] = None
    reason: Optional[str] = None


def _active_counts(db: Session, tenant_id: UUID) -> dict:
    rows = (
        db.query(Conversation.assigned_to_id, func.count(Conversation.id))
        .filter(
            Conversation.tenant_id == tenant_id,
            Conversation.assigned_to_id.isnot(None),
            Conversation.status.in_(OPEN_STATUSES),
        )
        .group_by(Conversation.assigned_to_id)
        .all()
    )
    return {agent_id: count for agent_id, count in rows}


def agent_loads(db: Session, tenant_id: UUID, available_only: bool = True) -> list[AgentLoad]:
    query = db.query(User).filter(User.tenant_id == tenant_id, User.role.in_(AGENT_ROLES))
    if available_only:
        query = query.filter(User.is_available.is_(True))
    agents = query.order_by(User.created_at, User.id).all()
    counts = _active_counts(db, tenant_id)
    return [
        AgentLoad(
            agent_id=agent.id,
            name=agent.name,
            active=counts.get(agent.id, 0),
            max_conversations=agent.max_conversations or 0,
            last_assigned_at=agent.last_assigned_at,
            is_available=bool(agent.is_available),
        )
        for agent in agents
    ]


def _timestamp(value: Optional[datetime]) -> float:
    if value is None:
        return 0.0
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def order_candidates(candidates: Iterable[AgentLoad], strategy: str) -> list[AgentLoad]:
    """Preference order for a strategy; ties keep the input (stable) order."""
    candidates = [c for c in candidates if c.has_capacity]
    if strategy == STRATEGY_ROUND_ROBIN:
        # Never-assigned agents first, then the longest idle.
        return sorted(candidates, key=lambda c: (c.last_assigned_at is not None, _timestamp(c.last_assigned_at)))
    if strategy == STRATEGY_LEAST_BUSY:
        return sorted(candidates, key=lambda c: c.ratio)
    return []


def claim_conversation(db: Session, conversation_id: UUID, agent_id: UUID) -> Result[UUID]:
    """Atomically assign one conversation to one agent, or decline.

    One transaction: lock the agent row, count its open conversations,
    conditionally set ``assigned_to_id`` on a still-unassigned conversation.
    """
    now = datetime.now(timezone.utc)
    try:
        locked = db.execute(
            update(User)
            .where(User.id == agent_id, User.is_available.is_(True))
            .values(last_assigned_at=User.last_assigned_at)
            .execution_options(synchronize_session=False)
        ).rowcount
        if not locked:
            db.rollback()
            return Result.failure("Agent unavailable", "agent_unavailable")

        max_conversations = db.query(User.max_conversations).filter(User.id == agent_id).scalar() or 0
        active = (
            db.query(func.count(Conversation.id))
            .filter(Conversation.assigned_to_id == agent_id, Conversation.status.in_(OPEN_STATUSES))
            .scalar()
        )
        if active >= max_conversations:
            db.rollback()
            return Result.failure("Agent at capacity", "capacity_exceeded")

        claimed = db.execute(
            update(Conversation)
            .where(
                Conversation.id == conversation_id,
                Conversation.assigned_to_id.is_(None),
                Conversation.status != ConversationStatus.ARCHIVED.value,
            )
            .values(assigned_to_id=agent_id, assigned_at=now, updated_by="assignment")
            .execution_options(synchronize_session=False)
        ).rowcount
        if not claimed:
            db.rollback()
            return Result.failure("Conversation already assigned or archived", "not_claimable")

        db.execute(
            update(User)
            .where(User.id == agent_id)
            .values(last_assigned_at=now)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.expire_all()
    return Result.success(agent_id)


def auto_assign(
    db: Session,
    tenant_id: UUID,
    conversation_id: UUID,
    exclude_agent_ids: Iterable[UUID] = (),
) -> AssignmentResult:
    tenant = db.query(Tenant).filter(Tenant.id == tenant_id).first()
    if tenant is None:
        return AssignmentResult(assigned=False, reason="tenant_not_found")
    strategy = tenant.assignment_strategy or STRATEGY_MANUAL
    if not tenant.auto_assign_enabled or strategy == STRATEGY_MANUAL:
        return AssignmentResult(assigned=False, reason="auto_assign_disabled")
    if strategy not in STRATEGIES:
        logger.warning("Unknown assignment strategy", extra={"context": {"tenant_id": str(tenant_id), "strategy": strategy}})
        return AssignmentResult(assigned=False, reason="unknown_strategy")

    excluded = set(exclude_agent_ids)
    candidates = [c for c in agent_loads(db, tenant_id) if c.agent_id not in excluded]
    for candidate in order_candidates(candidates, strategy):
        result = claim_conversation(db, conversation_id, candidate.agent_id)
        if result.ok:
            logger.info(
                "Conversation auto-assigned",
                extra={
                    "context": {
                        "tenant_id": str(tenant_id),
                        "conversation_id": str(conversation_id),
                        "agent_id": str(candidate.agent_id),
                        "strategy": strategy,
                    }
                },
            )
            return AssignmentResult(assigned=True, agent_id=candidate.agent_id)
        if result.error_code == "not_claimable":
            return AssignmentResult(assigned=False, reason="not_claimable")
        logger.info(
            "Assignment claim declined, trying next agent",
            extra={"context": {"agent_id": str(candidate.agent_id), "reason": result.error_code}},
        )

    logger.info(
        "No agent available for assignment",
        extra={"context": {"tenant_id": str(tenant_id), "conversation_id": str(conversation_id)}},
    )
    return AssignmentResult(assigned=False, reason="no_candidates")


def reassign_from_agent(db: Session, tenant_id: UUID, agent_id: UUID) -> int:
    """Unassign the agent's open conversations and auto-assign each again.

    Returns how many conversations found a new agent.
    """
    conversation_ids = [
        row[0]
        for row in db.query(Conversation.id)
        .filter(
            Conversation.tenant_id == tenant_id,
            Conversation.assigned_to_id == agent_id,
            Conversation.status.in_(OPEN_STATUSES),
        )
        .all()
    ]
    if not conversation_ids:
        return 0

    db.execute(
        update(Conversation)
        .where(Conversation.id.in_(conversation_ids))
        .values(assigned_to_id=None, assigned_at=None, updated_by="assignment")
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.expire_all()

    reassigned = 0
    for conversation_id in conversation_ids:
        if auto_assign(db, tenant_id, conversation_id, exclude_agent_ids=[agent_id]).assigned:
            reassigned += 1
    logger.info(
        "Agent conversations reassigned",
        extra={
            "context": {
                "tenant_id": str(tenant_id),
                "agent_id": str(agent_id),
                "unassigned": len(conversation_ids),
                "reassigned": reassigned,
            }
        },
    )
    return reassigned


def assignment_stats(db: Session, tenant_id: UUID) -> dict:
    unassigned = (
        db.query(func.count(Conversation.id))
        .filter(
            Conversation.tenant_id == tenant_id,
            Conversation.assigned_to_id.is_(None),
            Conversation.status.in_(OPEN_STATUSES),
        )
        .scalar()
    )
    return {
        "unassigned": unassigned or 0,
        "agents": [
            {
                "agent_id": str(load.agent_id),
                "name": load.name,
                "active": load.active,
                "max_conversations": load.max_conversations,
                "is_available": load.is_available,
            }
            for load in agent_loads(db, tenant_id, available_only=False)
        ],
    }
