from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from relay.logging_config import get_logger
from relay.models import Conversation, Message
from relay.services.state_machine import (
    ConversationStatus,
    can_transition,
    reopen,
    transition,
)

logger = get_logger("conversation_service")

ACTOR_PIPELINE = "pipeline"

DIRECTION_INBOUND = "inbound"
DIRECTION_OUTBOUND = "outbound"

MESSAGE_STATUSES = ("queued", "sent", "delivered", "read", "failed")
# Provider callbacks can arrive out of order; never move a message backwards.
STATUS_RANK = {"queued": 0, "sent": 1, "delivered": 2, "read": 3, "failed": 4}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def find_open_conversation(db: Session, tenant_id: UUID, customer_phone: str) -> Optional[Conversation]:
    """Most recent non-archived conversation for this customer."""
    return (
        db.query(Conversation)
        .filter(
            Conversation.tenant_id == tenant_id,
            Conversation.customer_phone == customer_phone,
            Conversation.status != ConversationStatus.ARCHIVED.value,
        )
        .order_by(Conversation.created_at.desc())
        .first()
    )


def upsert_conversation(
    db: Session,
    tenant_id: UUID,
    customer_phone: str,
    customer_name: Optional[str] = None,
    actor: str = ACTOR_PIPELINE,
) -> Conversation:
    """Lookup-or-create keyed on (tenant, phone).

    A resolved conversation is reopened rather than duplicated; only an
    archived one leads to a new conversation.
    """
    conversation = find_open_conversation(db, tenant_id, customer_phone)
    if conversation is not None:
        if conversation.status == ConversationStatus.RESOLVED.value:
            conversation.status = reopen(ConversationStatus(conversation.status)).value
            conversation.updated_by = actor
            logger.info(
                "Conversation reopened",
                extra={"context": {"conversation_id": str(conversation.id), "tenant_id": str(tenant_id)}},
            )
        if customer_name and not conversation.customer_name:
            conversation.customer_name = customer_name
        return conversation

    conversation = Conversation(
        tenant_id=tenant_id,
        customer_phone=customer_phone,
        customer_name=customer_name,
        status=ConversationStatus.ACTIVE.value,
        flow_data={},
        lead_score=0,
        needs_human=False,
        updated_by=actor,
        created_at=utcnow(),
    )
    db.add(conversation)
    db.flush()
    logger.info(
        "Conversation created",
        extra={"context": {"conversation_id": str(conversation.id), "tenant_id": str(tenant_id)}},
    )
    return conversation


def append_message(
    db: Session,
    conversation: Conversation,
    direction: str,
    content: str,
    metadata: Optional[dict] = None,
    *,
    provider_message_id: Optional[str] = None,
    status: str = "queued",
    intent: Optional[str] = None,
    confidence: Optional[float] = None,
    tier_used: Optional[int] = None,
) -> Message:
    """Insert a message row. A duplicate provider ID raises IntegrityError on flush."""
    now = utcnow()
    message = Message(
        conversation_id=conversation.id,
        tenant_id=conversation.tenant_id,
        direction=direction,
        content=content,
        provider_message_id=provider_message_id,
        status=status,
        intent=intent,
        confidence=confidence,
        tier_used=tier_used,
        message_metadata=dict(metadata or {}),
        created_at=now,
    )
    db.add(message)
    db.flush()
    conversation.last_message_at = now
    return message


def get_history(
    db: Session,
    conversation_id: UUID,
    limit: int = 10,
    exclude_message_id: Optional[UUID] = None,
) -> list[dict]:
    """Last ``limit`` messages, oldest first, as chat-completion turns."""
    query = db.query(Message).filter(Message.conversation_id == conversation_id)
    if exclude_message_id is not None:
        query = query.filter(Message.id != exclude_message_id)
    rows = query.order_by(Message.created_at.desc()).limit(limit).all()
    return [
        {"role": "user" if row.direction == DIRECTION_INBOUND else "assistant", "content": row.content}
        for row in reversed(rows)
    ]


def update_message_status(
    db: Session,
    provider_message_id: str,
    status: str,
    error_code: Optional[str] = None,
    error_message: Optional[str] = None,
) -> Optional[Message]:
    """Apply a delivery callback. Returns None when the ID is unknown."""
    message = db.query(Message).filter(Message.provider_message_id == provider_message_id).first()
    if message is None:
        return None

    if STATUS_RANK.get(status, 0) < STATUS_RANK.get(message.status, 0):
        logger.info(
            "Ignoring out-of-order status",
            extra={"context": {"provider_message_id": provider_message_id, "current": message.status, "received": status}},
        )
        return message

    message.status = status
    message.status_updated_at = utcnow()
    if error_code or error_message:
        metadata = dict(message.message_metadata or {})
        metadata["error_code"] = error_code
        metadata["error_message"] = error_message
        message.message_metadata = metadata
    return message


def set_status(db: Session, conversation: Conversation, new_status: ConversationStatus, actor: str) -> Conversation:
    """Move the conversation through the status table. Raises InvalidTransitionError."""
    conversation.status = transition(ConversationStatus(conversation.status), ConversationStatus(new_status)).value
    conversation.updated_by = actor
    return conversation


def escalate_conversation(conversation: Conversation, actor: str = ACTOR_PIPELINE) -> bool:
    """Flag for human follow-up. True when the status actually moved to escalated."""
    conversation.needs_human = True
    conversation.updated_by = actor
    current = ConversationStatus(conversation.status)
    if can_transition(current, ConversationStatus.ESCALATED):
        conversation.status = ConversationStatus.ESCALATED.value
        return True
    return False
