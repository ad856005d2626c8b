from enum import Enum


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"
    ESCALATED = "escalated"
    ARCHIVED = "archived"


VALID_TRANSITIONS = {
    ConversationStatus.ACTIVE: [
        ConversationStatus.RESOLVED,
        ConversationStatus.ESCALATED,
        ConversationStatus.ARCHIVED,
    ],
    ConversationStatus.ESCALATED: [
        ConversationStatus.ACTIVE,
        ConversationStatus.RESOLVED,
        ConversationStatus.ARCHIVED,
    ],
    ConversationStatus.RESOLVED: [ConversationStatus.ACTIVE, ConversationStatus.ARCHIVED],
    ConversationStatus.ARCHIVED: [],
}

# Statuses that count against an agent's capacity
OPEN_STATUSES = (ConversationStatus.ACTIVE.value, ConversationStatus.ESCALATED.value)


class InvalidTransitionError(Exception):
    def __init__(self, from_status: ConversationStatus, to_status: ConversationStatus):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid transition: {from_status.value} -> {to_status.value}")


def can_transition(from_status: ConversationStatus, to_status: ConversationStatus) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(ConversationStatus(from_status), [])
    return ConversationStatus(to_status) in allowed


def transition(from_status: ConversationStatus, to_status: ConversationStatus) -> ConversationStatus:
    """Perform status transition. Raises InvalidTransitionError if not allowed."""
    from_status = ConversationStatus(from_status)
    to_status = ConversationStatus(to_status)
    if not can_transition(from_status, to_status):
        raise InvalidTransitionError(from_status, to_status)
    return to_status


def reopen(current: ConversationStatus) -> ConversationStatus:
    """Customer wrote again on a resolved or escalated conversation."""
    return transition(current, ConversationStatus.ACTIVE)
