"""Flow definitions: states mapped to transition functions, checked at registration."""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Optional, Union

from relay.services.text_utils import normalize_for_matching

STATE_DONE = "done"
STATE_CANCELLED = "cancelled"
STATE_ABANDONED = "abandoned"
TERMINAL_STATES = frozenset({STATE_DONE, STATE_CANCELLED, STATE_ABANDONED})

CANCEL_KEYWORDS = {"annule", "annuler", "stop", "quitter", "abandon", "abandonner", "arrete", "arreter", "cancel"}
YES_WORDS = {"oui", "ouais", "yes", "ok", "okay", "d accord", "daccord", "confirme", "confirmer", "parfait", "exact", "c est bon"}
NO_WORDS = {"non", "no", "nope", "pas du tout", "annule"}


class FlowOutcome(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ABANDONED = "abandoned"


@dataclass(frozen=True)
class CreateBooking:
    service: Optional[str]
    booking_date: date
    booking_time: str
    customer_name: Optional[str]
    # Where the flow goes back to when the slot is gone by completion time
    decline_state: str = "collecting_time"
    decline_reply: str = "Désolé, ce créneau vient d'être réservé. Quelle autre heure vous conviendrait ?"


@dataclass(frozen=True)
class CaptureLead:
    name: Optional[str]
    interest: Optional[str]
    email: Optional[str] = None
    phone: Optional[str] = None
    availability: Optional[str] = None


@dataclass(frozen=True)
class Escalate:
    reason: str


SideEffect = Union[CreateBooking, CaptureLead, Escalate]


@dataclass(frozen=True)
class FlowContext:
    """What transition functions may read besides the state and the input."""

    today: date
    now: datetime
    services: tuple[str, ...] = ()
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    available_slots: Callable[[date], list[str]] = lambda day: []


@dataclass(frozen=True)
class Transition:
    next_state: str
    reply: str
    data: dict = field(default_factory=dict)
    side_effects: tuple = ()
    # False means the input was not understood; the executor counts it against the retry budget.
    valid: bool = True


StateHandler = Callable[[dict, str, FlowContext], Transition]


@dataclass(frozen=True)
class FlowState:
    handle: StateHandler
    next_states: tuple[str, ...]


@dataclass(frozen=True)
class FlowDefinition:
    flow_id: str
    states: dict[str, FlowState]
    start: Callable[[FlowContext], Transition]
    start_states: tuple[str, ...]
    description: str = ""


class FlowDefinitionError(Exception):
    pass


class FlowRegistry:
    def __init__(self):
        self._flows: dict[str, FlowDefinition] = {}

    def register(self, definition: FlowDefinition) -> FlowDefinition:
        validate_definition(definition)
        if definition.flow_id in self._flows:
            raise FlowDefinitionError(f"Flow already registered: {definition.flow_id}")
        self._flows[definition.flow_id] = definition
        return definition

    def get(self, flow_id: Optional[str]) -> Optional[FlowDefinition]:
        if not flow_id:
            return None
        return self._flows.get(flow_id)

    def __contains__(self, flow_id: Any) -> bool:
        return flow_id in self._flows

    @property
    def flow_ids(self) -> list[str]:
        return sorted(self._flows)


def validate_definition(definition: FlowDefinition) -> None:
    """Every reachable state must be handled or terminal."""
    known = set(definition.states) | TERMINAL_STATES
    overlap = set(definition.states) & TERMINAL_STATES
    if overlap:
        raise FlowDefinitionError(f"{definition.flow_id}: terminal states cannot have handlers: {sorted(overlap)}")
    for state in definition.start_states:
        if state not in definition.states:
            raise FlowDefinitionError(f"{definition.flow_id}: unknown start state {state!r}")
    for name, state in definition.states.items():
        missing = [target for target in state.next_states if target not in known]
        if missing:
            raise FlowDefinitionError(f"{definition.flow_id}.{name}: unknown next states {missing}")


def is_cancel_request(text: str) -> bool:
    words = set(normalize_for_matching(text).split())
    return bool(words & CANCEL_KEYWORDS)


def is_yes(text: str) -> bool:
    normalized = normalize_for_matching(text)
    return normalized in YES_WORDS or normalized.split(" ")[0] in {"oui", "yes", "ok"}


def is_no(text: str) -> bool:
    normalized = normalize_for_matching(text)
    return normalized in NO_WORDS or normalized.split(" ")[0] in {"non", "no"}


def reprompt(state: str, reply: str, data: dict) -> Transition:
    return Transition(next_state=state, reply=reply, data=data, valid=False)
