"""Runs the active flow of a conversation, one inbound turn at a time.

Flow state lives on the conversation: ``current_flow`` holds the flow ID
and ``flow_data`` a validated snapshot (state, collected data, attempts,
start time). At most one flow is active per conversation.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.orm import Session

from relay.logging_config import get_logger
from relay.models import Conversation
from relay.services.flows.base import (
    STATE_ABANDONED,
    STATE_CANCELLED,
    STATE_DONE,
    TERMINAL_STATES,
    CreateBooking,
    Escalate,
    FlowContext,
    FlowDefinition,
    FlowOutcome,
    FlowRegistry,
    Transition,
    is_cancel_request,
    reprompt,
)
from relay.services.flows.effects import FlowEffects
from relay.services.notification_service import PendingNotification

logger = get_logger("flows.executor")

MSG_NOT_UNDERSTOOD = "Je n'ai pas bien compris. Pouvez-vous reformuler ?"
MSG_FLOW_CANCELLED = "C'est annulé. N'hésitez pas si vous avez besoin d'autre chose !"
MSG_FLOW_ABANDONED = "Je n'arrive pas à traiter votre demande, un conseiller va prendre le relais."

OUTCOME_FOR_TERMINAL = {
    STATE_DONE: FlowOutcome.COMPLETED,
    STATE_CANCELLED: FlowOutcome.CANCELLED,
    STATE_ABANDONED: FlowOutcome.ABANDONED,
}


class FlowSnapshot(BaseModel):
    state: str
    data: dict = Field(default_factory=dict)
    attempts: int = Field(default=0, ge=0)
    started_at: datetime
    updated_at: Optional[datetime] = None


@dataclass
class FlowTurn:
    flow_id: str
    state: str
    outcome: FlowOutcome
    reply: Optional[str] = None
    needs_human: bool = False
    expired: bool = False
    notifications: list[PendingNotification] = field(default_factory=list)

    @property
    def finished(self) -> bool:
        return self.outcome != FlowOutcome.IN_PROGRESS


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class FlowExecutor:
    def __init__(
        self,
        registry: FlowRegistry,
        effects: Optional[FlowEffects] = None,
        max_attempts: int = 3,
        timeout_minutes: int = 30,
    ):
        self.registry = registry
        self.effects = effects or FlowEffects()
        self.max_attempts = max_attempts
        self.timeout = timedelta(minutes=timeout_minutes)

    def load(self, conversation: Conversation) -> Optional[tuple[FlowDefinition, FlowSnapshot]]:
        """Active flow of the conversation; a corrupt or unknown flow is cleared."""
        if not conversation.current_flow:
            return None
        definition = self.registry.get(conversation.current_flow)
        snapshot = None
        if definition is not None:
            try:
                snapshot = FlowSnapshot.model_validate(conversation.flow_data or {})
            except ValidationError as e:
                logger.warning(
                    "Invalid flow snapshot, clearing",
                    extra={"context": {"conversation_id": str(conversation.id), "error": str(e)}},
                )
        if definition is None or snapshot is None or snapshot.state not in definition.states:
            logger.warning(
                "Clearing unusable flow state",
                extra={"context": {"conversation_id": str(conversation.id), "flow": conversation.current_flow}},
            )
            self._clear(conversation)
            return None
        return definition, snapshot

    def has_active_flow(self, conversation: Conversation) -> bool:
        return bool(conversation.current_flow) and conversation.current_flow in self.registry

    def start(self, db: Session, conversation: Conversation, flow_id: str, context: FlowContext) -> Optional[FlowTurn]:
        definition = self.registry.get(flow_id)
        if definition is None:
            logger.warning("Unknown flow requested", extra={"context": {"flow": flow_id}})
            return None
        if conversation.current_flow:
            logger.warning(
                "Flow already active, not starting another",
                extra={"context": {"conversation_id": str(conversation.id), "active": conversation.current_flow}},
            )
            return None

        transition = definition.start(context)
        conversation.current_flow = flow_id
        self._save(conversation, FlowSnapshot(state=transition.next_state, data=transition.data, started_at=context.now))
        logger.info(
            "Flow started",
            extra={"context": {"conversation_id": str(conversation.id), "flow": flow_id, "state": transition.next_state}},
        )
        return FlowTurn(flow_id=flow_id, state=transition.next_state, outcome=FlowOutcome.IN_PROGRESS, reply=transition.reply)

    def handle(self, db: Session, conversation: Conversation, text: str, context: FlowContext) -> Optional[FlowTurn]:
        """Process one inbound turn; None when the conversation has no usable flow."""
        loaded = self.load(conversation)
        if loaded is None:
            return None
        definition, snapshot = loaded
        flow_id = definition.flow_id

        if _aware(context.now) - _aware(snapshot.started_at) > self.timeout:
            logger.info(
                "Flow expired",
                extra={"context": {"conversation_id": str(conversation.id), "flow": flow_id, "state": snapshot.state}},
            )
            self._clear(conversation)
            return FlowTurn(flow_id=flow_id, state=STATE_ABANDONED, outcome=FlowOutcome.ABANDONED, expired=True)

        if is_cancel_request(text):
            self._clear(conversation)
            return FlowTurn(flow_id=flow_id, state=STATE_CANCELLED, outcome=FlowOutcome.CANCELLED, reply=MSG_FLOW_CANCELLED)

        state = definition.states[snapshot.state]
        try:
            transition = state.handle(dict(snapshot.data), text, context)
        except Exception:
            logger.exception(
                "Flow handler failed, re-prompting",
                extra={"context": {"conversation_id": str(conversation.id), "flow": flow_id, "state": snapshot.state}},
            )
            transition = reprompt(snapshot.state, MSG_NOT_UNDERSTOOD, snapshot.data)

        if transition.next_state != snapshot.state and transition.next_state not in state.next_states:
            logger.error(
                "Undeclared flow transition",
                extra={"context": {"flow": flow_id, "from": snapshot.state, "to": transition.next_state}},
            )
            transition = reprompt(snapshot.state, MSG_NOT_UNDERSTOOD, snapshot.data)

        if not transition.valid:
            attempts = snapshot.attempts + 1
            if attempts >= self.max_attempts:
                return self._abandon(db, conversation, flow_id, snapshot.state, attempts)
            self._save(conversation, snapshot.model_copy(update={"attempts": attempts, "updated_at": context.now}))
            return FlowTurn(flow_id=flow_id, state=snapshot.state, outcome=FlowOutcome.IN_PROGRESS, reply=transition.reply)

        return self._advance(db, conversation, flow_id, snapshot, transition, context)

    def cancel(self, conversation: Conversation) -> bool:
        if not conversation.current_flow:
            return False
        self._clear(conversation)
        return True

    def _advance(
        self,
        db: Session,
        conversation: Conversation,
        flow_id: str,
        snapshot: FlowSnapshot,
        transition: Transition,
        context: FlowContext,
    ) -> FlowTurn:
        notifications: list[PendingNotification] = []
        for effect in transition.side_effects:
            result = self.effects.apply(db, conversation, effect)
            if result.ok:
                notifications.extend(result.value or [])
                continue
            if isinstance(effect, CreateBooking) and result.error_code == "slot_taken":
                data = {key: value for key, value in transition.data.items() if key != "time"}
                self._save(
                    conversation,
                    snapshot.model_copy(update={"state": effect.decline_state, "data": data, "attempts": 0, "updated_at": context.now}),
                )
                return FlowTurn(
                    flow_id=flow_id,
                    state=effect.decline_state,
                    outcome=FlowOutcome.IN_PROGRESS,
                    reply=effect.decline_reply,
                )
            logger.error(
                "Flow side effect failed",
                extra={"context": {"flow": flow_id, "effect": type(effect).__name__, "error": result.error}},
            )

        if transition.next_state in TERMINAL_STATES:
            self._clear(conversation)
            logger.info(
                "Flow finished",
                extra={"context": {"conversation_id": str(conversation.id), "flow": flow_id, "state": transition.next_state}},
            )
            return FlowTurn(
                flow_id=flow_id,
                state=transition.next_state,
                outcome=OUTCOME_FOR_TERMINAL[transition.next_state],
                reply=transition.reply,
                notifications=notifications,
            )

        self._save(
            conversation,
            snapshot.model_copy(
                update={"state": transition.next_state, "data": transition.data, "attempts": 0, "updated_at": context.now}
            ),
        )
        return FlowTurn(
            flow_id=flow_id,
            state=transition.next_state,
            outcome=FlowOutcome.IN_PROGRESS,
            reply=transition.reply,
            notifications=notifications,
        )

    def _abandon(self, db: Session, conversation: Conversation, flow_id: str, state: str, attempts: int) -> FlowTurn:
        logger.info(
            "Flow abandoned after invalid inputs",
            extra={"context": {"conversation_id": str(conversation.id), "flow": flow_id, "state": state, "attempts": attempts}},
        )
        result = self.effects.apply(db, conversation, Escalate(reason=f"{flow_id}: retries exhausted at {state}"))
        self._clear(conversation)
        return FlowTurn(
            flow_id=flow_id,
            state=STATE_ABANDONED,
            outcome=FlowOutcome.ABANDONED,
            reply=MSG_FLOW_ABANDONED,
            needs_human=True,
            notifications=list(result.value or []) if result.ok else [],
        )

    def _save(self, conversation: Conversation, snapshot: FlowSnapshot) -> None:
        # Assign a fresh dict so the JSON column registers the change.
        conversation.flow_data = snapshot.model_dump(mode="json")
        conversation.updated_by = f"flow:{conversation.current_flow}"

    def _clear(self, conversation: Conversation) -> None:
        flow_id = conversation.current_flow
        conversation.current_flow = None
        conversation.flow_data = {}
        conversation.updated_by = f"flow:{flow_id}" if flow_id else conversation.updated_by
