"""End-to-end processing of one inbound WhatsApp message.

Steps: idempotency guard, tenant resolution, per-conversation lock,
conversation upsert and inbound insert (the unique provider ID is the
authoritative duplicate check), flow or router/responder, persistence,
outbound send, notifications, usage accounting, auto-assignment.
Every step is caught; a non-duplicate message from a known tenant always
gets a reply.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from typing import Callable, Optional
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from relay.config import Settings, get_settings
from relay.logging_config import LoggerAdapter, get_logger
from relay.models import Conversation, Message
from relay.schemas.webhook import InboundEvent
from relay.services.alert_service import alert_critical, alert_error
from relay.services.assignment_service import auto_assign
from relay.services.conversation_service import (
    DIRECTION_INBOUND,
    DIRECTION_OUTBOUND,
    append_message,
    escalate_conversation,
    get_history,
    upsert_conversation,
)
from relay.services.flows import FlowContext, FlowExecutor, FlowTurn, available_slots, build_registry
from relay.services.idempotency import IdempotencyGuard
from relay.services.intent_router import Intent, IntentRouter, RouteDecision
from relay.services.llm import LLMProvider, OpenAIProvider
from relay.services.locks import KeyedLocks
from relay.services.notification_service import (
    NotificationType,
    Notifier,
    PendingNotification,
    escalation_notification,
)
from relay.services.rate_limiter import PhoneRateLimiter
from relay.services.responder import MSG_GENERIC_FALLBACK, Responder
from relay.services.tenant_resolver import TenantProfile, TenantResolver
from relay.services.twilio_service import TwilioSender
from relay.services.usage_service import UsageRecorder

logger = get_logger("pipeline")

MSG_RATE_LIMITED = "Vous nous écrivez beaucoup en peu de temps. Merci de patienter un instant, nous revenons vers vous."

STATUS_PROCESSED = "processed"
STATUS_DUPLICATE = "duplicate"
STATUS_TENANT_NOT_FOUND = "tenant_not_found"
STATUS_RATE_LIMITED = "rate_limited"
STATUS_FAILED = "failed"


@dataclass
class TurnResult:
    reply: str
    handled_by: str
    needs_human: bool = False
    intent: Optional[str] = None
    confidence: Optional[float] = None
    tier: Optional[int] = None
    model: Optional[str] = None
    flow_outcome: Optional[str] = None
    notifications: list[PendingNotification] = field(default_factory=list)


@dataclass
class PipelineOutcome:
    status: str
    conversation_id: Optional[UUID] = None
    reply: Optional[str] = None
    handled_by: Optional[str] = None
    sent: bool = False
    assigned_agent_id: Optional[UUID] = None


def _tenant_now(tenant: TenantProfile) -> datetime:
    try:
        zone = ZoneInfo(tenant.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        zone = timezone.utc
    return datetime.now(zone)


class InboundPipeline:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        settings: Settings,
        *,
        provider: Optional[LLMProvider] = None,
        guard: Optional[IdempotencyGuard] = None,
        resolver: Optional[TenantResolver] = None,
        rate_limiter: Optional[PhoneRateLimiter] = None,
        locks: Optional[KeyedLocks] = None,
        router: Optional[IntentRouter] = None,
        responder: Optional[Responder] = None,
        executor: Optional[FlowExecutor] = None,
        notifier: Optional[Notifier] = None,
        sender: Optional[TwilioSender] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings
        provider = provider or OpenAIProvider(
            api_key=settings.llm_api_key,
            default_model=settings.tier_1_model,
            base_url=settings.llm_base_url,
        )
        self.guard = guard or IdempotencyGuard(settings.idempotency_ttl_seconds, settings.idempotency_max_entries)
        self.resolver = resolver or TenantResolver(
            ttl_seconds=settings.tenant_cache_ttl_seconds,
            negative_ttl_seconds=settings.tenant_negative_cache_ttl_seconds,
            max_entries=settings.tenant_cache_max_entries,
        )
        self.rate_limiter = rate_limiter or PhoneRateLimiter(
            settings.rate_limit_window_seconds, settings.rate_limit_max_messages
        )
        self.locks = locks or KeyedLocks()
        self.router = router or IntentRouter(provider, settings)
        self.responder = responder or Responder(provider, settings)
        self.executor = executor or FlowExecutor(
            build_registry(),
            max_attempts=settings.flow_max_attempts,
            timeout_minutes=settings.flow_timeout_minutes,
        )
        self.notifier = notifier or Notifier()
        self.sender = sender or TwilioSender(settings)

    def process(self, event: InboundEvent) -> PipelineOutcome:
        log = LoggerAdapter(logger, {"provider_message_id": event.provider_message_id})

        if not self.guard.check_and_mark(event.provider_message_id):
            log.info("duplicate_message", context={"source": "memory"})
            return PipelineOutcome(status=STATUS_DUPLICATE)

        db = self.session_factory()
        tenant = None
        try:
            tenant = self.resolver.resolve(db, event.destination)
            if tenant is None:
                log.info("tenant_not_found", context={"destination": event.destination})
                return PipelineOutcome(status=STATUS_TENANT_NOT_FOUND)

            log = log.bind(tenant_id=str(tenant.id))
            with self.locks.hold(f"{tenant.id}:{event.sender}"):
                return self._process_locked(db, tenant, event, log)
        except Exception as e:
            if tenant is None:
                log.exception("Pipeline failed", context={"error": str(e)})
                db.rollback()
                alert_error(
                    "Inbound pipeline failed", {"provider_message_id": event.provider_message_id, "error": str(e)}
                )
                return PipelineOutcome(status=STATUS_FAILED)
            return self._fail(db, tenant, event, "Inbound pipeline failed", e, log)
        finally:
            db.close()

    def _fail(
        self,
        db: Session,
        tenant: TenantProfile,
        event: InboundEvent,
        message: str,
        error: Exception,
        log: LoggerAdapter,
    ) -> PipelineOutcome:
        """Nothing could be stored for this turn; the customer still gets the fallback reply."""
        log.exception(message, context={"error": str(error)})
        try:
            db.rollback()
        except Exception as e:
            log.error("Rollback failed", context={"error": str(e)})
        alert_error(
            message,
            {"tenant_id": str(tenant.id), "provider_message_id": event.provider_message_id, "error": str(error)},
        )
        sent = self._send(db, tenant, event, None, MSG_GENERIC_FALLBACK, log)
        return PipelineOutcome(status=STATUS_FAILED, reply=MSG_GENERIC_FALLBACK, handled_by="fallback", sent=sent)

    def _is_stored(self, db: Session, provider_message_id: str) -> bool:
        return (
            db.query(Message.id).filter(Message.provider_message_id == provider_message_id).first() is not None
        )

    def _record(
        self, db: Session, tenant: TenantProfile, event: InboundEvent, log: LoggerAdapter
    ) -> Optional[tuple[Conversation, Message]]:
        """Insert the inbound row; ``None`` means another worker already stored this message.

        An IntegrityError is either the message ID (a duplicate) or the open
        conversation index (another worker opened the conversation first). The
        second case is retried once, when the other worker's row is visible.
        """
        for attempt in range(2):
            try:
                return self._record_inbound(db, tenant, event)
            except IntegrityError:
                db.rollback()
                if self._is_stored(db, event.provider_message_id):
                    log.info("duplicate_message", context={"source": "database"})
                    return None
                if attempt:
                    raise
                log.info("Conversation opened concurrently, retrying", context={"sender": event.sender})
        return None

    def _record_inbound(self, db: Session, tenant: TenantProfile, event: InboundEvent) -> tuple[Conversation, Message]:
        conversation = upsert_conversation(db, tenant.id, event.sender, event.profile_name)
        metadata = {"profile_name": event.profile_name}
        if event.media_urls:
            metadata["media_urls"] = list(event.media_urls)
            metadata["media_types"] = list(event.media_types)
        inbound = append_message(
            db,
            conversation,
            DIRECTION_INBOUND,
            event.body,
            metadata,
            provider_message_id=event.provider_message_id,
            status="delivered",
        )
        return conversation, inbound

    def _process_locked(self, db: Session, tenant: TenantProfile, event: InboundEvent, log: LoggerAdapter) -> PipelineOutcome:
        try:
            recorded = self._record(db, tenant, event, log)
        except Exception as e:
            return self._fail(db, tenant, event, "Recording inbound failed", e, log)
        if recorded is None:
            return PipelineOutcome(status=STATUS_DUPLICATE)
        conversation, inbound = recorded

        recorder = UsageRecorder(tenant.id, self.settings)
        if not self.rate_limiter.allow(f"{tenant.id}:{event.sender}"):
            log.warning("Rate limit exceeded", context={"sender": event.sender})
            turn = TurnResult(reply=MSG_RATE_LIMITED, handled_by="rate_limit")
        else:
            try:
                turn = self._decide(db, tenant, conversation, inbound, event, recorder, log)
            except Exception as e:
                log.exception("Turn processing failed, sending fallback", context={"error": str(e)})
                db.rollback()
                alert_error("Turn processing failed", {"tenant_id": str(tenant.id), "error": str(e)})
                try:
                    recorded = self._record(db, tenant, event, log)
                except Exception as e:
                    return self._fail(db, tenant, event, "Recording inbound failed", e, log)
                if recorded is None:
                    return PipelineOutcome(status=STATUS_DUPLICATE)
                conversation, inbound = recorded
                turn = TurnResult(reply=MSG_GENERIC_FALLBACK, handled_by="fallback", needs_human=True)

        conversation_id = conversation.id
        outbound = self._persist_turn(db, tenant, conversation, inbound, turn, log)
        if outbound is None:
            # The rollback discarded the turn's state changes, so its reply must not go out.
            turn = TurnResult(reply=MSG_GENERIC_FALLBACK, handled_by="fallback", needs_human=True)
            try:
                recorded = self._record(db, tenant, event, log)
            except Exception as e:
                return self._fail(db, tenant, event, "Recording inbound failed", e, log)
            if recorded is None:
                return PipelineOutcome(status=STATUS_DUPLICATE)
            conversation, inbound = recorded
            conversation_id = conversation.id
            outbound = self._persist_turn(db, tenant, conversation, inbound, turn, log)
            if outbound is None:
                turn.notifications.clear()
        sent = self._send(db, tenant, event, outbound, turn.reply, log)

        self.notifier.emit_pending(db, turn.notifications)
        cost = recorder.total_cost
        recorder.flush(db)
        assigned_agent_id = self._maybe_assign(db, tenant, conversation_id, log)

        status = STATUS_RATE_LIMITED if turn.handled_by == "rate_limit" else STATUS_PROCESSED
        log.info(
            "Inbound processed",
            context={
                "conversation_id": str(conversation_id),
                "handled_by": turn.handled_by,
                "intent": turn.intent,
                "tier": turn.tier,
                "sent": sent,
                "cost": round(cost, 6),
            },
        )
        return PipelineOutcome(
            status=status,
            conversation_id=conversation_id,
            reply=turn.reply,
            handled_by=turn.handled_by,
            sent=sent,
            assigned_agent_id=assigned_agent_id,
        )

    def _flow_context(self, db: Session, tenant: TenantProfile, conversation: Conversation) -> FlowContext:
        now = _tenant_now(tenant)
        return FlowContext(
            today=now.date(),
            now=now,
            services=tenant.services,
            customer_name=conversation.customer_name,
            customer_phone=conversation.customer_phone,
            available_slots=lambda day: available_slots(db, tenant.id, day, now),
        )

    def _flow_result(self, flow_turn: FlowTurn, decision: Optional[RouteDecision] = None) -> TurnResult:
        return TurnResult(
            reply=flow_turn.reply,
            handled_by=f"flow:{flow_turn.flow_id}",
            needs_human=flow_turn.needs_human,
            intent=decision.intent.value if decision else None,
            confidence=decision.confidence if decision else None,
            tier=decision.tier if decision else None,
            flow_outcome=flow_turn.outcome.value,
            notifications=list(flow_turn.notifications),
        )

    def _decide(
        self,
        db: Session,
        tenant: TenantProfile,
        conversation: Conversation,
        inbound: Message,
        event: InboundEvent,
        recorder: UsageRecorder,
        log: LoggerAdapter,
    ) -> TurnResult:
        context = self._flow_context(db, tenant, conversation)

        # An active flow owns the turn until it reaches a terminal state.
        if conversation.current_flow:
            flow_turn = self.executor.handle(db, conversation, event.body, context)
            if flow_turn is not None and flow_turn.reply:
                return self._flow_result(flow_turn)
            if flow_turn is not None:
                log.info("Flow expired, routing normally", context={"flow": flow_turn.flow_id})

        history = get_history(db, conversation.id, self.settings.history_limit, exclude_message_id=inbound.id)
        decision = self.router.route(event.body, tenant, history, recorder)

        if decision.provider_unavailable:
            alert_critical(
                "Model provider unavailable",
                {"tenant_id": str(tenant.id), "provider_message_id": event.provider_message_id},
            )
            return TurnResult(
                reply=MSG_GENERIC_FALLBACK,
                handled_by="fallback",
                needs_human=True,
                intent=decision.intent.value,
                confidence=decision.confidence,
                tier=decision.tier,
            )

        flow_id = decision.suggested_flow
        if flow_id and flow_id in self.executor.registry:
            flow_turn = self.executor.start(db, conversation, flow_id, context)
            if flow_turn is not None:
                return self._flow_result(flow_turn, decision)

        reply = self.responder.generate(
            event.body,
            tenant.faqs,
            history,
            tenant=tenant,
            intent=decision.intent,
            tier=decision.tier,
            recorder=recorder,
        )
        if decision.intent == Intent.OPT_OUT:
            conversation.lead_status = "opted_out"
            conversation.updated_by = "pipeline"
        return TurnResult(
            reply=reply.text,
            handled_by="fallback" if reply.failed else "responder",
            needs_human=reply.needs_human or decision.intent == Intent.ESCALATE,
            intent=decision.intent.value,
            confidence=decision.confidence,
            tier=decision.tier,
            model=reply.model,
        )

    def _persist_turn(
        self,
        db: Session,
        tenant: TenantProfile,
        conversation: Conversation,
        inbound: Message,
        turn: TurnResult,
        log: LoggerAdapter,
    ) -> Optional[Message]:
        try:
            # Derived fields land in the same transaction as the insert.
            inbound.intent = turn.intent
            inbound.confidence = turn.confidence
            inbound.tier_used = turn.tier

            if turn.needs_human and escalate_conversation(conversation):
                if not any(n.type == NotificationType.CONVERSATION_ESCALATED for n in turn.notifications):
                    turn.notifications.append(escalation_notification(conversation, turn.intent or turn.handled_by))

            outbound = append_message(
                db,
                conversation,
                DIRECTION_OUTBOUND,
                turn.reply,
                {
                    "handled_by": turn.handled_by,
                    "model": turn.model,
                    "flow_outcome": turn.flow_outcome,
                    "in_reply_to": inbound.provider_message_id,
                },
                status="queued",
                intent=turn.intent,
                confidence=turn.confidence,
                tier_used=turn.tier,
            )
            db.commit()
            return outbound
        except Exception as e:
            db.rollback()
            log.exception("Persisting turn failed", context={"error": str(e)})
            alert_error("Persisting turn failed", {"tenant_id": str(tenant.id), "error": str(e)})
            return None

    def _send(
        self,
        db: Session,
        tenant: TenantProfile,
        event: InboundEvent,
        outbound: Optional[Message],
        reply: str,
        log: LoggerAdapter,
    ) -> bool:
        try:
            result = self.sender.send_whatsapp_message(tenant.whatsapp_number, event.sender, reply)
        except Exception as e:
            log.exception("Outbound send raised", context={"error": str(e)})
            return False

        if outbound is not None:
            try:
                if result.ok:
                    outbound.status = "sent"
                    outbound.provider_message_id = result.value
                else:
                    outbound.status = "failed"
                    outbound.message_metadata = {
                        **(outbound.message_metadata or {}),
                        "error_code": result.error_code,
                        "error_message": result.error,
                    }
                outbound.status_updated_at = datetime.now(timezone.utc)
                db.commit()
            except Exception as e:
                db.rollback()
                log.error("Updating outbound status failed", context={"error": str(e)})
        if not result.ok:
            log.error("Outbound send failed", context={"error": result.error, "code": result.error_code})
        return result.ok

    def _maybe_assign(self, db: Session, tenant: TenantProfile, conversation_id: UUID, log: LoggerAdapter) -> Optional[UUID]:
        if not tenant.auto_assigns:
            return None
        try:
            conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
            if conversation is None or conversation.assigned_to_id is not None or conversation.status == "archived":
                return None
            result = auto_assign(db, tenant.id, conversation_id)
            return result.agent_id if result.assigned else None
        except Exception as e:
            db.rollback()
            log.error("Auto-assignment failed", context={"conversation_id": str(conversation_id), "error": str(e)})
            return None


@lru_cache
def get_pipeline() -> InboundPipeline:
    from relay.database import SessionLocal

    return InboundPipeline(SessionLocal, get_settings())
