"""Cost-aware intent classification over a three-tier model ladder.

Tier 1 classifies every message. Tier 2 re-classifies transactional intents
(booking, lead capture), low-confidence tier 1 answers and
escalation-flagged content. Tier 3 is never a classification call: it is
the handling tier chosen when tier 2 (or tier 1 explicitly) asks for
escalation, and the responder generates with its model.
"""

import json
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

import httpx

from relay.config import Settings
from relay.logging_config import get_logger
from relay.services.faq_matcher import best_faq_match
from relay.services.llm.base import LLMError, LLMProvider
from relay.services.tenant_resolver import TenantProfile
from relay.services.text_utils import is_escalation_flagged
from relay.services.usage_service import UsageRecorder

logger = get_logger("intent_router")


class Intent(str, Enum):
    FAQ = "FAQ"
    BOOKING = "BOOKING"
    LEAD_CAPTURE = "LEAD_CAPTURE"
    ESCALATE = "ESCALATE"
    OPT_OUT = "OPT_OUT"
    GREETING = "GREETING"
    UNKNOWN = "UNKNOWN"


TIER_2_INTENTS = {Intent.BOOKING, Intent.LEAD_CAPTURE}
FLOW_FOR_INTENT = {Intent.BOOKING: "booking", Intent.LEAD_CAPTURE: "lead_capture"}

CLASSIFY_PROMPT = """You classify WhatsApp messages sent to the business "{business_name}" ({business_type}).
Return ONLY a JSON object: {{"intent": "<INTENT>", "confidence": <0..1>, "reasoning": "<short>"}}

Intents:
- FAQ: question about the business (prices, hours, address, services)
- BOOKING: wants to book, reschedule or check an appointment
- LEAD_CAPTURE: interested in a product or quote, wants to be contacted
- ESCALATE: asks for a human, complains, or the request is sensitive
- OPT_OUT: wants to stop receiving messages
- GREETING: greeting or thanks with no other request
- UNKNOWN: anything else
{faq_hint}"""

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


@dataclass
class RouteDecision:
    intent: Intent
    tier: int
    confidence: float
    model: Optional[str] = None
    reasoning: str = ""
    attempted_tiers: list[int] = field(default_factory=list)
    degraded: bool = False
    provider_unavailable: bool = False
    escalation_flagged: bool = False
    faq_id: Optional[str] = None

    @property
    def suggested_flow(self) -> Optional[str]:
        if self.tier == 3 or self.provider_unavailable:
            return None
        return FLOW_FOR_INTENT.get(self.intent)


@dataclass
class Classification:
    intent: Intent
    confidence: float
    reasoning: str
    model: str


def parse_classification(raw: str) -> tuple[Intent, float, str]:
    """Extract ``(intent, confidence, reasoning)`` from a model answer.

    Unparseable output is UNKNOWN with zero confidence; confidence is
    clamped to [0, 1].
    """
    match = _JSON_OBJECT.search(raw or "")
    if not match:
        return Intent.UNKNOWN, 0.0, "unparseable"
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError:
        return Intent.UNKNOWN, 0.0, "unparseable"
    if not isinstance(data, dict):
        return Intent.UNKNOWN, 0.0, "unparseable"

    raw_intent = str(data.get("intent", "")).strip().upper()
    try:
        intent = Intent(raw_intent)
    except ValueError:
        intent = Intent.UNKNOWN
    try:
        confidence = float(data.get("confidence", 0))
    except (TypeError, ValueError):
        confidence = 0.0
    confidence = min(max(confidence, 0.0), 1.0)
    return intent, confidence, str(data.get("reasoning", ""))[:200]


class IntentRouter:
    def __init__(self, provider: LLMProvider, settings: Settings):
        self.provider = provider
        self.settings = settings

    def _build_messages(self, message_text: str, tenant: TenantProfile, history: Iterable[dict], faq_hint: str) -> list[dict]:
        system = CLASSIFY_PROMPT.format(
            business_name=tenant.name,
            business_type=tenant.business_type or "business",
            faq_hint=faq_hint,
        )
        messages = [{"role": "system", "content": system}]
        for item in list(history)[-4:]:
            messages.append({"role": item["role"], "content": item["content"]})
        messages.append({"role": "user", "content": message_text})
        return messages

    def _classify(
        self,
        messages: list[dict],
        model: str,
        tier: int,
        recorder: Optional[UsageRecorder],
        tenant_id: str,
    ) -> Classification:
        started = time.monotonic()
        try:
            response = self.provider.generate(
                messages,
                model=model,
                temperature=0.0,
                max_tokens=150,
                timeout_seconds=self.settings.classify_timeout_seconds,
            )
        finally:
            logger.info(
                "Timing",
                extra={
                    "context": {
                        "stage": "classify",
                        "elapsed_ms": round((time.monotonic() - started) * 1000, 2),
                        "model_name": model,
                        "model_tier": tier,
                        "timeout": self.settings.classify_timeout_seconds,
                        "tenant_id": tenant_id,
                    }
                },
            )
        if recorder is not None:
            recorder.record(
                model=model,
                tier=tier,
                prompt_text="\n".join(m["content"] for m in messages),
                completion_text=response.content,
                response=response,
            )
        intent, confidence, reasoning = parse_classification(response.content)
        return Classification(intent=intent, confidence=confidence, reasoning=reasoning, model=model)

    def _classify_tier_1(self, messages, recorder, tenant_id) -> Optional[Classification]:
        primary = self.settings.tier_1_model
        try:
            return self._classify(messages, primary, 1, recorder, tenant_id)
        except (LLMError, httpx.TimeoutException) as e:
            logger.warning(
                "Tier 1 classification failed",
                extra={"context": {"model": primary, "error": str(e), "tenant_id": tenant_id}},
            )
        fallback = self.settings.fallback_model
        if fallback == primary:
            return None
        try:
            return self._classify(messages, fallback, 1, recorder, tenant_id)
        except (LLMError, httpx.TimeoutException) as e:
            logger.error(
                "Fallback classification failed",
                extra={"context": {"model": fallback, "error": str(e), "tenant_id": tenant_id}},
            )
            return None

    def route(
        self,
        message_text: str,
        tenant: TenantProfile,
        history: Iterable[dict] = (),
        recorder: Optional[UsageRecorder] = None,
    ) -> RouteDecision:
        tenant_id = str(tenant.id)
        history = list(history)
        faq_match = best_faq_match(message_text, tenant.faqs)
        faq_hint = ""
        if faq_match is not None:
            faq_hint = f'\nA stored FAQ looks related: "{faq_match.faq.question}" (score {faq_match.score}).'
        flagged = is_escalation_flagged(message_text)
        messages = self._build_messages(message_text, tenant, history, faq_hint)

        first = self._classify_tier_1(messages, recorder, tenant_id)
        if first is None:
            return RouteDecision(
                intent=Intent.UNKNOWN,
                tier=1,
                confidence=0.0,
                reasoning="provider_unavailable",
                attempted_tiers=[1],
                provider_unavailable=True,
                escalation_flagged=flagged,
            )

        decision = RouteDecision(
            intent=first.intent,
            tier=1,
            confidence=first.confidence,
            model=first.model,
            reasoning=first.reasoning,
            attempted_tiers=[1],
            escalation_flagged=flagged,
            faq_id=str(faq_match.faq.id) if faq_match and first.intent == Intent.FAQ else None,
        )

        needs_tier_2 = (
            first.intent in TIER_2_INTENTS
            or first.confidence < self.settings.tier_1_confidence_threshold
            or flagged
        )
        if not needs_tier_2:
            if first.intent == Intent.ESCALATE:
                decision.tier = 3
            self._log_decision(decision, tenant_id)
            return decision

        decision.attempted_tiers.append(2)
        try:
            second = self._classify(messages, self.settings.tier_2_model, 2, recorder, tenant_id)
        except (LLMError, httpx.TimeoutException) as e:
            logger.warning(
                "Tier 2 classification failed, keeping tier 1 decision",
                extra={"context": {"error": str(e), "tenant_id": tenant_id}},
            )
            decision.degraded = True
            if first.intent == Intent.ESCALATE:
                decision.tier = 3
            self._log_decision(decision, tenant_id)
            return decision

        decision.intent = second.intent
        decision.confidence = second.confidence
        decision.model = second.model
        decision.reasoning = second.reasoning
        if second.intent != Intent.FAQ:
            decision.faq_id = None
        if (
            second.intent == Intent.ESCALATE
            or second.confidence < self.settings.tier_2_confidence_threshold
            or flagged
        ):
            decision.tier = 3
        else:
            decision.tier = 2
        self._log_decision(decision, tenant_id)
        return decision

    def _log_decision(self, decision: RouteDecision, tenant_id: str) -> None:
        logger.info(
            "Intent routed",
            extra={
                "context": {
                    "tenant_id": tenant_id,
                    "intent": decision.intent.value,
                    "tier": decision.tier,
                    "confidence": decision.confidence,
                    "attempted_tiers": decision.attempted_tiers,
                    "degraded": decision.degraded,
                }
            },
        )
