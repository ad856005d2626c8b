"""Reply generation for turns that no flow owns."""

import re
import time
from dataclasses import dataclass
from typing import Iterable, Optional

import httpx

from relay.config import Settings
from relay.logging_config import get_logger
from relay.services.alert_service import alert_critical
from relay.services.faq_matcher import find_faq_matches
from relay.services.intent_router import Intent
from relay.services.llm.base import LLMError, LLMProvider
from relay.services.tenant_resolver import FAQEntry, TenantProfile
from relay.services.usage_service import UsageRecorder

logger = get_logger("responder")

MSG_GENERIC_FALLBACK = "Merci pour votre message ! Un conseiller vous répondra très rapidement."

INTENT_FALLBACKS = {
    Intent.BOOKING: "Merci ! Un conseiller va vous recontacter pour finaliser votre réservation.",
    Intent.LEAD_CAPTURE: "Merci pour votre intérêt ! Un conseiller vous recontacte très vite.",
    Intent.ESCALATE: "Je transmets votre demande à un conseiller, il vous répond dès que possible.",
    Intent.OPT_OUT: "C'est noté, vous ne recevrez plus de messages de notre part.",
}

INTENT_INSTRUCTIONS = {
    Intent.FAQ: "Answer the question using only the FAQ below. If the FAQ does not cover it, say a colleague will confirm.",
    Intent.GREETING: "Greet the customer warmly and ask how you can help.",
    Intent.ESCALATE: "Acknowledge the request with empathy and say a team member will take over shortly.",
    Intent.OPT_OUT: "Confirm that the customer will not receive further messages.",
    Intent.BOOKING: "Help the customer with their appointment request.",
    Intent.LEAD_CAPTURE: "Show interest in the customer's need and offer to have someone contact them.",
    Intent.UNKNOWN: "Answer briefly and helpfully, or ask a clarifying question.",
}

SYSTEM_PROMPT = """You are the WhatsApp assistant of {business_name}, a {business_type}.
Reply in the customer's language, in at most 3 short sentences, without markdown.
Never invent prices, opening hours or policies that are not in the FAQ.
{instruction}

FAQ:
{faq_context}"""

FAQ_CONTEXT_LIMIT = 5
HISTORY_CONTEXT_LIMIT = 4
_SURROUNDING_QUOTES = re.compile(r'^["\'«»\s]+|["\'«»\s]+$')
_EXTRA_NEWLINES = re.compile(r"\n{3,}")


@dataclass
class Reply:
    text: str
    needs_human: bool = False
    model: Optional[str] = None
    tier_used: Optional[int] = None
    failed: bool = False


def clean_reply(text: str) -> str:
    cleaned = _SURROUNDING_QUOTES.sub("", text or "")
    return _EXTRA_NEWLINES.sub("\n\n", cleaned).strip()


def build_faq_context(message: str, faqs: Iterable[FAQEntry]) -> str:
    faqs = list(faqs)
    if not faqs:
        return "(none)"
    matches = find_faq_matches(message, faqs, limit=3)
    selected = [m.faq for m in matches] if matches else faqs[:FAQ_CONTEXT_LIMIT]
    return "\n".join(f"Q: {faq.question}\nA: {faq.answer}" for faq in selected)


class Responder:
    """Stateless with respect to flows: it never reads or writes flow state."""

    def __init__(self, provider: LLMProvider, settings: Settings):
        self.provider = provider
        self.settings = settings

    def _models_to_try(self, tier: int) -> list[tuple[int, str]]:
        ladder: list[tuple[int, str]] = []
        for step in range(max(min(tier, 3), 1), 0, -1):
            model = self.settings.model_for_tier(step)
            if model not in [m for _, m in ladder]:
                ladder.append((step, model))
        if self.settings.fallback_model not in [m for _, m in ladder]:
            ladder.append((1, self.settings.fallback_model))
        return ladder

    def build_messages(
        self,
        message: str,
        tenant: TenantProfile,
        faqs: Iterable[FAQEntry],
        history: Iterable[dict],
        intent: Intent,
    ) -> list[dict]:
        system = SYSTEM_PROMPT.format(
            business_name=tenant.name,
            business_type=tenant.business_type or "business",
            instruction=INTENT_INSTRUCTIONS.get(intent, INTENT_INSTRUCTIONS[Intent.UNKNOWN]),
            faq_context=build_faq_context(message, faqs),
        )
        messages = [{"role": "system", "content": system}]
        for item in list(history)[-HISTORY_CONTEXT_LIMIT:]:
            messages.append({"role": item["role"], "content": item["content"]})
        messages.append({"role": "user", "content": message})
        return messages

    def generate(
        self,
        message: str,
        tenant_faqs: Iterable[FAQEntry],
        conversation_history: Iterable[dict],
        *,
        tenant: TenantProfile,
        intent: Intent = Intent.UNKNOWN,
        tier: int = 1,
        recorder: Optional[UsageRecorder] = None,
    ) -> Reply:
        messages = self.build_messages(message, tenant, tenant_faqs, conversation_history, intent)
        prompt_text = "\n".join(m["content"] for m in messages)

        for step, model in self._models_to_try(tier):
            started = time.monotonic()
            try:
                response = self.provider.generate(
                    messages,
                    model=model,
                    temperature=0.4,
                    max_tokens=400,
                    timeout_seconds=self.settings.llm_timeout_seconds,
                )
            except (LLMError, httpx.TimeoutException) as e:
                logger.warning(
                    "Reply generation failed, degrading",
                    extra={"context": {"tenant_id": str(tenant.id), "model": model, "tier": step, "error": str(e)}},
                )
                continue
            finally:
                logger.info(
                    "Timing",
                    extra={
                        "context": {
                            "stage": "generate",
                            "elapsed_ms": round((time.monotonic() - started) * 1000, 2),
                            "model_name": model,
                            "model_tier": step,
                            "timeout": self.settings.llm_timeout_seconds,
                        }
                    },
                )

            if recorder is not None:
                recorder.record(
                    model=model,
                    tier=step,
                    prompt_text=prompt_text,
                    completion_text=response.content,
                    response=response,
                )
            text = clean_reply(response.content)
            if not text:
                logger.warning("Empty reply from model", extra={"context": {"model": model, "tier": step}})
                continue
            return Reply(
                text=text,
                needs_human=intent == Intent.ESCALATE,
                model=model,
                tier_used=step,
            )

        alert_critical(
            "All reply models unavailable",
            {"tenant_id": str(tenant.id), "intent": intent.value, "tier": tier},
        )
        return Reply(
            text=INTENT_FALLBACKS.get(intent, MSG_GENERIC_FALLBACK),
            needs_human=True,
            failed=True,
        )
