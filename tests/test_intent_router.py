import json
import uuid

import pytest

from relay.services.intent_router import Intent, IntentRouter, parse_classification
from relay.services.llm.base import LLMError
from relay.services.tenant_resolver import TenantProfile
from relay.services.usage_service import UsageRecorder

TENANT = TenantProfile(id=uuid.uuid4(), name="Salon Belle", whatsapp_number="+14155238886", business_type="salon")


def classified(intent: str, confidence: float) -> str:
    return json.dumps({"intent": intent, "confidence": confidence, "reasoning": "test"})


@pytest.fixture
def route(settings, make_llm):
    def _route(answers, text="Bonjour"):
        llm = make_llm(answers)
        recorder = UsageRecorder(TENANT.id, settings)
        decision = IntentRouter(llm, settings).route(text, TENANT, recorder=recorder)
        return decision, llm, recorder

    return _route


class TestParseClassification:
    def test_json_embedded_in_prose(self):
        raw = 'Sure: {"intent": "booking", "confidence": 0.82, "reasoning": "wants a slot"} hope it helps'
        assert parse_classification(raw) == (Intent.BOOKING, 0.82, "wants a slot")

    def test_confidence_is_clamped(self):
        assert parse_classification(classified("FAQ", 1.7))[1] == 1.0
        assert parse_classification(classified("FAQ", -2))[1] == 0.0

    @pytest.mark.parametrize("raw", ["", "no json here", "{not json}"])
    def test_unparseable_answer_is_unknown(self, raw):
        assert parse_classification(raw)[:2] == (Intent.UNKNOWN, 0.0)

    def test_unknown_label_is_unknown(self):
        assert parse_classification(classified("DANCE", 0.9))[0] == Intent.UNKNOWN


class TestTierSelection:
    def test_confident_simple_intent_stays_on_tier_1(self, route):
        decision, llm, _ = route({"tier-1": classified("GREETING", 0.95)})
        assert decision.intent == Intent.GREETING
        assert decision.tier == 1
        assert llm.models_called == ["tier-1"]

    def test_transactional_intent_is_confirmed_by_tier_2(self, route):
        decision, llm, _ = route(
            {"tier-1": classified("BOOKING", 0.95), "tier-2": classified("BOOKING", 0.9)},
            "Je voudrais un rendez-vous demain",
        )
        assert decision.tier == 2
        assert decision.attempted_tiers == [1, 2]
        assert decision.suggested_flow == "booking"
        assert llm.models_called == ["tier-1", "tier-2"]

    def test_low_confidence_goes_to_tier_2(self, route):
        decision, llm, _ = route({"tier-1": classified("FAQ", 0.4), "tier-2": classified("FAQ", 0.8)})
        assert decision.tier == 2
        assert decision.intent == Intent.FAQ
        assert "tier-2" in llm.models_called

    def test_tier_2_unsure_escalates_to_tier_3(self, route):
        decision, _, _ = route({"tier-1": classified("FAQ", 0.4), "tier-2": classified("FAQ", 0.3)})
        assert decision.tier == 3
        assert decision.suggested_flow is None

    def test_explicit_escalation_on_tier_1_goes_to_tier_3(self, route):
        decision, llm, _ = route({"tier-1": classified("ESCALATE", 0.9)}, "Je veux parler à quelqu'un")
        assert decision.intent == Intent.ESCALATE
        assert decision.tier == 3
        assert llm.models_called == ["tier-1"]

    def test_flagged_content_never_stays_below_tier_3(self, route):
        decision, _, _ = route(
            {"tier-1": classified("UNKNOWN", 0.9), "tier-2": classified("GREETING", 0.95)},
            "C'est inadmissible, je veux un remboursement",
        )
        assert decision.escalation_flagged is True
        assert decision.tier == 3

    @pytest.mark.parametrize(
        "intent_1, confidence_1, intent_2",
        [("BOOKING", 0.9, "GREETING"), ("FAQ", 0.5, "FAQ"), ("LEAD_CAPTURE", 0.9, "ESCALATE")],
    )
    def test_tier_never_goes_down_after_tier_2(self, route, intent_1, confidence_1, intent_2):
        decision, _, _ = route(
            {"tier-1": classified(intent_1, confidence_1), "tier-2": classified(intent_2, 0.9)},
        )
        assert decision.attempted_tiers == [1, 2]
        assert decision.tier >= 2


class TestDegradation:
    def test_tier_1_failure_uses_fallback_model(self, route):
        decision, llm, _ = route({"tier-1": LLMError("timeout"), "fallback": classified("GREETING", 0.9)})
        assert decision.intent == Intent.GREETING
        assert decision.provider_unavailable is False
        assert llm.models_called == ["tier-1", "fallback"]

    def test_provider_unavailable_when_every_classifier_fails(self, route):
        decision, _, recorder = route({"tier-1": LLMError("down"), "fallback": LLMError("down")})
        assert decision.intent == Intent.UNKNOWN
        assert decision.confidence == 0.0
        assert decision.provider_unavailable is True
        assert decision.suggested_flow is None
        assert recorder.entries == []

    def test_tier_2_failure_keeps_tier_1_decision(self, route):
        decision, _, _ = route({"tier-1": classified("BOOKING", 0.9), "tier-2": LLMError("503", status_code=503)})
        assert decision.degraded is True
        assert decision.intent == Intent.BOOKING
        assert decision.tier == 1
        assert decision.suggested_flow == "booking"


def test_each_classification_is_recorded_for_cost(route):
    _, _, recorder = route({"tier-1": classified("BOOKING", 0.9), "tier-2": classified("BOOKING", 0.9)})
    assert [(entry.model, entry.tier) for entry in recorder.entries] == [("tier-1", 1), ("tier-2", 2)]
    assert recorder.entries[0].input_tokens == 100
