import uuid
from unittest.mock import patch

from relay.services.intent_router import Intent
from relay.services.llm.base import LLMError
from relay.services.responder import (
    INTENT_FALLBACKS,
    MSG_GENERIC_FALLBACK,
    Responder,
    build_faq_context,
    clean_reply,
)
from relay.services.tenant_resolver import FAQEntry, TenantProfile
from relay.services.usage_service import UsageRecorder

HOURS = FAQEntry(id=uuid.uuid4(), question="Quels sont vos horaires ?", answer="9h-19h du mardi au samedi.")
ADDRESS = FAQEntry(id=uuid.uuid4(), question="Où êtes-vous situés ?", answer="12 rue de la Paix, Paris.")
TENANT = TenantProfile(
    id=uuid.uuid4(),
    name="Salon Belle",
    whatsapp_number="+14155238886",
    business_type="salon",
    faqs=(HOURS, ADDRESS),
)


def test_clean_reply_strips_quotes_and_blank_lines():
    assert clean_reply('"Bonjour !\n\n\n\nÀ bientôt"') == "Bonjour !\n\nÀ bientôt"


def test_faq_context_prefers_matching_entries():
    context = build_faq_context("quels sont vos horaires", [HOURS, ADDRESS])
    assert "9h-19h" in context
    assert "rue de la Paix" not in context


def test_faq_context_without_match_lists_first_entries():
    context = build_faq_context("bonjour", [HOURS, ADDRESS])
    assert "9h-19h" in context and "rue de la Paix" in context


class TestGenerate:
    def test_generates_with_tier_model(self, settings, make_llm):
        llm = make_llm({"tier-2": "Nous sommes ouverts de 9h à 19h."})
        recorder = UsageRecorder(TENANT.id, settings)

        reply = Responder(llm, settings).generate(
            "Vos horaires ?", TENANT.faqs, [], tenant=TENANT, intent=Intent.FAQ, tier=2, recorder=recorder
        )

        assert reply.text == "Nous sommes ouverts de 9h à 19h."
        assert (reply.model, reply.tier_used) == ("tier-2", 2)
        assert reply.needs_human is False
        assert [entry.tier for entry in recorder.entries] == [2]
        system_prompt = llm.calls[0][1][0]["content"]
        assert "Salon Belle" in system_prompt and "9h-19h" in system_prompt

    def test_history_is_included(self, settings, make_llm):
        llm = make_llm(default="Très bien.")
        history = [{"role": "user", "content": "Bonjour"}, {"role": "assistant", "content": "Bonjour !"}]

        Responder(llm, settings).generate("Merci", TENANT.faqs, history, tenant=TENANT)

        messages = llm.calls[0][1]
        assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]

    def test_escalation_reply_needs_human(self, settings, make_llm):
        llm = make_llm({"tier-3": "Un conseiller va vous répondre."})
        reply = Responder(llm, settings).generate("Je veux un humain", (), [], tenant=TENANT, intent=Intent.ESCALATE, tier=3)
        assert reply.needs_human is True
        assert reply.tier_used == 3

    def test_degrades_down_the_ladder(self, settings, make_llm):
        llm = make_llm({"tier-3": LLMError("timeout"), "tier-2": "", "tier-1": "Réponse de secours."})
        reply = Responder(llm, settings).generate("Question", (), [], tenant=TENANT, tier=3)
        assert reply.text == "Réponse de secours."
        assert reply.tier_used == 1
        assert llm.models_called == ["tier-3", "tier-2", "tier-1"]

    @patch("relay.services.responder.alert_critical")
    def test_static_fallback_when_every_model_fails(self, mock_alert, settings, make_llm):
        llm = make_llm(default=LLMError("down"))
        reply = Responder(llm, settings).generate("Réserver", (), [], tenant=TENANT, intent=Intent.BOOKING, tier=2)

        assert reply.failed is True
        assert reply.needs_human is True
        assert reply.text == INTENT_FALLBACKS[Intent.BOOKING]
        assert llm.models_called == ["tier-2", "tier-1", "fallback"]
        mock_alert.assert_called_once()

    @patch("relay.services.responder.alert_critical")
    def test_generic_fallback_for_intents_without_template(self, mock_alert, settings, make_llm):
        llm = make_llm(default=LLMError("down"))
        reply = Responder(llm, settings).generate("Bonjour", (), [], tenant=TENANT, intent=Intent.GREETING)
        assert reply.text == MSG_GENERIC_FALLBACK
