import json
import uuid
from unittest.mock import MagicMock, patch

import httpx
import pytest

from relay.services.intent_router import Intent, IntentRouter
from relay.services.llm import OpenAIProvider
from relay.services.llm.base import LLMError
from relay.services.tenant_resolver import TenantProfile
from relay.services.usage_service import UsageRecorder

TENANT = TenantProfile(id=uuid.uuid4(), name="Salon Belle", whatsapp_number="+14155238886", business_type="salon")
MESSAGES = [{"role": "user", "content": "Bonjour"}]


def completion(content: str, model: str = "tier-1") -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "model": model,
            "choices": [{"message": {"role": "assistant", "content": content}}],
            "usage": {"prompt_tokens": 12, "completion_tokens": 3},
        },
    )


@pytest.fixture
def mock_client():
    with patch("relay.services.llm.openai_provider.httpx.Client") as mock_client_class:
        client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = client
        yield client


class TestGenerate:
    def test_reads_content_and_usage(self, mock_client):
        mock_client.post.return_value = completion("Bonjour !")

        response = OpenAIProvider("key", "tier-1").generate(MESSAGES)

        assert response.content == "Bonjour !"
        assert response.input_tokens == 12
        assert mock_client.post.call_args[1]["json"]["model"] == "tier-1"

    def test_http_error_status(self, mock_client):
        mock_client.post.return_value = httpx.Response(502, text="Bad gateway")

        with pytest.raises(LLMError) as exc_info:
            OpenAIProvider("key", "tier-1").generate(MESSAGES)

        assert exc_info.value.status_code == 502

    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(200, text="<html><body>Gateway maintenance</body></html>"),
            httpx.Response(200, text='{"choices": [{"message": '),
            httpx.Response(200, json=["not", "an", "object"]),
            httpx.Response(200, json={"choices": ["oops"]}),
        ],
    )
    def test_unreadable_200_body_is_an_llm_error(self, mock_client, response):
        mock_client.post.return_value = response

        with pytest.raises(LLMError) as exc_info:
            OpenAIProvider("key", "tier-1").generate(MESSAGES)

        assert exc_info.value.status_code == 200
        assert exc_info.value.model == "tier-1"

    def test_missing_api_key(self):
        with pytest.raises(LLMError, match="not configured"):
            OpenAIProvider("", "tier-1").generate(MESSAGES)


class TestRouterFallback:
    def test_html_from_primary_falls_through_to_fallback_model(self, mock_client, settings):
        answer = json.dumps({"intent": "GREETING", "confidence": 0.95, "reasoning": "hello"})

        def post(url, headers=None, json=None):
            if json["model"] == "tier-1":
                return httpx.Response(200, text="<html>upstream error</html>")
            return completion(answer, model=json["model"])

        mock_client.post.side_effect = post
        provider = OpenAIProvider("key", settings.tier_1_model)

        decision = IntentRouter(provider, settings).route("Bonjour", TENANT, recorder=UsageRecorder(TENANT.id, settings))

        assert decision.intent == Intent.GREETING
        assert decision.provider_unavailable is False
        assert [call[1]["json"]["model"] for call in mock_client.post.call_args_list] == ["tier-1", "fallback"]
