from typing import List, Optional

import httpx

from relay.logging_config import get_logger
from relay.services.llm.base import LLMError, LLMProvider, LLMResponse

logger = get_logger("llm.openai")


class OpenAIProvider(LLMProvider):
    """OpenAI-compatible chat completions provider (OpenRouter by default)."""

    def __init__(
        self,
        api_key: str,
        default_model: str,
        base_url: str = "https://openrouter.ai/api/v1",
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = f"{base_url.rstrip('/')}/chat/completions"

    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        """Generate response from the gateway."""

        model = model or self.default_model
        if not self.api_key:
            raise LLMError("LLM API key is not configured", model=model)

        timeout = timeout_seconds if timeout_seconds is not None else 30.0
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        logger.debug(f"LLM request: model={model}, messages_count={len(messages)}")

        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(
                    self.base_url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.TimeoutException as e:
            raise LLMError(f"LLM timeout after {timeout}s", model=model) from e
        except httpx.HTTPError as e:
            raise LLMError(f"LLM transport error: {e}", model=model) from e

        logger.debug(f"LLM response status: {response.status_code}")

        if response.status_code != 200:
            logger.error(f"LLM error: {response.text[:500]}")
            raise LLMError(
                f"LLM API error: {response.status_code}",
                model=model,
                status_code=response.status_code,
            )

        # Gateways sometimes answer 200 with an HTML error page or a truncated body.
        try:
            data = response.json()
            if not isinstance(data, dict):
                raise TypeError(f"expected a JSON object, got {type(data).__name__}")
            content = ""
            if data.get("choices"):
                message = data["choices"][0].get("message") or {}
                content = message.get("content") or ""
            if not isinstance(content, str):
                raise TypeError(f"expected string content, got {type(content).__name__}")
        except (ValueError, TypeError, KeyError, IndexError, AttributeError) as e:
            logger.error(f"LLM unreadable body: {response.text[:500]}")
            raise LLMError(f"LLM returned an unreadable body: {e}", model=model, status_code=200) from e
        logger.debug(f"LLM content: {content[:100] if content else 'EMPTY'}")

        return LLMResponse(
            content=content,
            model=data.get("model", model),
            usage=data.get("usage"),
        )
