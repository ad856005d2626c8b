from relay.services.llm.base import LLMError, LLMProvider, LLMResponse
from relay.services.llm.openai_provider import OpenAIProvider

__all__ = ["LLMError", "LLMProvider", "LLMResponse", "OpenAIProvider"]
