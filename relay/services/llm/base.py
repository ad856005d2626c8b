from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional


class LLMError(Exception):
    """Model gateway failure, including a 200 answer whose body cannot be read."""

    def __init__(self, message: str, model: Optional[str] = None, status_code: Optional[int] = None):
        self.model = model
        self.status_code = status_code
        super().__init__(message)


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None

    @property
    def input_tokens(self) -> Optional[int]:
        if not self.usage:
            return None
        return self.usage.get("prompt_tokens")

    @property
    def output_tokens(self) -> Optional[int]:
        if not self.usage:
            return None
        return self.usage.get("completion_tokens")


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        """Generate response from LLM. Raises LLMError on failure."""
        pass
