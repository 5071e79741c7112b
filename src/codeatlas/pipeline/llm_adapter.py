"""
Abstract LLM adapter interface.

Defines the text-completion seam used by semantic enrichment (and by any
chat-style caller): a prompt plus a system instruction in, text out, with
provider failures surfaced as LLMError.
"""

from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Union

from ..util.errors import ErrorCategory, ErrorSeverity, ExternalServiceError, RecoveryStrategy


@dataclass
class LLMRequest:
    """Standardized LLM request structure."""
    prompt: str
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    system_prompt: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LLMResponse:
    """Standardized LLM response structure."""
    text: str
    model_name: str
    tokens_used: Optional[int] = None
    finish_reason: str = "completed"
    metadata: Dict[str, Any] = field(default_factory=dict)


class LLMError(ExternalServiceError):
    """Specialized error for LLM operations."""

    def __init__(
        self,
        message: str,
        provider: str,
        model: str,
        error_type: str = "unknown",
        retryable: bool = False,
        **kwargs
    ):
        super().__init__(
            f"{provider}/{model}",
            f"LLM request failed: {message}",
            retryable=retryable,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.EXTERNAL_SERVICE,
            recovery_strategy=RecoveryStrategy.RETRY if retryable else RecoveryStrategy.ABORT,
            **kwargs
        )
        self.provider = provider
        self.model = model
        self.error_type = error_type


class LLMAdapter(ABC):
    """
    Abstract base class for LLM adapters.

    Concrete adapters implement ``_generate_raw_response``; callers use
    ``generate_response`` which validates the request and wraps provider
    exceptions in LLMError.
    """

    def __init__(
        self,
        model_name: str,
        api_key: Optional[str] = None,
        max_tokens: int = 8192,
        temperature: float = 0.1,
        **kwargs
    ):
        self.model_name = model_name
        self.api_key = api_key
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.config = kwargs
        self.request_count = 0

    async def generate_response(self, request: LLMRequest) -> LLMResponse:
        """
        Generate a response for a structured LLM request.

        Raises:
            LLMError: If validation or the provider call fails
        """
        self.validate_request(request)
        self.request_count += 1
        try:
            return await self._generate_raw_response(request)
        except LLMError:
            raise
        except Exception as e:
            raise LLMError(
                message=str(e),
                provider=self.get_provider_name(),
                model=self.model_name,
                retryable=self._is_retryable_error(e),
                cause=e,
            ) from e

    @abstractmethod
    async def _generate_raw_response(self, request: LLMRequest) -> LLMResponse:
        """Provider-specific completion call."""

    @abstractmethod
    def get_provider_name(self) -> str:
        """Provider name (e.g. "google", "mock")."""

    def validate_request(self, request: LLMRequest) -> None:
        """
        Validate LLM request parameters.

        Raises:
            LLMError: If the prompt is empty or the token budget is too large
        """
        if not request.prompt:
            raise LLMError(
                message="Prompt is required",
                provider=self.get_provider_name(),
                model=self.model_name,
                error_type="validation",
            )

        if request.max_tokens and request.max_tokens > self.max_tokens:
            raise LLMError(
                message=f"Requested tokens ({request.max_tokens}) exceed model limit ({self.max_tokens})",
                provider=self.get_provider_name(),
                model=self.model_name,
                error_type="validation",
            )

    def _is_retryable_error(self, error: Exception) -> bool:
        error_str = str(error).lower()
        retryable_patterns = [
            "timeout", "connection", "network", "rate limit",
            "temporary", "unavailable", "overloaded", "quota",
        ]
        return any(pattern in error_str for pattern in retryable_patterns)

    def get_token_estimate(self, text: str) -> int:
        # ~4 characters per token
        return len(text) // 4


class MockLLMAdapter(LLMAdapter):
    """
    Offline adapter returning scripted replies.

    Each scripted item is either a reply string or an exception to raise.
    When the script is exhausted the default reply is returned.
    """

    DEFAULT_REPLY = (
        '{"description": "Mock analysis of the code element", '
        '"purpose": "Used for offline runs", "tags": ["mock"], "complexity": "low"}'
    )

    def __init__(
        self,
        responses: Optional[Iterable[Union[str, Exception]]] = None,
        default_reply: Optional[str] = None,
        **kwargs
    ):
        super().__init__(model_name="mock-model", max_tokens=8192, temperature=0.1, **kwargs)
        self._script = deque(responses or [])
        self.default_reply = default_reply if default_reply is not None else self.DEFAULT_REPLY
        self.requests: List[LLMRequest] = []

    async def _generate_raw_response(self, request: LLMRequest) -> LLMResponse:
        self.requests.append(request)
        reply = self._script.popleft() if self._script else self.default_reply
        if isinstance(reply, Exception):
            raise reply
        return LLMResponse(
            text=reply,
            model_name=self.model_name,
            tokens_used=self.get_token_estimate(reply),
        )

    def get_provider_name(self) -> str:
        return "mock"


def create_llm_adapter(model_name: str, api_key: Optional[str] = None, **kwargs) -> LLMAdapter:
    """
    Build an adapter for ``model_name``.

    ``mock*`` model names give a MockLLMAdapter; anything else is served by
    Gemini.

    Raises:
        ConfigurationError: If the provider cannot be configured
    """
    if model_name.startswith("mock"):
        return MockLLMAdapter(**kwargs)

    from .gemini import GeminiAdapter

    return GeminiAdapter(model_name=model_name, api_key=api_key, **kwargs)
