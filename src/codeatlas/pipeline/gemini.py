"""
Gemini integration for semantic enrichment.

Wraps google-generativeai's blocking ``generate_content`` call in a worker
thread so the event loop keeps serving other runs.
"""

import asyncio
from typing import Any, Optional

from ..config import get_settings
from ..util.errors import ConfigurationError
from .llm_adapter import LLMAdapter, LLMError, LLMRequest, LLMResponse


class GeminiAdapter(LLMAdapter):
    """Gemini text-completion adapter."""

    def __init__(
        self,
        model_name: str = "gemini-2.5-flash",
        api_key: Optional[str] = None,
        max_tokens: int = 8192,
        temperature: float = 0.3,
        **kwargs
    ):
        resolved_api_key = api_key or get_settings().ai.google_key
        if not resolved_api_key:
            raise ConfigurationError(
                "GOOGLE_API_KEY",
                "Gemini API key not found. Set GOOGLE_API_KEY or GEMINI_API_KEY.",
            )

        super().__init__(
            model_name=model_name,
            api_key=resolved_api_key,
            max_tokens=max_tokens,
            temperature=temperature,
            **kwargs
        )

        import google.generativeai as genai

        self._genai = genai
        genai.configure(api_key=resolved_api_key)
        self._models: dict[Optional[str], Any] = {}

    def _model_for(self, system_prompt: Optional[str]):
        # GenerativeModel binds the system instruction at construction
        if system_prompt not in self._models:
            self._models[system_prompt] = self._genai.GenerativeModel(
                model_name=self.model_name,
                system_instruction=system_prompt,
            )
        return self._models[system_prompt]

    def get_provider_name(self) -> str:
        return "google"

    async def _generate_raw_response(self, request: LLMRequest) -> LLMResponse:
        generation_config = self._genai.GenerationConfig(
            max_output_tokens=request.max_tokens or self.max_tokens,
            temperature=request.temperature if request.temperature is not None else self.temperature,
            candidate_count=1,
        )

        response = await asyncio.to_thread(
            self._model_for(request.system_prompt).generate_content,
            request.prompt,
            generation_config=generation_config,
        )

        if not response.candidates or not response.candidates[0].content.parts:
            raise LLMError(
                message="No response generated from Gemini",
                provider=self.get_provider_name(),
                model=self.model_name,
                error_type="empty_response",
                retryable=True,
            )

        text = response.candidates[0].content.parts[0].text.strip()
        return LLMResponse(
            text=text,
            model_name=self.model_name,
            tokens_used=self.get_token_estimate(text),
            metadata=request.metadata,
        )
