"""
LLM-based semantic enrichment of code units.

Each unit is turned into a structured annotation (description, summary,
tags, complexity, confidence). Calls are cached by content hash, paced by a
sliding-window rate limiter and retried according to the ErrorHandler's
recovery plan. Malformed replies are repaired heuristically.
"""

import asyncio
import json
import re
import time
from collections import deque
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ..data.schemas import CodeUnit, Complexity, Enrichment, UnitKind
from ..util.errors import LLMUnavailableError
from ..util.fs import compute_content_hash
from ..util.logging_config import get_logger
from .error_handler import ErrorHandler
from .llm_adapter import LLMAdapter, LLMRequest

logger = get_logger("pipeline.enricher")

SleepFunc = Callable[[float], Awaitable[Any]]

SYSTEM_INSTRUCTION = """You are an expert code analyst specializing in software architecture documentation.

Your task is to analyze code elements and provide concise, technical descriptions that help developers understand what the code does functionally, its role in the larger system and its technical characteristics.

Guidelines:
- Be precise and technical, not verbose
- Focus on functionality and purpose, not implementation details
- Use standard software engineering terminology
- Keep descriptions under 50 words
- Assign appropriate technical tags
- Rate complexity based on algorithm complexity, dependencies, and maintainability

Always respond with valid JSON in the specified format."""

PROMPT_TEMPLATE = """Analyze this {language} code element and provide a structured description:

{context}

CODE:
```{language}
{source}
```

Please provide:
1. DESCRIPTION: A concise, technical description of what this code does (1-2 sentences)
2. PURPOSE: The main purpose/responsibility of this element (1 sentence)
3. TAGS: 3-5 relevant technical tags
4. COMPLEXITY: Rate complexity as "low", "medium", or "high"

Format your response as JSON:
{{
  "description": "...",
  "purpose": "...",
  "tags": ["tag1", "tag2", "tag3"],
  "complexity": "medium"
}}"""

JSON_ENVELOPE = re.compile(r"\{[\s\S]*\}")
UNSAFE_CHARS = re.compile(r"[^\w\s.,!?()-]")
WHITESPACE = re.compile(r"\s+")


def sanitize_text(text: Any, limit: int = 200) -> str:
    """Drop special characters, collapse whitespace, cap length."""
    if not isinstance(text, str):
        return ""
    return WHITESPACE.sub(" ", UNSAFE_CHARS.sub("", text)).strip()[:limit]


class SlidingWindowRateLimiter:
    """
    Caps calls per trailing window and spaces consecutive calls.

    ``acquire`` waits until a new call fits in the window and at least
    ``min_interval`` seconds have passed since the previous call. Waiters
    are served one at a time, so concurrent runs sharing a limiter share
    its cap.
    """

    def __init__(
        self,
        max_requests: int = 50,
        window: float = 60.0,
        min_interval: float = 1.0,
        sleep: SleepFunc = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window = window
        self.min_interval = min_interval
        self._sleep = sleep
        self._clock = clock
        self._calls: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        while self._calls and now - self._calls[0] >= self.window:
            self._calls.popleft()

    async def acquire(self) -> float:
        """Wait for a slot. Returns the seconds waited."""
        waited = 0.0
        async with self._lock:
            while True:
                now = self._clock()
                self._prune(now)
                if len(self._calls) < self.max_requests:
                    break
                wait = self.window - (now - self._calls[0])
                logger.info(f"Rate limit reached, waiting {wait:.1f} seconds")
                await self._sleep(wait)
                waited += wait

            if self._calls and self.min_interval > 0:
                gap = self.min_interval - (now - self._calls[-1])
                if gap > 0:
                    await self._sleep(gap)
                    waited += gap

            self._calls.append(self._clock())
        return waited

    @property
    def calls_in_window(self) -> int:
        self._prune(self._clock())
        return len(self._calls)


class SemanticEnricher:
    """
    Produces Enrichment annotations for code units.

    The cache and request history live on the instance; one enricher is
    shared by every run of a manager.
    """

    def __init__(
        self,
        llm: Optional[LLMAdapter],
        error_handler: ErrorHandler,
        llm_model: str = "gemini-2.5-flash",
        max_retries: int = 3,
        rate_limit_delay: float = 1.0,
        temperature: float = 0.3,
        max_output_tokens: int = 300,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        unavailable_reason: Optional[str] = None,
        sleep: SleepFunc = asyncio.sleep,
        metrics: Any = None,
    ):
        self.llm = llm
        self._metrics = metrics
        self.error_handler = error_handler
        self.llm_model = llm_model
        self.max_retries = max_retries
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.unavailable_reason = unavailable_reason
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(
            min_interval=rate_limit_delay, sleep=sleep
        )
        self.cache: Dict[str, Enrichment] = {}
        self.request_history: List[Dict[str, Any]] = []
        self.cache_hits = 0

    async def enrich_batch(self, units: Sequence[CodeUnit], context: Optional[Dict[str, Any]] = None) -> List[Enrichment]:
        """Enrich units in order; a failed unit gets a synthetic low-confidence result."""
        results = []
        for unit in units:
            try:
                results.append(await self.enrich_single_item(unit, context))
            except Exception as e:
                logger.warning(f"Failed to enrich item {unit.id}: {e}")
                results.append(self.create_fallback_enrichment(unit, e))
        return results

    async def enrich_single_item(self, unit: CodeUnit, context: Optional[Dict[str, Any]] = None) -> Enrichment:
        """
        Enrich one unit, retrying per the ErrorHandler's recovery plan.

        Raises:
            Exception: The last call failure once retries are exhausted or
                the recovery plan forbids retrying
        """
        cache_key = self.create_cache_key(unit)
        cached = self.cache.get(cache_key)
        if cached is not None:
            self.cache_hits += 1
            return cached

        for attempt in range(1, self.max_retries + 1):
            try:
                enrichment = await self._call_llm(unit)
                self.cache[cache_key] = enrichment
                return enrichment
            except Exception as e:
                entry = self.error_handler.handle_error(e, {
                    **(context or {}),
                    "step": "enrichment",
                    "unit_id": unit.id,
                    "attempt": attempt,
                    "max_retries": self.max_retries,
                    "retry_count": attempt - 1,
                })
                plan = self.error_handler.get_recovery_strategy(entry, retry_count=attempt - 1)
                if attempt >= self.max_retries or attempt - 1 >= plan.max_retries:
                    raise

                outcome = await self.error_handler.execute_recovery_strategy(
                    plan, {"retry_count": attempt - 1, **(context or {})}
                )
                if not outcome.should_retry:
                    raise
                logger.info(f"Retrying enrichment for {unit.id}, attempt {attempt + 1}/{self.max_retries}")

        raise RuntimeError(f"Enrichment of {unit.id} did not run")

    async def _call_llm(self, unit: CodeUnit) -> Enrichment:
        if self.llm is None:
            raise LLMUnavailableError(self.llm_model, self.unavailable_reason or "no LLM configured")

        await self.rate_limiter.acquire()
        request = LLMRequest(
            prompt=self.construct_prompt(unit),
            system_prompt=SYSTEM_INSTRUCTION,
            temperature=self.temperature,
            max_tokens=self.max_output_tokens,
            metadata={"unit_id": unit.id},
        )
        try:
            response = await self.llm.generate_response(request)
        except Exception as e:
            self._record_request(False, e)
            raise

        self._record_request(True)
        return self.parse_response(response.text, unit)

    def construct_prompt(self, unit: CodeUnit) -> str:
        return PROMPT_TEMPLATE.format(
            language=unit.language,
            context=self.build_context_info(unit),
            source=unit.source,
        )

    def build_context_info(self, unit: CodeUnit) -> str:
        """Element header plus language-specific metadata lines."""
        lines = [f"ELEMENT: {unit.id} ({unit.kind.value} in {unit.language})"]
        if unit.file_path:
            lines.append(f"FILE: {unit.file_path}")

        metadata = unit.metadata
        if unit.language == "python":
            if metadata.get("is_async"):
                lines.append("NOTE: This is an async function")
            if metadata.get("decorators"):
                lines.append(f"DECORATORS: {', '.join(metadata['decorators'])}")
        elif unit.language == "java":
            if metadata.get("modifiers"):
                lines.append(f"MODIFIERS: {' '.join(metadata['modifiers'])}")
            if metadata.get("return_type"):
                lines.append(f"RETURN TYPE: {metadata['return_type']}")
        elif unit.language == "go":
            if metadata.get("is_exported"):
                lines.append("NOTE: This is an exported element")
            if metadata.get("receiver_type"):
                lines.append(f"RECEIVER: {metadata['receiver_type']}")
        elif unit.language in ("typescript", "javascript"):
            if metadata.get("is_async"):
                lines.append("NOTE: This is an async function")
            if metadata.get("return_type"):
                lines.append(f"RETURN TYPE: {metadata['return_type']}")

        parameters = metadata.get("parameters") or []
        if unit.kind in (UnitKind.FUNCTION, UnitKind.METHOD) and parameters:
            rendered = []
            for param in parameters:
                if isinstance(param, dict):
                    name, type_ = param.get("name", ""), param.get("type")
                    rendered.append(f"{name}: {type_}" if type_ else name)
                else:
                    rendered.append(str(param))
            lines.append(f"PARAMETERS: {', '.join(rendered)}")

        return "\n".join(lines)

    def parse_response(self, response_text: str, unit: CodeUnit) -> Enrichment:
        """Parse the JSON envelope, falling back to heuristics on malformed replies."""
        try:
            match = JSON_ENVELOPE.search(response_text)
            if not match:
                raise ValueError("No JSON found in response")

            parsed = json.loads(match.group(0))
            if not isinstance(parsed, dict) or not parsed.get("description") or not parsed.get("purpose"):
                raise ValueError("Missing required fields in response")
        except ValueError as e:
            logger.warning(f"Failed to parse LLM response for {unit.id}: {e}")
            return self.extract_fallback_enrichment(response_text, unit)

        tags = parsed.get("tags")
        complexity = parsed.get("complexity")
        return Enrichment(
            description=sanitize_text(parsed["description"]),
            summary=sanitize_text(parsed["purpose"]),
            tags=[sanitize_text(tag) for tag in tags] if isinstance(tags, list) else [],
            complexity=complexity if complexity in ("low", "medium", "high") else Complexity.MEDIUM,
            confidence=self.calculate_confidence(parsed, response_text),
        )

    def extract_fallback_enrichment(self, response_text: str, unit: CodeUnit) -> Enrichment:
        lines = [line.strip() for line in (response_text or "").splitlines() if line.strip()]
        description = lines[0][:100] if lines else f"{unit.kind.value} in {unit.language}"
        return Enrichment(
            description=sanitize_text(description),
            summary=f"{unit.kind.value} requiring manual review",
            tags=[unit.kind.value, unit.language, "manual-review"],
            complexity=Complexity.MEDIUM,
            confidence=0.3,
            fallback=True,
        )

    def create_fallback_enrichment(self, unit: CodeUnit, error: BaseException) -> Enrichment:
        """Synthetic result substituted when a unit could not be enriched."""
        message = getattr(error, "message", None) or str(error)
        return Enrichment(
            description=f"{unit.kind.value} {unit.id} - Error during enrichment: {message}",
            summary=f"Failed to analyze {unit.kind.value}",
            tags=[unit.kind.value, unit.language, "parsing-error"],
            complexity=Complexity.UNKNOWN,
            confidence=0.0,
            error=message,
        )

    def calculate_confidence(self, parsed: Dict[str, Any], full_response: str) -> float:
        confidence = 0.8
        description = str(parsed.get("description", ""))
        lowered = description.lower()

        if len(description) < 20:
            confidence -= 0.2
        if "this code" in lowered or "this function" in lowered:
            confidence -= 0.1

        tags = parsed.get("tags")
        if isinstance(tags, list) and len(tags) >= 3:
            confidence += 0.1
        if "algorithm" in full_response or "pattern" in full_response:
            confidence += 0.1

        return round(max(0.1, min(1.0, confidence)), 4)

    def create_cache_key(self, unit: CodeUnit) -> str:
        content = unit.source + json.dumps(unit.metadata, sort_keys=True, default=str)
        return f"{unit.language}_{unit.kind.value}_{compute_content_hash(content)[:16]}"

    def _record_request(self, success: bool, error: Optional[BaseException] = None) -> None:
        self.request_history.append({
            "timestamp": time.time(),
            "success": success,
            "error": str(error) if error else None,
        })
        if len(self.request_history) > 1000:
            self.request_history = self.request_history[-500:]
        if self._metrics is not None:
            provider = self.llm.get_provider_name() if self.llm else "none"
            self._metrics.record_external_request("llm", provider, "success" if success else "error")

    def get_enrichment_stats(self) -> Dict[str, Any]:
        """Request outcomes over the last hour plus cache size."""
        now = time.time()
        recent = [req for req in self.request_history if now - req["timestamp"] < 3600]
        successful = sum(1 for req in recent if req["success"])
        minutes = max(1.0, (now - recent[0]["timestamp"]) / 60) if recent else 1.0
        return {
            "total_requests": len(recent),
            "successful_requests": successful,
            "failed_requests": len(recent) - successful,
            "success_rate": successful / len(recent) if recent else 0,
            "cache_size": len(self.cache),
            "cache_hits": self.cache_hits,
            "average_requests_per_minute": len(recent) / minutes,
        }

    def clear_cache(self) -> None:
        self.cache.clear()
        self.request_history = []
        self.cache_hits = 0

    def export_cache(self) -> List[Tuple[str, Dict[str, Any]]]:
        return [(key, enrichment.model_dump(mode="json")) for key, enrichment in self.cache.items()]

    def import_cache(self, cache_data: Iterable[Tuple[str, Dict[str, Any]]]) -> None:
        self.cache = {key: Enrichment.model_validate(value) for key, value in cache_data}
