"""
Embedding generation for enriched code units.

The embedding model name selects an ordered chain of providers; the first
provider that initializes wins and fixes the vector dimension for the
lifetime of the Vectorizer. The local TF-IDF provider terminates every chain
and never fails, so initialization always succeeds.
"""

import asyncio
import math
import re
from abc import ABC, abstractmethod
from collections import Counter
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import aiohttp
import numpy as np

from ..config import AISettings, get_settings
from ..util.errors import ConfigurationError, ExternalServiceError
from ..util.fs import compute_content_hash
from ..util.logging_config import get_logger

logger = get_logger("pipeline.vectorizer")

SleepFunc = Callable[[float], Awaitable[Any]]
EmbeddingProgress = Callable[[int, int], Any]


class EmbeddingProvider(ABC):
    """One way of turning preprocessed text into a fixed-length vector."""

    name: str = "base"
    dimension: int = 0
    max_text_length: int = 1000
    batch_delay: float = 1.0

    def __init__(self, model_name: str):
        self.model_name = model_name

    @abstractmethod
    async def initialize(self) -> None:
        """Acquire credentials and clients. Raises if the provider is unusable."""

    @abstractmethod
    async def embed(self, text: str) -> np.ndarray:
        """Embed one preprocessed text."""

    async def close(self) -> None:
        pass


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """OpenAI-compatible ``/embeddings`` REST endpoint."""

    name = "openai"
    dimension = 1536
    max_text_length = 8000
    batch_delay = 1.0

    def __init__(self, model_name: str, settings: Optional[AISettings] = None):
        super().__init__(model_name)
        self.settings = settings
        self.base_url = ""
        self._api_key: Optional[str] = None
        self._session: Optional[aiohttp.ClientSession] = None

    async def initialize(self) -> None:
        settings = self.settings or get_settings().ai
        if not settings.openai_api_key:
            raise ConfigurationError("OPENAI_API_KEY", "OPENAI_API_KEY environment variable is required")
        self._api_key = settings.openai_api_key
        self.base_url = settings.openai_base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=settings.request_timeout_seconds)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
        return self._session

    async def embed(self, text: str) -> np.ndarray:
        session = await self._get_session()
        async with session.post(
            f"{self.base_url}/embeddings",
            json={"model": self.model_name, "input": text},
        ) as response:
            if response.status == 429:
                raise ExternalServiceError("openai", "rate limit exceeded", retryable=True)
            if response.status != 200:
                body = await response.text()
                raise ExternalServiceError(
                    "openai", f"embedding API error: HTTP {response.status} {body[:200]}"
                )
            data = await response.json()

        return np.asarray(data["data"][0]["embedding"], dtype=np.float32)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None


class GeckoEmbeddingProvider(EmbeddingProvider):
    """Google embedding models through google-generativeai."""

    name = "google"
    dimension = 768
    max_text_length = 6000
    batch_delay = 0.5

    def __init__(self, model_name: str, settings: Optional[AISettings] = None):
        super().__init__(model_name)
        self.settings = settings
        self._genai = None

    @property
    def api_model(self) -> str:
        if self.model_name.startswith("models/"):
            return self.model_name
        return f"models/{self.model_name}"

    async def initialize(self) -> None:
        settings = self.settings or get_settings().ai
        if not settings.google_key:
            raise ConfigurationError(
                "GOOGLE_API_KEY", "GOOGLE_API_KEY environment variable is required for Google embeddings"
            )

        import google.generativeai as genai

        genai.configure(api_key=settings.google_key)
        self._genai = genai

    async def embed(self, text: str) -> np.ndarray:
        try:
            result = await asyncio.to_thread(
                self._genai.embed_content, model=self.api_model, content=text
            )
        except Exception as e:
            raise ExternalServiceError("google", f"embedding failed: {e}", cause=e) from e
        return np.asarray(result["embedding"], dtype=np.float32)


TFIDF_VOCABULARY = (
    "function", "class", "method", "variable", "parameter", "return", "import", "export",
    "interface", "type", "struct", "enum", "const", "let", "var", "async", "await",
    "public", "private", "protected", "static", "abstract", "final", "override",
    "constructor", "destructor", "getter", "setter", "property", "field", "attribute",
    "loop", "condition", "if", "else", "switch", "case", "try", "catch", "finally",
    "throw", "exception", "error", "handle", "process", "execute", "run", "call",
    "create", "initialize", "configure", "setup", "cleanup", "dispose", "destroy",
    "data", "string", "number", "boolean", "array", "object", "null", "undefined",
    "api", "http", "request", "response", "client", "server", "service", "controller",
    "model", "view", "component", "module", "library", "framework", "utility", "helper",
)

TOKEN_SPLIT = re.compile(r"[^\w\s]")


class TfidfEmbeddingProvider(EmbeddingProvider):
    """
    Offline TF-IDF over a fixed software vocabulary.

    Deterministic: term ``i`` of the vocabulary gets IDF ``log(1000 / (i + 1))``
    and occupies component ``i`` of the vector. Vectors are L2-normalized;
    text with no vocabulary terms maps to the zero vector.
    """

    name = "local"
    dimension = 384
    max_text_length = 2000
    batch_delay = 0.1

    def __init__(self, model_name: str = "tfidf"):
        super().__init__(model_name)
        self.vocabulary = {term: index for index, term in enumerate(TFIDF_VOCABULARY)}
        self.idf = {term: math.log(1000 / (index + 1)) for term, index in self.vocabulary.items()}

    async def initialize(self) -> None:
        logger.info("Using local TF-IDF vectorizer as fallback")

    @staticmethod
    def tokenize(text: str) -> List[str]:
        return [token for token in TOKEN_SPLIT.sub(" ", text.lower()).split() if len(token) > 1]

    def transform(self, text: str) -> np.ndarray:
        vector = np.zeros(self.dimension, dtype=np.float32)
        term_freq = Counter(self.tokenize(text))
        if not term_freq:
            return vector

        max_freq = max(term_freq.values())
        for term, freq in term_freq.items():
            index = self.vocabulary.get(term)
            if index is not None and index < self.dimension:
                vector[index] = (freq / max_freq) * self.idf[term]

        norm = float(np.linalg.norm(vector))
        if norm > 0:
            vector /= norm
        return vector

    async def embed(self, text: str) -> np.ndarray:
        return self.transform(text)


def determine_provider(model_name: str) -> str:
    """Provider family implied by an embedding model name."""
    if "ada" in model_name or "text-embedding" in model_name:
        return "openai"
    if "gecko" in model_name:
        return "google"
    return "local"


class Vectorizer:
    """
    Batched, cached embedding generation.

    Every vector produced by one instance has ``vector_dimension``
    components, including the zero vectors substituted for failed texts.
    """

    def __init__(
        self,
        embedding_model: str = "text-embedding-ada-002",
        batch_size: int = 100,
        settings: Optional[AISettings] = None,
        providers: Optional[Sequence[EmbeddingProvider]] = None,
        sleep: SleepFunc = asyncio.sleep,
        metrics: Any = None,
    ):
        self.embedding_model = embedding_model
        self.batch_size = batch_size
        self._sleep = sleep
        self._metrics = metrics
        self._candidates = list(providers) if providers is not None else self._provider_chain(settings)
        self.provider: Optional[EmbeddingProvider] = None
        self.vector_dimension: Optional[int] = None
        self.cache: Dict[str, np.ndarray] = {}
        self.request_count = 0
        self.cache_hits = 0

    def _provider_chain(self, settings: Optional[AISettings]) -> List[EmbeddingProvider]:
        family = determine_provider(self.embedding_model)
        chain: List[EmbeddingProvider] = []
        if family == "openai":
            chain.append(OpenAIEmbeddingProvider(self.embedding_model, settings))
        elif family == "google":
            chain.append(GeckoEmbeddingProvider(self.embedding_model, settings))
        chain.append(TfidfEmbeddingProvider())
        return chain

    @property
    def is_initialized(self) -> bool:
        return self.provider is not None

    @property
    def provider_name(self) -> Optional[str]:
        return self.provider.name if self.provider else None

    async def initialize(self) -> None:
        """Select the first provider that initializes. Never raises past the local fallback."""
        if self.provider is not None:
            return

        for candidate in self._candidates:
            try:
                await candidate.initialize()
            except Exception as e:
                logger.warning(f"{candidate.name} embeddings not available, trying next provider: {e}")
                continue
            self.provider = candidate
            self.vector_dimension = candidate.dimension
            break

        if self.provider is None:
            fallback = TfidfEmbeddingProvider()
            await fallback.initialize()
            self.provider = fallback
            self.vector_dimension = fallback.dimension

        logger.info(
            f"Vectorizer initialized with {self.provider.name} provider ({self.embedding_model})",
            extra={"extra_fields": {"vector_dimension": self.vector_dimension}},
        )

    async def create_embeddings(
        self,
        texts: Sequence[str],
        progress_callback: Optional[EmbeddingProgress] = None,
    ) -> List[np.ndarray]:
        """
        Embed ``texts`` in batches, preserving order.

        Raises:
            RuntimeError: If the vectorizer has not been initialized
            ValueError: If ``texts`` is empty
        """
        if self.provider is None:
            raise RuntimeError("Vectorizer not initialized. Call initialize() first.")
        if not texts:
            raise ValueError("Texts must be a non-empty sequence")

        batches = [texts[i:i + self.batch_size] for i in range(0, len(texts), self.batch_size)]
        vectors: List[np.ndarray] = []

        for number, batch in enumerate(batches, start=1):
            try:
                vectors.extend(await self.process_embedding_batch(batch))
            except Exception as e:
                logger.error(f"Failed to process batch {number}: {e}")
                vectors.extend(self.create_empty_vector() for _ in batch)

            if progress_callback is not None:
                progress_callback(len(vectors), len(texts))

            if number < len(batches):
                await self._sleep(self.provider.batch_delay)

        return vectors

    async def process_embedding_batch(self, texts: Sequence[str]) -> List[np.ndarray]:
        vectors = []
        for text in texts:
            clean = self.preprocess_text(text)
            cache_key = self.create_cache_key(clean)

            cached = self.cache.get(cache_key)
            if cached is not None:
                self.cache_hits += 1
                vectors.append(cached)
                continue

            try:
                vector = await self.provider.embed(clean)
                if vector.shape != (self.vector_dimension,):
                    raise ValueError(
                        f"Provider returned {vector.shape[0]} dimensions, expected {self.vector_dimension}"
                    )
            except Exception as e:
                logger.warning(f"Failed to create embedding for text: {e}")
                self._record_request("error")
                vectors.append(self.create_empty_vector())
                continue

            self.cache[cache_key] = vector
            self.request_count += 1
            self._record_request("success")
            vectors.append(vector)

        return vectors

    def preprocess_text(self, text: Any) -> str:
        """Lowercase, strip special characters, collapse whitespace, truncate."""
        if not text or not isinstance(text, str):
            return "empty"

        cleaned = re.sub(r"[^\w\s.-]", " ", text.lower())
        cleaned = re.sub(r"\s+", " ", cleaned).strip()

        max_length = self.provider.max_text_length if self.provider else 1000
        if len(cleaned) > max_length:
            cleaned = cleaned[:max_length] + "..."

        return cleaned or "empty"

    def create_empty_vector(self) -> np.ndarray:
        return np.zeros(self.vector_dimension, dtype=np.float32)

    def create_cache_key(self, text: str) -> str:
        return f"{self.embedding_model}_{compute_content_hash(text)[:16]}"

    def _record_request(self, outcome: str) -> None:
        if self._metrics is not None:
            self._metrics.record_external_request("embedding", self.provider_name or "unknown", outcome)

    def get_vectorization_stats(self) -> Dict[str, Any]:
        lookups = self.request_count + self.cache_hits
        return {
            "provider": self.provider_name,
            "model": self.embedding_model,
            "vector_dimension": self.vector_dimension,
            "request_count": self.request_count,
            "cache_size": len(self.cache),
            "cache_hit_rate": self.cache_hits / lookups if lookups else 0,
        }

    def clear_cache(self) -> None:
        self.cache.clear()
        self.request_count = 0
        self.cache_hits = 0

    async def close(self) -> None:
        if self.provider is not None:
            await self.provider.close()
