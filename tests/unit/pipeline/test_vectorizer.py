"""
Unit tests for embedding providers and the batched Vectorizer.
"""

from unittest.mock import patch

import numpy as np
import pytest

from codeatlas.config import AISettings
from codeatlas.monitoring.metrics import MetricsCollector
from codeatlas.pipeline.vectorizer import (
    EmbeddingProvider,
    GeckoEmbeddingProvider,
    OpenAIEmbeddingProvider,
    TfidfEmbeddingProvider,
    Vectorizer,
    determine_provider,
)
from codeatlas.util.errors import ConfigurationError, ExternalServiceError


class FakeProvider(EmbeddingProvider):
    """Four-dimensional provider that fails on texts containing 'fail'."""

    name = "fake"
    dimension = 4
    max_text_length = 50
    batch_delay = 0.25

    def __init__(self, fail_init=False, wrong_shape=False):
        super().__init__("fake-model")
        self.fail_init = fail_init
        self.wrong_shape = wrong_shape
        self.embedded = []

    async def initialize(self):
        if self.fail_init:
            raise ConfigurationError("FAKE_KEY", "missing")

    async def embed(self, text):
        self.embedded.append(text)
        if "fail" in text:
            raise RuntimeError("provider exploded")
        if self.wrong_shape:
            return np.ones(3, dtype=np.float32)
        return np.full(4, len(text), dtype=np.float32)


class TestDetermineProvider:
    """Test model-name provider selection."""

    @pytest.mark.parametrize("model,provider", [
        ("text-embedding-ada-002", "openai"),
        ("text-embedding-3-small", "openai"),
        ("textembedding-gecko@003", "google"),
        ("all-MiniLM-L6-v2", "local"),
    ])
    def test_families(self, model, provider):
        assert determine_provider(model) == provider


class TestTfidfProvider:
    """Test the offline TF-IDF provider."""

    def setup_method(self):
        self.provider = TfidfEmbeddingProvider()

    def test_known_terms(self):
        vector = self.provider.transform("function class function")

        assert vector.shape == (384,)
        assert vector[0] > vector[1] > 0
        assert np.linalg.norm(vector) == pytest.approx(1.0, rel=1e-5)

    def test_no_vocabulary_terms_is_zero(self):
        vector = self.provider.transform("zebra quokka")

        assert vector.shape == (384,)
        assert not vector.any()

    def test_deterministic(self):
        first = self.provider.transform("async api request handler")
        second = TfidfEmbeddingProvider().transform("async api request handler")

        np.testing.assert_array_equal(first, second)


class TestOpenAIProvider:
    """Test OpenAI provider configuration."""

    @pytest.mark.asyncio
    async def test_requires_key(self):
        provider = OpenAIEmbeddingProvider("text-embedding-ada-002", AISettings())

        with pytest.raises(ConfigurationError):
            await provider.initialize()

    @pytest.mark.asyncio
    async def test_initialize_with_key(self):
        settings = AISettings(openai_api_key="sk-test", openai_base_url="http://localhost:8080/v1/")
        provider = OpenAIEmbeddingProvider("text-embedding-ada-002", settings)

        await provider.initialize()

        assert provider.base_url == "http://localhost:8080/v1"
        await provider.close()


class TestGeckoProvider:
    """Test the google-generativeai embedding provider with the client patched."""

    @pytest.mark.asyncio
    async def test_requires_key(self):
        provider = GeckoEmbeddingProvider("textembedding-gecko@003", AISettings())

        with pytest.raises(ConfigurationError, match="GOOGLE_API_KEY"):
            await provider.initialize()

    @pytest.mark.asyncio
    async def test_vectorizer_uses_gecko(self, no_sleep):
        settings = AISettings(google_api_key="g-key")
        reply = {"embedding": [0.5] * 768}

        with patch("google.generativeai.configure") as configure, \
                patch("google.generativeai.embed_content", return_value=reply) as embed_content:
            vectorizer = Vectorizer("textembedding-gecko@003", settings=settings, sleep=no_sleep)
            await vectorizer.initialize()
            vectors = await vectorizer.create_embeddings(["def add(a, b)"])

        configure.assert_called_once_with(api_key="g-key")
        embed_content.assert_called_once_with(model="models/textembedding-gecko@003", content="def add a b")
        assert vectorizer.provider_name == "google"
        assert vectorizer.vector_dimension == 768
        assert vectors[0].shape == (768,)
        assert vectors[0][0] == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_client_failure_is_external_service_error(self):
        provider = GeckoEmbeddingProvider("models/textembedding-gecko@003", AISettings(gemini_api_key="g-key"))

        with patch("google.generativeai.configure"), \
                patch("google.generativeai.embed_content", side_effect=RuntimeError("quota exceeded")):
            await provider.initialize()
            with pytest.raises(ExternalServiceError, match="quota exceeded") as excinfo:
                await provider.embed("text")

        assert provider.api_model == "models/textembedding-gecko@003"
        assert isinstance(excinfo.value.cause, RuntimeError)


class TestVectorizerInitialization:
    """Test provider chain resolution."""

    @pytest.mark.asyncio
    async def test_falls_back_to_tfidf(self):
        vectorizer = Vectorizer("text-embedding-ada-002", settings=AISettings())

        await vectorizer.initialize()

        assert vectorizer.provider_name == "local"
        assert vectorizer.vector_dimension == 384

    @pytest.mark.asyncio
    async def test_first_working_provider_wins(self):
        broken, working = FakeProvider(fail_init=True), FakeProvider()
        vectorizer = Vectorizer("fake-model", providers=[broken, working])

        await vectorizer.initialize()

        assert vectorizer.provider is working
        assert vectorizer.vector_dimension == 4

    @pytest.mark.asyncio
    async def test_all_providers_fail(self):
        vectorizer = Vectorizer("fake-model", providers=[FakeProvider(fail_init=True)])

        await vectorizer.initialize()

        assert vectorizer.provider_name == "local"

    @pytest.mark.asyncio
    async def test_not_initialized(self):
        vectorizer = Vectorizer("fake-model", providers=[FakeProvider()])

        with pytest.raises(RuntimeError):
            await vectorizer.create_embeddings(["text"])


class TestCreateEmbeddings:
    """Test batched embedding generation."""

    @pytest.mark.asyncio
    async def test_batches_progress_and_pacing(self, no_sleep):
        vectorizer = Vectorizer("fake-model", batch_size=2, providers=[FakeProvider()], sleep=no_sleep)
        await vectorizer.initialize()
        progress = []

        vectors = await vectorizer.create_embeddings(
            ["a one", "b two", "c three", "d four", "e five"],
            lambda done, total: progress.append((done, total)),
        )

        assert len(vectors) == 5
        assert progress == [(2, 5), (4, 5), (5, 5)]
        assert no_sleep.calls == [0.25, 0.25]

    @pytest.mark.asyncio
    async def test_failed_text_gets_zero_vector(self, no_sleep):
        vectorizer = Vectorizer("fake-model", providers=[FakeProvider()], sleep=no_sleep)
        await vectorizer.initialize()

        vectors = await vectorizer.create_embeddings(["good text", "please fail", "more text"])

        assert all(vector.shape == (4,) for vector in vectors)
        assert vectors[0].any()
        assert not vectors[1].any()
        assert vectors[2].any()

    @pytest.mark.asyncio
    async def test_failed_batch_gets_zero_vectors(self, no_sleep, monkeypatch):
        vectorizer = Vectorizer("fake-model", batch_size=2, providers=[FakeProvider()], sleep=no_sleep)
        await vectorizer.initialize()
        real_batch = vectorizer.process_embedding_batch

        async def first_batch_explodes(batch):
            if batch[0].startswith("boom"):
                raise RuntimeError("batch exploded")
            return await real_batch(batch)

        monkeypatch.setattr(vectorizer, "process_embedding_batch", first_batch_explodes)
        progress = []

        vectors = await vectorizer.create_embeddings(
            ["boom one", "boom two", "fine three"],
            lambda done, total: progress.append((done, total)),
        )

        assert [vector.shape for vector in vectors] == [(4,)] * 3
        assert not vectors[0].any() and not vectors[1].any()
        assert vectors[2].any()
        assert progress == [(2, 3), (3, 3)]
        assert no_sleep.calls == [0.25]

    @pytest.mark.asyncio
    async def test_wrong_dimension_replaced(self, no_sleep):
        vectorizer = Vectorizer("fake-model", providers=[FakeProvider(wrong_shape=True)], sleep=no_sleep)
        await vectorizer.initialize()

        vectors = await vectorizer.create_embeddings(["text"])

        assert vectors[0].shape == (4,)
        assert not vectors[0].any()

    @pytest.mark.asyncio
    async def test_cache(self, no_sleep):
        provider = FakeProvider()
        vectorizer = Vectorizer("fake-model", providers=[provider], sleep=no_sleep)
        await vectorizer.initialize()

        await vectorizer.create_embeddings(["same text", "Same   text!"])

        assert len(provider.embedded) == 1
        assert vectorizer.cache_hits == 1
        stats = vectorizer.get_vectorization_stats()
        assert stats["cache_size"] == 1
        assert stats["cache_hit_rate"] == 0.5

    @pytest.mark.asyncio
    async def test_empty_input_rejected(self):
        vectorizer = Vectorizer("fake-model", providers=[FakeProvider()])
        await vectorizer.initialize()

        with pytest.raises(ValueError):
            await vectorizer.create_embeddings([])

    @pytest.mark.asyncio
    async def test_external_requests_recorded(self, no_sleep):
        metrics = MetricsCollector()
        vectorizer = Vectorizer("fake-model", providers=[FakeProvider()], sleep=no_sleep, metrics=metrics)
        await vectorizer.initialize()

        await vectorizer.create_embeddings(["ok", "fail now"])

        labels = {"service": "embedding", "provider": "fake"}
        assert metrics.get_sample_value("codeatlas_external_requests_total", {**labels, "outcome": "success"}) == 1.0
        assert metrics.get_sample_value("codeatlas_external_requests_total", {**labels, "outcome": "error"}) == 1.0


class TestPreprocessing:
    """Test text normalization."""

    @pytest.mark.asyncio
    async def test_preprocess_text(self):
        vectorizer = Vectorizer("fake-model", providers=[FakeProvider()])
        await vectorizer.initialize()

        assert vectorizer.preprocess_text("Hello,   World!!") == "hello world"
        assert vectorizer.preprocess_text(None) == "empty"
        assert vectorizer.preprocess_text("!!!") == "empty"

        long_text = vectorizer.preprocess_text("word " * 40)
        assert long_text.endswith("...")
        assert len(long_text) == 53
