"""Unit tests for the embedding service.

Tests cover:
- Partial batch failures and per-id accounting
- Provider fallback and configuration errors
- Text-hash caching and in-call deduplication
- OpenAI-compatible provider response handling
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock

import pytest

from conftest import FakeEmbeddingProvider, make_chunk, no_sleep
from config.settings import Settings
from indexer.embeddings import (
    EmbeddingService,
    OpenAIEmbeddingProvider,
    build_embedding_providers,
)
from services.shared.errors import (
    ConfigurationError,
    PipelineError,
    TransientNetworkError,
)
from services.shared.retry import RetryPolicy, no_retry


def items(*texts):
    return [{"id": f"c{i}", "text": text} for i, text in enumerate(texts)]


class FailingOnTextProvider(FakeEmbeddingProvider):
    """Fails any batch that contains ``bad_text``."""

    def __init__(self, bad_text, **kwargs):
        super().__init__(**kwargs)
        self.bad_text = bad_text

    async def embed(self, texts):
        self.calls.append(list(texts))
        if self.bad_text in texts:
            raise TransientNetworkError("upstream 503", status=503)
        return [self._default(t) for t in texts]


class TestGenerateEmbeddings:
    """Batch embedding behaviour."""

    @pytest.mark.asyncio
    async def test_every_id_is_accounted_for(self):
        provider = FailingOnTextProvider("bad")
        service = EmbeddingService([provider], batch_size=2, retry_policy=no_retry(), sleep=no_sleep)

        result = await service.generate_embeddings(items("one", "two", "bad", "four", "", "six"))

        ids = {f"c{i}" for i in range(6)}
        assert set(result.embeddings) | set(result.failed) == ids
        assert not set(result.embeddings) & set(result.failed)
        assert result.failed["c4"] == "empty"
        assert "c2" in result.failed
        assert result.failed_batches == 1

    @pytest.mark.asyncio
    async def test_batches_respect_batch_size(self):
        provider = FakeEmbeddingProvider()
        service = EmbeddingService([provider], batch_size=2, retry_policy=no_retry())

        result = await service.generate_embeddings(items("a1", "b22", "c333", "d4444", "e55555"))

        assert result.batches == 3
        assert sorted(len(call) for call in provider.calls) == [1, 2, 2]
        assert len(result.succeeded) == 5

    @pytest.mark.asyncio
    async def test_accepts_chunk_objects(self, embedding_service):
        chunks = [make_chunk("x1", "first text"), make_chunk("x2", "second text")]
        result = await embedding_service.generate_embeddings(chunks)
        assert set(result.succeeded) == {"x1", "x2"}

    @pytest.mark.asyncio
    async def test_empty_input(self, embedding_service):
        result = await embedding_service.generate_embeddings([])
        assert result.embeddings == {}
        assert result.failed == {}

    @pytest.mark.asyncio
    async def test_identical_texts_are_embedded_once(self):
        provider = FakeEmbeddingProvider()
        service = EmbeddingService([provider], retry_policy=no_retry())

        result = await service.generate_embeddings(items("same text", "same  text", "other"))

        assert sum(len(call) for call in provider.calls) == 2
        assert result.embeddings["c0"] == result.embeddings["c1"]

    @pytest.mark.asyncio
    async def test_cache_avoids_second_provider_call(self):
        provider = FakeEmbeddingProvider()
        service = EmbeddingService([provider], retry_policy=no_retry())

        await service.generate_embeddings(items("cached text"))
        second = await service.generate_embeddings([{"id": "again", "text": "cached text"}])

        assert len(provider.calls) == 1
        assert second.cache_hits == 1
        assert "again" in second.embeddings

    @pytest.mark.asyncio
    async def test_cache_can_be_disabled(self):
        provider = FakeEmbeddingProvider()
        service = EmbeddingService([provider], retry_policy=no_retry(), cache_size=0)

        await service.generate_embeddings(items("text"))
        await service.generate_embeddings(items("text"))

        assert len(provider.calls) == 2

    @pytest.mark.asyncio
    async def test_count_mismatch_fails_batch(self):
        class ShortProvider(FakeEmbeddingProvider):
            async def embed(self, texts):
                return [[1.0, 0.0]]

        service = EmbeddingService([ShortProvider()], retry_policy=no_retry())
        result = await service.generate_embeddings(items("a", "b"))

        assert set(result.failed) == {"c0", "c1"}
        assert result.failed_batches == 1

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self):
        class FlakyProvider(FakeEmbeddingProvider):
            attempts = 0

            async def embed(self, texts):
                self.attempts += 1
                if self.attempts < 3:
                    raise TransientNetworkError("timeout")
                return [[0.5, 0.5] for _ in texts]

        provider = FlakyProvider()
        sleep = AsyncMock()
        service = EmbeddingService([provider], retry_policy=RetryPolicy(max_attempts=3, base_delay=0.01),
                                   sleep=sleep)

        result = await service.generate_embeddings(items("retry me"))

        assert result.succeeded == ["c0"]
        assert provider.attempts == 3
        assert sleep.await_count == 2


class TestProviderFallback:
    """Fallback order and configuration errors."""

    @pytest.mark.asyncio
    async def test_falls_back_to_second_provider(self):
        primary = FakeEmbeddingProvider(name="openrouter", fail_with=TransientNetworkError("down"))
        secondary = FakeEmbeddingProvider(name="openai")
        service = EmbeddingService([primary, secondary], retry_policy=no_retry())

        result = await service.generate_embeddings(items("hello"))

        assert result.succeeded == ["c0"]
        assert len(secondary.calls) == 1

    @pytest.mark.asyncio
    async def test_configuration_error_is_raised(self):
        provider = FakeEmbeddingProvider(fail_with=ConfigurationError("bad key"))
        service = EmbeddingService([provider], retry_policy=no_retry())

        with pytest.raises(ConfigurationError):
            await service.generate_embeddings(items("hello"))

    @pytest.mark.asyncio
    async def test_no_providers_is_configuration_error(self):
        service = EmbeddingService([], retry_policy=no_retry())
        with pytest.raises(ConfigurationError):
            await service.generate_embeddings(items("hello"))

    def test_build_providers_requires_a_key(self):
        with pytest.raises(ConfigurationError):
            build_embedding_providers(Settings())

    def test_build_providers_orders_openrouter_first(self):
        providers = build_embedding_providers(Settings(openrouter_api_key="or-key", openai_api_key="oa-key"))
        assert [p.name for p in providers] == ["openrouter", "openai"]
        assert providers[0].model == "openai/text-embedding-3-small"
        assert providers[1].model == "text-embedding-3-small"

    def test_invalid_batch_size(self):
        with pytest.raises(ValueError):
            EmbeddingService([FakeEmbeddingProvider()], batch_size=0)


class TestEmbedQuery:
    """Single-query embedding."""

    @pytest.mark.asyncio
    async def test_embed_query(self):
        provider = FakeEmbeddingProvider(vectors={"how do rules work": [0.1, 0.2, 0.3]})
        service = EmbeddingService([provider], retry_policy=no_retry())

        assert await service.embed_query("  how do rules work ") == pytest.approx([0.1, 0.2, 0.3])

    @pytest.mark.asyncio
    async def test_empty_query_raises(self, embedding_service):
        with pytest.raises(ValueError):
            await embedding_service.embed_query("   ")

    @pytest.mark.asyncio
    async def test_failure_raises_pipeline_error(self):
        provider = FakeEmbeddingProvider(fail_with=TransientNetworkError("down"))
        service = EmbeddingService([provider], retry_policy=no_retry())

        with pytest.raises(PipelineError):
            await service.embed_query("question")


class TestOpenAIEmbeddingProvider:
    """OpenAI-compatible response handling."""

    @pytest.mark.asyncio
    async def test_results_are_ordered_by_index(self):
        client = Mock()
        client.embeddings.create = AsyncMock(return_value=SimpleNamespace(data=[
            SimpleNamespace(index=1, embedding=[0.0, 1.0]),
            SimpleNamespace(index=0, embedding=[1.0, 0.0]),
        ]))
        provider = OpenAIEmbeddingProvider(client, "text-embedding-3-small")

        vectors = await provider.embed(["first", "second"])

        assert vectors == [[1.0, 0.0], [0.0, 1.0]]
        client.embeddings.create.assert_awaited_once_with(model="text-embedding-3-small",
                                                          input=["first", "second"])
