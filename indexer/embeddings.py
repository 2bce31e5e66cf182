"""Embedding generation.

Texts are embedded in batches through one or more providers. Providers are
tried in order for each batch (OpenRouter first, then OpenAI), so a provider
outage degrades to the next one before a batch is reported as failed.
"""

import asyncio
import hashlib
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

import numpy as np
from openai import AsyncOpenAI

from config.settings import EmbeddingBackend, ProviderName, Settings, get_settings
from observability.logging import get_structured_logger
from observability.metrics import record_embedding_batch
from services.shared.errors import ConfigurationError, PipelineError, ValidationError
from services.shared.models import normalize_text
from services.shared.retry import RetryPolicy

logger = logging.getLogger(__name__)
slog = get_structured_logger(__name__, component="embeddings")

DEFAULT_BATCH_SIZE = 25
DEFAULT_MAX_PARALLEL_BATCHES = 4
DEFAULT_RETRY_POLICY = RetryPolicy(max_attempts=3, base_delay=0.75, max_delay=10.0, jitter=0.2)


class EmbeddingProvider(Protocol):
    name: str

    async def embed(self, texts: List[str]) -> List[List[float]]: ...


class OpenAIEmbeddingProvider:
    """Embeddings through an OpenAI-compatible endpoint (OpenAI or OpenRouter)."""

    def __init__(self, client: AsyncOpenAI, model: str, name: str = "openai"):
        self.client = client
        self.model = model
        self.name = name

    @classmethod
    def for_provider(cls, settings: Settings, provider: ProviderName) -> "OpenAIEmbeddingProvider":
        if provider == ProviderName.OPENROUTER:
            headers = {"X-Title": settings.app_name}
            if settings.app_url:
                headers["HTTP-Referer"] = settings.app_url
            client = AsyncOpenAI(api_key=settings.openrouter_api_key,
                                 base_url=settings.openrouter_base_url,
                                 default_headers=headers,
                                 timeout=settings.request_timeout,
                                 max_retries=0)
            return cls(client, settings.openrouter_embedding_model, name="openrouter")

        client = AsyncOpenAI(api_key=settings.openai_api_key, timeout=settings.request_timeout,
                             max_retries=0)
        return cls(client, settings.openai_embedding_model, name="openai")

    async def embed(self, texts: List[str]) -> List[List[float]]:
        response = await self.client.embeddings.create(model=self.model, input=texts)
        data = sorted(response.data, key=lambda d: d.index)
        return [list(d.embedding) for d in data]


class SentenceTransformerEmbeddingProvider:
    """Local embeddings with sentence-transformers, run in a worker thread."""

    name = "local"

    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        # Heavy import (torch); only paid when the local backend is selected
        from sentence_transformers import SentenceTransformer

        logger.info(f"Loading embedding model: {model_name}")
        self.model_name = model_name
        self.model = SentenceTransformer(model_name)
        logger.info(f"Model loaded. Embedding dimension: {self.model.get_sentence_embedding_dimension()}")

    def _encode(self, texts: List[str]) -> List[List[float]]:
        embeddings = self.model.encode(texts, convert_to_numpy=True, show_progress_bar=False)
        return [emb.astype(np.float32).tolist() for emb in embeddings]

    async def embed(self, texts: List[str]) -> List[List[float]]:
        return await asyncio.to_thread(self._encode, texts)


def build_embedding_providers(settings: Optional[Settings] = None) -> List[EmbeddingProvider]:
    """Providers in fallback order for the configured backend.

    Raises:
        ConfigurationError: No API key is configured for the remote backend
    """
    settings = settings or get_settings()
    if settings.embedding_backend == EmbeddingBackend.LOCAL:
        return [SentenceTransformerEmbeddingProvider(settings.local_embedding_model)]

    providers: List[EmbeddingProvider] = []
    if settings.openrouter_api_key:
        providers.append(OpenAIEmbeddingProvider.for_provider(settings, ProviderName.OPENROUTER))
    if settings.openai_api_key:
        providers.append(OpenAIEmbeddingProvider.for_provider(settings, ProviderName.OPENAI))
    if not providers:
        raise ConfigurationError(
            "No embedding provider configured: set OPENROUTER_API_KEY or OPENAI_API_KEY"
        )
    return providers


@dataclass
class EmbeddingBatchResult:
    """Per-id outcome of an embedding request.

    Every input id ends up in exactly one of ``embeddings`` or ``failed``.
    """
    embeddings: Dict[str, List[float]] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)
    cache_hits: int = 0
    batches: int = 0
    failed_batches: int = 0

    @property
    def succeeded(self) -> List[str]:
        return list(self.embeddings)

    @property
    def failed_ids(self) -> List[str]:
        return list(self.failed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "succeeded": len(self.embeddings),
            "failed": len(self.failed),
            "failed_ids": self.failed_ids,
            "cache_hits": self.cache_hits,
            "batches": self.batches,
            "failed_batches": self.failed_batches,
        }


def _item_fields(item: Any) -> Tuple[str, str]:
    if isinstance(item, dict):
        return str(item["id"]), item.get("text") or ""
    return str(item.id), item.text or ""


def text_cache_key(text: str) -> str:
    return hashlib.sha256(normalize_text(text).encode("utf-8")).hexdigest()


class EmbeddingService:
    """Batched, retried embedding generation with partial-failure results."""

    def __init__(self,
                 providers: Sequence[EmbeddingProvider],
                 batch_size: int = DEFAULT_BATCH_SIZE,
                 max_parallel_batches: int = DEFAULT_MAX_PARALLEL_BATCHES,
                 retry_policy: Optional[RetryPolicy] = None,
                 cache_size: int = 10000,
                 sleep: Optional[Callable[[float], Awaitable[None]]] = None):
        """Initialize the service.

        Args:
            providers: Providers tried in order for each batch
            batch_size: Texts per provider call
            max_parallel_batches: Batches in flight at once
            retry_policy: Per-provider, per-batch retry policy
            cache_size: Entries kept in the text-hash cache (0 disables it)
            sleep: Backoff sleep, injectable for tests
        """
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        if max_parallel_batches < 1:
            raise ValueError("max_parallel_batches must be positive")

        self.providers = list(providers)
        self.batch_size = batch_size
        self.max_parallel_batches = max_parallel_batches
        self.retry_policy = retry_policy or DEFAULT_RETRY_POLICY
        self.cache_size = cache_size
        self.sleep = sleep
        self._cache: "OrderedDict[str, List[float]]" = OrderedDict()

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **kwargs) -> "EmbeddingService":
        return cls(build_embedding_providers(settings), **kwargs)

    def _cache_get(self, key: str) -> Optional[List[float]]:
        vector = self._cache.get(key)
        if vector is not None:
            self._cache.move_to_end(key)
        return vector

    def _cache_put(self, key: str, vector: List[float]):
        if self.cache_size <= 0:
            return
        self._cache[key] = vector
        self._cache.move_to_end(key)
        while len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)

    async def _call_provider(self, provider: EmbeddingProvider, texts: List[str]) -> List[List[float]]:
        async def attempt() -> List[List[float]]:
            vectors = await provider.embed(texts)
            if len(vectors) != len(texts):
                raise ValidationError(
                    f"{provider.name} returned {len(vectors)} vectors for {len(texts)} texts"
                )
            if any(not v for v in vectors):
                raise ValidationError(f"{provider.name} returned an empty vector")
            return vectors

        return await self.retry_policy.run(attempt, description=f"{provider.name} embeddings",
                                           sleep=self.sleep)

    async def _embed_texts(self, texts: List[str]) -> List[List[float]]:
        """Embed one batch, falling through providers until one succeeds."""
        if not self.providers:
            raise ConfigurationError("No embedding provider configured")

        errors: List[BaseException] = []
        for provider in self.providers:
            try:
                return await self._call_provider(provider, texts)
            except PipelineError as e:
                errors.append(e)
                slog.warning("Embedding provider failed", provider=provider.name,
                             batch_size=len(texts), error=str(e))

        if all(isinstance(e, ConfigurationError) for e in errors):
            raise errors[0]
        message = " | ".join(str(e) for e in errors)
        raise PipelineError(f"Embedding generation failed: {message}", cause=errors[-1])

    async def generate_embeddings(self, items: Sequence[Any]) -> EmbeddingBatchResult:
        """Embed ``items`` (dicts or objects with ``id`` and ``text``).

        Returns once every batch has settled. Failed batches are reported per
        id; only configuration errors are raised.

        Raises:
            ConfigurationError: No provider can be used at all
        """
        result = EmbeddingBatchResult()
        if not items:
            return result

        start = time.perf_counter()
        pending: "OrderedDict[str, Tuple[str, List[str]]]" = OrderedDict()

        for item in items:
            item_id, text = _item_fields(item)
            if item_id in result.embeddings or item_id in result.failed:
                continue
            text = text.strip()
            if not text:
                result.failed[item_id] = "empty"
                continue
            key = text_cache_key(text)
            cached = self._cache_get(key)
            if cached is not None:
                result.embeddings[item_id] = cached
                result.cache_hits += 1
                continue
            if key in pending:
                if item_id not in pending[key][1]:
                    pending[key][1].append(item_id)
            else:
                pending[key] = (text, [item_id])

        entries = list(pending.items())
        batches = [entries[i:i + self.batch_size] for i in range(0, len(entries), self.batch_size)]
        result.batches = len(batches)
        semaphore = asyncio.Semaphore(self.max_parallel_batches)

        async def run_batch(batch):
            async with semaphore:
                batch_start = time.perf_counter()
                try:
                    vectors = await self._embed_texts([text for _, (text, _) in batch])
                except ConfigurationError:
                    record_embedding_batch("failed", time.perf_counter() - batch_start)
                    raise
                except PipelineError as e:
                    record_embedding_batch("failed", time.perf_counter() - batch_start)
                    result.failed_batches += 1
                    for _, (_, ids) in batch:
                        for item_id in ids:
                            result.failed[item_id] = str(e)
                    return
                record_embedding_batch("succeeded", time.perf_counter() - batch_start)
                for (key, (_, ids)), vector in zip(batch, vectors):
                    vector = [float(x) for x in vector]
                    self._cache_put(key, vector)
                    for item_id in ids:
                        result.embeddings[item_id] = vector

        outcomes = await asyncio.gather(*(run_batch(b) for b in batches), return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                # Unexpected errors are systemic; per-batch provider errors were tallied above
                raise outcome

        slog.info("Embedding call finished", items=len(items), succeeded=len(result.embeddings),
                  failed=len(result.failed), cache_hits=result.cache_hits, batches=result.batches,
                  duration_ms=round((time.perf_counter() - start) * 1000, 1))
        return result

    async def embed_query(self, text: str) -> List[float]:
        """Embed a single query string.

        Raises:
            ValueError: The query is empty
            PipelineError: Every provider failed
        """
        text = (text or "").strip()
        if not text:
            raise ValueError("Query text cannot be empty")

        key = text_cache_key(text)
        cached = self._cache_get(key)
        if cached is not None:
            return cached

        start = time.perf_counter()
        try:
            vectors = await self._embed_texts([text])
        except PipelineError:
            record_embedding_batch("failed", time.perf_counter() - start)
            raise
        record_embedding_batch("succeeded", time.perf_counter() - start)
        vector = [float(x) for x in vectors[0]]
        self._cache_put(key, vector)
        return vector
