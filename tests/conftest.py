"""Shared fixtures for the idedocs test suite."""

import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence

import pytest

# Add the project root to Python path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from indexer.embeddings import EmbeddingService  # noqa: E402
from indexer.store import InMemoryChunkStore  # noqa: E402
from pipelines.chunker import WhitespaceTokenizer  # noqa: E402
from pipelines.fetcher import FetchResponse  # noqa: E402
from services.shared.models import Chunk  # noqa: E402
from services.shared.retry import no_retry  # noqa: E402

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeFetcher:
    """In-memory site: url -> (status, body, content type) or an exception."""

    def __init__(self, pages: Dict[str, object]):
        self.pages = pages
        self.requested: List[str] = []

    async def get(self, url: str, timeout: float) -> FetchResponse:
        self.requested.append(url)
        page = self.pages.get(url)
        if page is None:
            return FetchResponse(url=url, status=404, text="Not found",
                                 headers={"content-type": "text/html"})
        if isinstance(page, Exception):
            raise page
        status, body, content_type = page
        return FetchResponse(url=url, status=status, text=body,
                             headers={"content-type": content_type})

    async def close(self):
        pass


class FakeEmbeddingProvider:
    """Deterministic provider; texts listed in ``vectors`` get fixed vectors."""

    def __init__(self, name: str = "fake", vectors: Optional[Dict[str, List[float]]] = None,
                 dimension: int = 3, fail_with: Optional[BaseException] = None):
        self.name = name
        self.vectors = vectors or {}
        self.dimension = dimension
        self.fail_with = fail_with
        self.calls: List[List[str]] = []

    async def embed(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.fail_with is not None:
            raise self.fail_with
        return [self.vectors.get(t, self._default(t)) for t in texts]

    def _default(self, text: str) -> List[float]:
        return [float(len(text) % 7 + 1)] + [1.0] * (self.dimension - 1)


def html_page(title: str, body: str, links: Sequence[str] = ()) -> str:
    anchors = "".join(f'<li><a href="{href}">{href}</a></li>' for href in links)
    return (f"<html><head><title>{title}</title></head><body>"
            f"<nav><ul>{anchors}</ul></nav>"
            f"<main><h1>{title}</h1><p>{body}</p></main></body></html>")


def make_chunk(chunk_id: str, text: str, tool_id: str = "cursor",
               source_url: str = "https://docs.example.com/guide", section: Optional[str] = "Guide",
               version: str = "latest", embedding: Optional[List[float]] = None,
               created_at: Optional[datetime] = None, chunk_index: int = 0) -> Chunk:
    return Chunk(id=chunk_id, tool_id=tool_id, text=text, source_url=source_url, section=section,
                 version=version, embedding=embedding, chunk_index=chunk_index,
                 created_at=created_at or BASE_TIME)


LONG_TEXT = ("Cursor rules live in the project settings and describe how the assistant should "
             "behave when it edits files in this repository. ")


async def no_sleep(delay: float) -> None:
    return None


@pytest.fixture
def store():
    return InMemoryChunkStore()


@pytest.fixture
def tokenizer():
    return WhitespaceTokenizer()


@pytest.fixture
def fake_provider():
    return FakeEmbeddingProvider()


@pytest.fixture
def embedding_service(fake_provider):
    return EmbeddingService([fake_provider], retry_policy=no_retry(), sleep=no_sleep)


@pytest.fixture
def base_time():
    return BASE_TIME


@pytest.fixture
def later():
    return lambda hours: BASE_TIME + timedelta(hours=hours)
