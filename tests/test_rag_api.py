"""Tests for the chat HTTP API.

Tests cover:
- Health and metrics endpoints
- Grounded chat responses with retrieval metadata
- Request validation and error mapping
- Manifest lookup
"""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest
from fastapi.testclient import TestClient

from conftest import FakeEmbeddingProvider, make_chunk
from indexer.embeddings import EmbeddingService
from indexer.store import InMemoryChunkStore
from manifests.manifest_builder import ManifestBuilder
from server.chat_responder import ChatResponder
from server.llm_client import Completion
from server.rag_api import API_VERSION, Components, app, get_components
from server.rag_retriever import RAGRetriever
from services.shared.errors import ConfigurationError, TransientNetworkError
from services.shared.models import FormatDetectionResult, PromptFormat
from services.shared.retry import no_retry
from sources.loader import SourceLoader

QUESTION = "How do I add project rules?"


@pytest.fixture
def llm():
    client = Mock()
    client.provider = "openrouter"
    client.complete = AsyncMock(return_value=Completion(
        text="Create a file under .cursor/rules.", model="chat-model", provider="openrouter",
        prompt_tokens=200, completion_tokens=20,
    ))
    return client


@pytest.fixture
def components(llm):
    store = InMemoryChunkStore()
    asyncio.run(store.upsert_chunks([
        make_chunk("rules", "Create project rules under .cursor/rules", embedding=[1.0, 0.0, 0.0],
                   section="Rules"),
        make_chunk("billing", "Billing questions", embedding=[0.0, 1.0, 0.0],
                   source_url="https://docs.example.com/billing"),
    ]))
    provider = FakeEmbeddingProvider(vectors={QUESTION: [1.0, 0.0, 0.0]})
    return Components(
        store=store,
        retriever=RAGRetriever(store, EmbeddingService([provider], retry_policy=no_retry())),
        responder=ChatResponder([llm], retry_policy=no_retry()),
        sources=SourceLoader(),
    )


@pytest.fixture
def client(components):
    async def override():
        return components

    app.dependency_overrides[get_components] = override
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestHealth:
    """Service endpoints."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["ok"] is True
        assert data["version"] == API_VERSION

    def test_metrics(self, client):
        client.get("/health")
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "idedocs_http_requests_total" in response.text


class TestChat:
    """POST /chat."""

    def test_grounded_answer(self, client, llm):
        response = client.post("/chat", json={"message": QUESTION, "tool_id": "cursor",
                                              "conversation_id": "conv-1"})

        assert response.status_code == 200
        data = response.json()
        assert data["response"] == "Create a file under .cursor/rules."
        assert data["conversation_id"] == "conv-1"
        assert [s["chunk_id"] for s in data["sources"]] == ["rules"]
        assert data["tokens_used"]["total"] == 220
        assert data["metadata"]["retrieval"]["total_chunks"] == 1
        assert data["metadata"]["retrieval"]["average_similarity"] == pytest.approx(1.0)
        assert data["metadata"]["confidence"] in ("high", "medium", "low")

        system = llm.complete.call_args[0][0][0]["content"]
        assert "Cursor" in system
        assert "Create project rules under .cursor/rules" in system

    def test_history_is_forwarded(self, client, llm):
        history = [{"role": "user", "content": "Hi"}, {"role": "assistant", "content": "Hello!"}]
        client.post("/chat", json={"message": QUESTION, "tool_id": "cursor", "history": history})

        messages = llm.complete.call_args[0][0]
        assert messages[1:] == history + [{"role": "user", "content": QUESTION}]

    def test_no_matching_documentation(self, client, llm):
        response = client.post("/chat", json={"message": QUESTION, "tool_id": "windsurf"})

        assert response.status_code == 200
        data = response.json()
        assert data["sources"] == []
        assert data["metadata"]["confidence"] == "low"
        assert data["conversation_id"]
        system = llm.complete.call_args[0][0][0]["content"]
        assert "No specific documentation was found" in system

    @pytest.mark.parametrize("payload", [
        {"message": "", "tool_id": "cursor"},
        {"message": QUESTION},
        {"message": QUESTION, "tool_id": "cursor", "top_k": 0},
        {"message": QUESTION, "tool_id": "cursor", "history": [{"role": "system", "content": "x"}]},
    ])
    def test_invalid_payloads(self, client, payload):
        assert client.post("/chat", json=payload).status_code == 422

    def test_provider_failure_is_502(self, client, llm):
        llm.complete.side_effect = TransientNetworkError("upstream down", status=503)

        response = client.post("/chat", json={"message": QUESTION, "tool_id": "cursor"})

        assert response.status_code == 502
        data = response.json()
        assert data["code"] == "generation_failed"
        assert data["error_id"]
        assert "upstream" not in data["error"]

    def test_missing_credentials_is_503(self, client, llm):
        llm.complete.side_effect = ConfigurationError("OPENROUTER_API_KEY rejected")

        response = client.post("/chat", json={"message": QUESTION, "tool_id": "cursor"})

        assert response.status_code == 503
        assert response.json()["code"] == "not_configured"

    def test_unexpected_failure_is_500(self, client, llm):
        llm.complete.side_effect = RuntimeError("bug")

        response = client.post("/chat", json={"message": QUESTION, "tool_id": "cursor"})

        assert response.status_code == 500
        assert response.json()["code"] == "internal_error"

    def test_unconfigured_components_are_503(self):
        async def unconfigured():
            raise ConfigurationError("No embedding provider configured")

        app.dependency_overrides[get_components] = unconfigured
        try:
            response = TestClient(app).post("/chat", json={"message": QUESTION, "tool_id": "cursor"})
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 503
        assert response.json()["code"] == "not_configured"


class TestManifestEndpoint:
    """GET /tools/{tool_id}/manifest."""

    def test_missing_manifest(self, client):
        response = client.get("/tools/cursor/manifest")

        assert response.status_code == 404
        assert response.json()["code"] == "not_found"

    def test_stored_manifest(self, client, components):
        detection = FormatDetectionResult(PromptFormat.MARKDOWN, 80, ["markdown-headings"])
        manifest = ManifestBuilder().build_manifest("cursor", "Cursor", detection,
                                                    asyncio.run(components.store.chunks_for_tool("cursor")))
        asyncio.run(components.store.save_manifest(manifest))

        response = client.get("/tools/cursor/manifest")

        assert response.status_code == 200
        data = response.json()
        assert data["preferred_format"] == "markdown"
        assert "markdown" in data["templates"]
