"""HTTP entry point for documentation-grounded chat.

Authentication and UI live elsewhere; this module only turns a chat request
into a retrieval plus a grounded completion.
"""

import datetime
import logging
import uuid
from dataclasses import dataclass
from typing import List, Optional

from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from config.database import create_store
from config.settings import get_settings
from indexer.embeddings import EmbeddingService
from observability.logging import get_structured_logger, setup_logging
from observability.metrics import setup_prometheus_metrics
from services.shared.errors import ConfigurationError, PipelineError
from sources.loader import SourceLoader

from .chat_responder import ChatResponder
from .rag_retriever import RAGRetriever

logger = logging.getLogger(__name__)
slog = get_structured_logger(__name__, component="api")

API_VERSION = "0.3.0"

app = FastAPI(title="IDE Docs RAG API", version=API_VERSION)
setup_prometheus_metrics(app)


class HistoryMessage(BaseModel):
    role: str = Field(..., pattern="^(user|assistant)$")
    content: str = Field(..., min_length=1)


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=8000)
    tool_id: str = Field(..., min_length=1)
    conversation_id: Optional[str] = None
    history: List[HistoryMessage] = Field(default_factory=list)
    top_k: Optional[int] = Field(default=None, ge=1, le=20)
    threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)


@dataclass
class Components:
    """Collaborators used by the request handlers."""
    store: object
    retriever: RAGRetriever
    responder: ChatResponder
    sources: SourceLoader

    async def tool_name(self, tool_id: str) -> str:
        tool = self.sources.load_tool(tool_id)
        if tool:
            return tool.name
        manifest = await self.store.get_manifest(tool_id)
        return manifest.name if manifest else tool_id


_components: Optional[Components] = None


async def get_components() -> Components:
    """Build components from settings on first use."""
    global _components
    if _components is None:
        settings = get_settings()
        store = await create_store()
        _components = Components(
            store=store,
            retriever=RAGRetriever(store, EmbeddingService.from_settings(settings)),
            responder=ChatResponder.from_settings(settings),
            sources=SourceLoader(),
        )
        logger.info(f"API components initialized: {type(store).__name__}")
    return _components


@app.on_event("startup")
async def startup_event():
    settings = get_settings()
    setup_logging(level=settings.log_level, log_file=settings.log_file, use_json=settings.log_json)


@app.on_event("shutdown")
async def shutdown_event():
    """Close the store on shutdown."""
    global _components
    if _components is not None:
        close = getattr(_components.store, "close", None)
        if close is not None:
            await close()
            logger.info("Chunk store closed")
        _components = None


def _error(status_code: int, message: str, code: str, error_id: str) -> JSONResponse:
    return JSONResponse({"error": message, "code": code, "error_id": error_id},
                        status_code=status_code)


@app.get("/health")
def health():
    return {"ok": True, "version": API_VERSION,
            "time": datetime.datetime.utcnow().isoformat() + "Z"}


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request, exc: ConfigurationError):
    error_id = str(uuid.uuid4())
    slog.error("Service not configured", error_id=error_id, path=request.url.path, error=str(exc))
    return _error(503, "The assistant is not available right now", "not_configured", error_id)


@app.post("/chat")
async def chat(req: ChatRequest, components: Components = Depends(get_components)):
    """Answer a question about one tool from its indexed documentation.

    Failures return a generic message and an error id; the detail is logged.
    """
    error_id = str(uuid.uuid4())
    conversation_id = req.conversation_id or str(uuid.uuid4())

    try:
        retrieval = await components.retriever.retrieve_and_assemble(
            req.message, req.tool_id, top_k=req.top_k, threshold=req.threshold
        )
        messages = [{"role": m.role, "content": m.content} for m in req.history]
        messages.append({"role": "user", "content": req.message})

        answer = await components.responder.generate_response(
            messages,
            tool_name=await components.tool_name(req.tool_id),
            context=retrieval.context if retrieval.results else None,
            sources=retrieval.results,
        )
    except ValueError as e:
        slog.warning("Rejected chat request", error_id=error_id, tool_id=req.tool_id, error=str(e))
        return _error(400, "Invalid chat request", "invalid_request", error_id)
    except ConfigurationError as e:
        slog.error("Chat provider not configured", error_id=error_id, tool_id=req.tool_id, error=str(e))
        return _error(503, "The assistant is not available right now", "not_configured", error_id)
    except PipelineError as e:
        slog.error("Chat generation failed", error_id=error_id, tool_id=req.tool_id,
                   error=str(e), error_type=type(e).__name__)
        return _error(502, "Failed to generate a response, please try again", "generation_failed",
                      error_id)
    except Exception as e:
        slog.exception("Unexpected chat failure", error_id=error_id, tool_id=req.tool_id, error=str(e))
        return _error(500, "Internal error", "internal_error", error_id)

    body = answer.to_dict()
    body["conversation_id"] = conversation_id
    body["metadata"]["retrieval"] = {
        "total_chunks": retrieval.metadata.total_chunks,
        "average_similarity": round(retrieval.metadata.average_similarity, 4),
        "retrieval_time_ms": retrieval.metadata.retrieval_time_ms,
        "context_length": retrieval.metadata.context_length,
    }
    return body


@app.get("/tools/{tool_id}/manifest")
async def get_manifest(tool_id: str, components: Components = Depends(get_components)):
    error_id = str(uuid.uuid4())
    try:
        manifest = await components.store.get_manifest(tool_id)
    except PipelineError as e:
        slog.error("Manifest lookup failed", error_id=error_id, tool_id=tool_id, error=str(e))
        return _error(503, "Manifest store unavailable", "store_unavailable", error_id)

    if manifest is None:
        return JSONResponse({"error": "not found", "code": "not_found"}, status_code=404)
    return manifest.to_dict()
