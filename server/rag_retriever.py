"""Query-time retrieval and context assembly.

Chunks are read from a store snapshot without locking, so a retrieval may run
while the same tool is being recrawled and see slightly stale data.
"""

import json
import logging
import time
from typing import List, Optional, Sequence, Tuple

import numpy as np

from indexer.embeddings import EmbeddingService
from observability.metrics import record_retrieval
from services.shared.models import Chunk, RetrievalMetadata, RetrievalResult, RetrievedChunk

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 5
DEFAULT_THRESHOLD = 0.7
DEFAULT_MAX_CONTEXT_CHARS = 8000
NO_CONTEXT_MESSAGE = "No relevant documentation found."
CONTEXT_FORMATS = ("markdown", "plaintext", "json")


def cosine_similarities(query: Sequence[float], chunks: Sequence[Chunk]) -> List[Tuple[Chunk, float]]:
    """Cosine similarity of ``query`` against every chunk with a compatible embedding."""
    q = np.asarray(query, dtype=np.float32)
    q_norm = np.linalg.norm(q)
    candidates = []
    for chunk in chunks:
        if chunk.embedding is None:
            continue
        if len(chunk.embedding) != q.shape[0]:
            logger.warning(f"Skipping chunk {chunk.id}: embedding dimension "
                           f"{len(chunk.embedding)} != {q.shape[0]}")
            continue
        candidates.append(chunk)

    if not candidates or q_norm == 0:
        return [(c, 0.0) for c in candidates]

    matrix = np.asarray([c.embedding for c in candidates], dtype=np.float32)
    norms = np.linalg.norm(matrix, axis=1)
    dots = matrix @ q
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(norms > 0, dots / (norms * q_norm), 0.0)
    return [(c, float(s)) for c, s in zip(candidates, sims)]


def rank(scored: Sequence[Tuple[Chunk, float]], threshold: float, top_k: int) -> List[RetrievedChunk]:
    """Filter by threshold, order by similarity then recency, keep ``top_k``."""
    kept = [RetrievedChunk(chunk=c, similarity=s) for c, s in scored if s >= threshold]
    kept.sort(key=lambda r: (-r.similarity, -r.chunk.created_at.timestamp(), r.chunk.id))
    return kept[:top_k]


def _render_block(result: RetrievedChunk, text: str, fmt: str, include_metadata: bool) -> str:
    chunk = result.chunk
    section = chunk.section or "Documentation"
    relevance = f"{result.similarity * 100:.1f}%"
    if fmt == "plaintext":
        header = ""
        if include_metadata:
            header = f"[{section}] (Source: {chunk.source_url or 'Unknown'}, Relevance: {relevance})\n\n"
        return header + text

    header = f"## {section}\n\n"
    if include_metadata:
        header += f"**Source:** {chunk.source_url or 'Unknown'}\n**Relevance:** {relevance}\n\n"
    return header + text


def _json_entry(result: RetrievedChunk, text: str) -> dict:
    return {
        "section": result.chunk.section,
        "source_url": result.chunk.source_url,
        "similarity": round(result.similarity, 4),
        "text": text,
    }


def _fit_json_entry(result: RetrievedChunk, max_context_chars: int) -> dict:
    """Truncate a chunk so its serialized entry fits, escapes included."""
    text = result.chunk.text
    low, high = 0, len(text)
    while low < high:
        mid = (low + high + 1) // 2
        if len(json.dumps([_json_entry(result, text[:mid] + "...")], indent=2)) <= max_context_chars:
            low = mid
        else:
            high = mid - 1
    return _json_entry(result, text[:low] + "...")


def assemble_context(results: Sequence[RetrievedChunk],
                     fmt: str = "markdown",
                     include_metadata: bool = True,
                     max_context_chars: int = DEFAULT_MAX_CONTEXT_CHARS) -> Tuple[str, int]:
    """Concatenate ranked chunks into a context string within ``max_context_chars``.

    Lower-ranked chunks are dropped first; the top chunk is truncated only if
    it cannot fit on its own.

    Returns:
        (context, number of chunks included)
    """
    if fmt not in CONTEXT_FORMATS:
        raise ValueError(f"Unknown context format: {fmt!r}")
    if not results:
        return NO_CONTEXT_MESSAGE, 0

    if fmt == "json":
        entries = []
        for result in results:
            entries.append(_json_entry(result, result.chunk.text))
            if len(json.dumps(entries, indent=2)) > max_context_chars:
                entries.pop()
                break
        if not entries:
            entries.append(_fit_json_entry(results[0], max_context_chars))
        return json.dumps(entries, indent=2), len(entries)

    separator = "\n\n---\n\n" if fmt == "markdown" else "\n\n"
    blocks: List[str] = []
    length = 0
    for result in results:
        block = _render_block(result, result.chunk.text, fmt, include_metadata)
        added = len(block) + (len(separator) if blocks else 0)
        if length + added > max_context_chars:
            if not blocks:
                header_len = len(_render_block(result, "", fmt, include_metadata))
                room = max(0, max_context_chars - header_len - 3)
                blocks.append(_render_block(result, result.chunk.text[:room] + "...", fmt,
                                            include_metadata))
            break
        blocks.append(block)
        length += added

    return separator.join(blocks), len(blocks)


class RAGRetriever:
    """Embeds a query, ranks a tool's chunks and assembles the context."""

    def __init__(self,
                 store,
                 embedding_service: EmbeddingService,
                 top_k: int = DEFAULT_TOP_K,
                 threshold: float = DEFAULT_THRESHOLD,
                 max_context_chars: int = DEFAULT_MAX_CONTEXT_CHARS):
        self.store = store
        self.embedding_service = embedding_service
        self.top_k = top_k
        self.threshold = threshold
        self.max_context_chars = max_context_chars

    async def retrieve_and_assemble(self,
                                    query: str,
                                    tool_id: str,
                                    top_k: Optional[int] = None,
                                    threshold: Optional[float] = None,
                                    context_format: str = "markdown",
                                    include_metadata: bool = True) -> RetrievalResult:
        """Retrieve the most relevant chunks for ``query`` within ``tool_id``.

        Raises:
            ValueError: Empty query or invalid top_k/threshold
            PipelineError: The query could not be embedded
        """
        top_k = self.top_k if top_k is None else top_k
        threshold = self.threshold if threshold is None else threshold
        if top_k < 1:
            raise ValueError("top_k must be positive")
        if not -1.0 <= threshold <= 1.0:
            raise ValueError("threshold must be within [-1, 1]")

        start = time.perf_counter()
        query_embedding = await self.embedding_service.embed_query(query)
        chunks = await self.store.chunks_for_tool(tool_id)

        ranked = rank(cosine_similarities(query_embedding, chunks), threshold, top_k)
        context, included = assemble_context(ranked, context_format, include_metadata,
                                             self.max_context_chars)
        results = ranked[:included]

        elapsed = time.perf_counter() - start
        average = sum(r.similarity for r in results) / len(results) if results else 0.0
        metadata = RetrievalMetadata(
            total_chunks=len(results),
            average_similarity=average,
            retrieval_time_ms=round(elapsed * 1000, 2),
            context_length=len(context),
            dropped_for_budget=len(ranked) - len(results),
        )
        record_retrieval(elapsed, len(results))
        logger.debug(f"Retrieved {len(results)} chunks for {tool_id} "
                     f"(avg similarity {average:.3f}, {metadata.retrieval_time_ms}ms)")
        return RetrievalResult(query=query, tool_id=tool_id, results=results,
                               context=context, metadata=metadata)
