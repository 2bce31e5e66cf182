"""Chunk and manifest storage.

Writes are idempotent upserts keyed by (tool id, source URL, content hash).
Reads return snapshots and never wait on writers.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from services.shared.models import Chunk, IDEManifest

logger = logging.getLogger(__name__)


@dataclass
class CleanupStats:
    """Tally from duplicate removal."""
    tools_scanned: int = 0
    chunks_scanned: int = 0
    duplicates_removed: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self):
        return {
            "tools_scanned": self.tools_scanned,
            "chunks_scanned": self.chunks_scanned,
            "duplicates_removed": self.duplicates_removed,
            "errors": list(self.errors),
        }


class ChunkStore(Protocol):
    async def upsert_chunks(self, chunks: Sequence[Chunk]) -> int: ...

    async def attach_embeddings(self, embeddings: Mapping[str, Sequence[float]]) -> int: ...

    async def chunks_for_tool(self, tool_id: str) -> List[Chunk]: ...

    async def chunks_missing_embeddings(self, tool_id: str) -> List[Chunk]: ...

    async def delete_tool_chunks(self, tool_id: str) -> int: ...

    async def remove_duplicates(self, tool_id: Optional[str] = None) -> CleanupStats: ...

    async def save_manifest(self, manifest: IDEManifest) -> None: ...

    async def get_manifest(self, tool_id: str) -> Optional[IDEManifest]: ...

    async def list_tools(self) -> List[str]: ...


def find_duplicates(chunks: Sequence[Chunk]) -> List[Chunk]:
    """Chunks whose normalized text already exists for the same tool.

    The oldest chunk of each group is kept.
    """
    groups: Dict[Tuple[str, str], List[Chunk]] = defaultdict(list)
    for chunk in chunks:
        groups[(chunk.tool_id, chunk.content_hash)].append(chunk)

    duplicates = []
    for group in groups.values():
        if len(group) > 1:
            group.sort(key=lambda c: (c.created_at, c.id))
            duplicates.extend(group[1:])
    return duplicates


class InMemoryChunkStore:
    """Process-local store used by tests and single-process runs."""

    def __init__(self):
        self._chunks: Dict[str, Dict[str, Chunk]] = defaultdict(dict)
        self._keys: Dict[Tuple[str, str, str], str] = {}
        self._manifests: Dict[str, IDEManifest] = {}
        self._write_lock = asyncio.Lock()

    async def upsert_chunks(self, chunks: Sequence[Chunk]) -> int:
        inserted = 0
        async with self._write_lock:
            for chunk in chunks:
                if chunk.dedup_key in self._keys:
                    continue
                self._keys[chunk.dedup_key] = chunk.id
                self._chunks[chunk.tool_id][chunk.id] = chunk
                inserted += 1
        return inserted

    async def attach_embeddings(self, embeddings: Mapping[str, Sequence[float]]) -> int:
        updated = 0
        async with self._write_lock:
            for tool_chunks in self._chunks.values():
                for chunk_id in list(tool_chunks):
                    if chunk_id in embeddings:
                        tool_chunks[chunk_id] = tool_chunks[chunk_id].with_embedding(embeddings[chunk_id])
                        updated += 1
        return updated

    async def chunks_for_tool(self, tool_id: str) -> List[Chunk]:
        return list(self._chunks.get(tool_id, {}).values())

    async def chunks_missing_embeddings(self, tool_id: str) -> List[Chunk]:
        return [c for c in await self.chunks_for_tool(tool_id) if c.embedding is None]

    async def delete_tool_chunks(self, tool_id: str) -> int:
        async with self._write_lock:
            removed = self._chunks.pop(tool_id, {})
            for chunk in removed.values():
                self._keys.pop(chunk.dedup_key, None)
        return len(removed)

    async def remove_duplicates(self, tool_id: Optional[str] = None) -> CleanupStats:
        stats = CleanupStats()
        tool_ids = [tool_id] if tool_id else list(self._chunks)
        async with self._write_lock:
            for tid in tool_ids:
                tool_chunks = self._chunks.get(tid, {})
                stats.tools_scanned += 1
                stats.chunks_scanned += len(tool_chunks)
                for duplicate in find_duplicates(list(tool_chunks.values())):
                    tool_chunks.pop(duplicate.id, None)
                    self._keys.pop(duplicate.dedup_key, None)
                    stats.duplicates_removed += 1
        return stats

    async def save_manifest(self, manifest: IDEManifest) -> None:
        self._manifests[manifest.id] = manifest

    async def get_manifest(self, tool_id: str) -> Optional[IDEManifest]:
        return self._manifests.get(tool_id)

    async def list_tools(self) -> List[str]:
        return sorted(set(self._chunks) | set(self._manifests))
