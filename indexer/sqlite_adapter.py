"""SQLite chunk store.

Embeddings are stored as float32 BLOBs; manifests as JSON documents.
"""

import json
import logging
import sqlite3
from datetime import datetime
from typing import List, Mapping, Optional, Sequence

import numpy as np

from services.shared.errors import StoreUnavailableError
from services.shared.models import Chunk, IDEManifest, utcnow

from .store import CleanupStats, find_duplicates

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS chunks (
    id TEXT PRIMARY KEY,
    tool_id TEXT NOT NULL,
    source_url TEXT NOT NULL,
    section TEXT,
    version TEXT NOT NULL DEFAULT 'latest',
    text TEXT NOT NULL,
    content_hash TEXT NOT NULL,
    token_count INTEGER NOT NULL DEFAULT 0,
    chunk_index INTEGER NOT NULL DEFAULT 0,
    total_chunks INTEGER NOT NULL DEFAULT 1,
    embedding BLOB,
    created_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_chunks_dedup ON chunks (tool_id, source_url, content_hash);
CREATE INDEX IF NOT EXISTS idx_chunks_tool ON chunks (tool_id);

CREATE TABLE IF NOT EXISTS manifests (
    tool_id TEXT PRIMARY KEY,
    data TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class SQLiteChunkStore:
    """SQLite-backed implementation of the chunk store."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None

    async def initialize(self):
        """Open the connection and ensure the schema exists."""
        try:
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self.conn.executescript(SCHEMA)
            self.conn.commit()
            logger.info(f"SQLite store initialized: {self.db_path}")
        except sqlite3.Error as e:
            logger.error(f"Failed to initialize SQLite: {e}")
            raise StoreUnavailableError(f"Cannot open {self.db_path}: {e}", cause=e) from e

    async def close(self):
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.info("SQLite connection closed")

    def _connection(self) -> sqlite3.Connection:
        if self.conn is None:
            raise StoreUnavailableError("SQLite store not initialized. Call initialize() first.")
        return self.conn

    def _execute(self, action: str, sql: str, params: Sequence = (), commit: bool = False) -> sqlite3.Cursor:
        conn = self._connection()
        try:
            cursor = conn.execute(sql, params)
            if commit:
                conn.commit()
            return cursor
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"{action} failed: {e}", cause=e) from e

    @staticmethod
    def _row_to_chunk(row: sqlite3.Row) -> Chunk:
        embedding = None
        if row["embedding"] is not None:
            embedding = np.frombuffer(row["embedding"], dtype=np.float32).tolist()
        return Chunk(
            id=row["id"],
            tool_id=row["tool_id"],
            text=row["text"],
            source_url=row["source_url"],
            section=row["section"],
            version=row["version"],
            content_hash=row["content_hash"],
            token_count=row["token_count"],
            chunk_index=row["chunk_index"],
            total_chunks=row["total_chunks"],
            embedding=embedding,
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    async def upsert_chunks(self, chunks: Sequence[Chunk]) -> int:
        conn = self._connection()
        rows = [
            (c.id, c.tool_id, c.source_url, c.section, c.version, c.text, c.content_hash,
             c.token_count, c.chunk_index, c.total_chunks,
             np.asarray(c.embedding, dtype=np.float32).tobytes() if c.embedding is not None else None,
             c.created_at.isoformat())
            for c in chunks
        ]
        try:
            before = conn.total_changes
            conn.executemany(
                """
                INSERT OR IGNORE INTO chunks (id, tool_id, source_url, section, version, text,
                                              content_hash, token_count, chunk_index, total_chunks,
                                              embedding, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
            conn.commit()
            return conn.total_changes - before
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Chunk upsert failed: {e}", cause=e) from e

    async def attach_embeddings(self, embeddings: Mapping[str, Sequence[float]]) -> int:
        conn = self._connection()
        try:
            before = conn.total_changes
            conn.executemany(
                "UPDATE chunks SET embedding = ? WHERE id = ?",
                [(np.asarray(vec, dtype=np.float32).tobytes(), chunk_id)
                 for chunk_id, vec in embeddings.items()],
            )
            conn.commit()
            return conn.total_changes - before
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Embedding update failed: {e}", cause=e) from e

    async def chunks_for_tool(self, tool_id: str) -> List[Chunk]:
        rows = self._execute(
            "Chunk read", "SELECT * FROM chunks WHERE tool_id = ? ORDER BY source_url, chunk_index", (tool_id,)
        ).fetchall()
        return [self._row_to_chunk(r) for r in rows]

    async def chunks_missing_embeddings(self, tool_id: str) -> List[Chunk]:
        rows = self._execute(
            "Chunk read", "SELECT * FROM chunks WHERE tool_id = ? AND embedding IS NULL", (tool_id,)
        ).fetchall()
        return [self._row_to_chunk(r) for r in rows]

    async def delete_tool_chunks(self, tool_id: str) -> int:
        cursor = self._execute("Chunk delete", "DELETE FROM chunks WHERE tool_id = ?", (tool_id,), commit=True)
        return cursor.rowcount

    async def remove_duplicates(self, tool_id: Optional[str] = None) -> CleanupStats:
        stats = CleanupStats()
        conn = self._connection()
        tool_ids = [tool_id] if tool_id else [
            r["tool_id"] for r in self._execute("Tool listing", "SELECT DISTINCT tool_id FROM chunks").fetchall()
        ]
        for tid in tool_ids:
            stats.tools_scanned += 1
            try:
                chunks = await self.chunks_for_tool(tid)
                stats.chunks_scanned += len(chunks)
                duplicates = find_duplicates(chunks)
                if duplicates:
                    conn.executemany("DELETE FROM chunks WHERE id = ?", [(c.id,) for c in duplicates])
                    conn.commit()
                stats.duplicates_removed += len(duplicates)
            except (sqlite3.Error, StoreUnavailableError) as e:
                logger.error(f"Duplicate cleanup failed for {tid}: {e}")
                stats.errors.append(f"{tid}: {e}")
        return stats

    async def save_manifest(self, manifest: IDEManifest) -> None:
        self._execute(
            "Manifest save",
            "INSERT OR REPLACE INTO manifests (tool_id, data, updated_at) VALUES (?, ?, ?)",
            (manifest.id, json.dumps(manifest.to_dict()), utcnow().isoformat()),
            commit=True,
        )

    async def get_manifest(self, tool_id: str) -> Optional[IDEManifest]:
        row = self._execute(
            "Manifest read", "SELECT data FROM manifests WHERE tool_id = ?", (tool_id,)
        ).fetchone()
        if row is None:
            return None
        return IDEManifest.from_dict(json.loads(row["data"]))

    async def list_tools(self) -> List[str]:
        rows = self._execute(
            "Tool listing", "SELECT tool_id FROM chunks UNION SELECT tool_id FROM manifests ORDER BY tool_id"
        ).fetchall()
        return [r["tool_id"] for r in rows]
