"""Chunk store configuration and factory.

Supports an in-memory store (tests, one-off runs) and SQLite (persistent).
"""

import os
import logging
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class StoreType(str, Enum):
    """Supported store backends."""
    MEMORY = "memory"
    SQLITE = "sqlite"


class StoreConfig(BaseModel):
    """Store configuration."""
    type: StoreType = Field(default=StoreType.SQLITE, description="Store backend")
    sqlite_path: str = Field(default="idedocs.db", description="SQLite database path")

    @classmethod
    def from_env(cls) -> 'StoreConfig':
        """Create configuration from environment variables."""
        return cls(
            type=StoreType(os.getenv('IDEDOCS_STORE', 'sqlite').lower()),
            sqlite_path=os.getenv('IDEDOCS_DB_PATH', 'idedocs.db'),
        )


async def create_store(config: Optional[StoreConfig] = None):
    """Create and initialize the configured chunk store.

    Raises:
        StoreUnavailableError: The SQLite database cannot be opened
    """
    if config is None:
        config = StoreConfig.from_env()

    # Imported here so configuration can be loaded without the indexer package
    if config.type == StoreType.MEMORY:
        from indexer.store import InMemoryChunkStore
        logger.info("Using in-memory chunk store")
        return InMemoryChunkStore()

    from indexer.sqlite_adapter import SQLiteChunkStore
    store = SQLiteChunkStore(config.sqlite_path)
    await store.initialize()
    logger.info(f"Chunk store initialized: {config.type.value} ({config.sqlite_path})")
    return store
