"""Ingestion status tracking.

Each ingestion run owns one record that moves through
``pending -> in_progress -> completed | failed``. Terminal states are
write-once, and only the owner that created a record may transition it.
"""

import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .models import utcnow

logger = logging.getLogger(__name__)


class IngestStatus(str, Enum):
    """Ingestion state."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (IngestStatus.COMPLETED, IngestStatus.FAILED)


ALLOWED_TRANSITIONS = {
    IngestStatus.PENDING: {IngestStatus.IN_PROGRESS, IngestStatus.FAILED},
    IngestStatus.IN_PROGRESS: {IngestStatus.COMPLETED, IngestStatus.FAILED},
    IngestStatus.COMPLETED: set(),
    IngestStatus.FAILED: set(),
}


class InvalidTransition(Exception):
    """Raised for illegal or unauthorized status changes."""


@dataclass
class IngestRecord:
    """Status record for one ingestion run."""
    id: str
    tool_id: str
    owner: str
    status: IngestStatus = IngestStatus.PENDING
    chunks_processed: int = 0
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    logs: List[str] = field(default_factory=list)

    def add_log(self, message: str):
        """Add a log message with timestamp."""
        self.logs.append(f"[{utcnow().isoformat()}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        for key in ("created_at", "started_at", "completed_at"):
            if data[key]:
                data[key] = data[key].isoformat()
        data.pop("owner")
        return data


class IngestStatusTracker:
    """In-process registry of ingestion records."""

    def __init__(self):
        self._records: Dict[str, IngestRecord] = {}
        self._lock = asyncio.Lock()

    async def create(self, tool_id: str, owner: Optional[str] = None) -> IngestRecord:
        record = IngestRecord(id=str(uuid.uuid4()), tool_id=tool_id,
                              owner=owner or str(uuid.uuid4()))
        async with self._lock:
            self._records[record.id] = record
        logger.info(f"Created ingest record {record.id} for {tool_id}")
        return record

    def get(self, record_id: str) -> Optional[IngestRecord]:
        return self._records.get(record_id)

    def for_tool(self, tool_id: str) -> List[IngestRecord]:
        records = [r for r in list(self._records.values()) if r.tool_id == tool_id]
        return sorted(records, key=lambda r: r.created_at)

    async def transition(self, record_id: str, owner: str, new_status: IngestStatus, *,
                         chunks_processed: Optional[int] = None,
                         error_message: Optional[str] = None) -> IngestRecord:
        """Move a record to ``new_status``.

        Raises:
            KeyError: Unknown record
            InvalidTransition: Wrong owner, terminal record or illegal edge
        """
        async with self._lock:
            record = self._records.get(record_id)
            if record is None:
                raise KeyError(f"Unknown ingest record: {record_id}")
            if record.owner != owner:
                raise InvalidTransition(f"Record {record_id} is owned by another process")
            if record.status.is_terminal:
                raise InvalidTransition(f"Record {record_id} is already {record.status.value}")
            if new_status not in ALLOWED_TRANSITIONS[record.status]:
                raise InvalidTransition(
                    f"Illegal transition {record.status.value} -> {new_status.value}"
                )

            record.status = new_status
            if chunks_processed is not None:
                record.chunks_processed = chunks_processed
            if new_status == IngestStatus.IN_PROGRESS:
                record.started_at = utcnow()
            if new_status.is_terminal:
                record.completed_at = utcnow()
                record.error_message = error_message
            record.add_log(f"Status changed to {new_status.value}")

        logger.info(f"Ingest {record_id} ({record.tool_id}) -> {new_status.value}")
        return record

    async def start(self, record: IngestRecord) -> IngestRecord:
        return await self.transition(record.id, record.owner, IngestStatus.IN_PROGRESS)

    async def complete(self, record: IngestRecord, chunks_processed: int) -> IngestRecord:
        return await self.transition(record.id, record.owner, IngestStatus.COMPLETED,
                                     chunks_processed=chunks_processed)

    async def fail(self, record: IngestRecord, error_message: str,
                   chunks_processed: Optional[int] = None) -> IngestRecord:
        return await self.transition(record.id, record.owner, IngestStatus.FAILED,
                                     chunks_processed=chunks_processed,
                                     error_message=error_message)
