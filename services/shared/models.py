"""Shared domain models for ingestion and retrieval."""

import hashlib
import re
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

_WHITESPACE = re.compile(r"\s+")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_text(text: str) -> str:
    """Collapse whitespace so hashing ignores formatting differences."""
    return _WHITESPACE.sub(" ", text or "").strip()


def content_hash(text: str) -> str:
    """sha256 of the whitespace-normalized text."""
    return hashlib.sha256(normalize_text(text).encode("utf-8")).hexdigest()


class PromptFormat(str, Enum):
    """Closed set of prompt formats a tool can prefer."""
    JSON = "json"
    MARKDOWN = "markdown"
    PLAINTEXT = "plaintext"
    CLI = "cli"
    XML = "xml"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, value: Any) -> "PromptFormat":
        """Strictly convert a value to a format; raises ValueError otherwise."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError(f"Format must be a string, got {type(value).__name__}")
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"Unknown prompt format: {value!r}") from None


class PageStatus(str, Enum):
    """Fetch outcome for a crawled page."""
    OK = "ok"
    FAILED = "failed"
    SKIPPED_ROBOTS = "skipped_robots"
    SKIPPED_PATTERN = "skipped_pattern"
    SKIPPED_CONTENT = "skipped_content"


@dataclass
class CrawlOptions:
    """Per-run crawl limits."""
    max_depth: int = 3
    max_pages: int = 150
    rate_limit_ms: int = 750
    respect_robots_txt: bool = True
    timeout: float = 15.0
    retry_attempts: int = 3
    allowed_patterns: List[str] = field(default_factory=list)
    max_concurrency: int = 4
    max_content_bytes: int = 2 * 1024 * 1024
    min_content_chars: int = 100
    user_agent: Optional[str] = None
    same_origin_only: bool = True

    def __post_init__(self):
        if self.max_depth < 0:
            raise ValueError("max_depth must be non-negative")
        if self.max_pages < 1:
            raise ValueError("max_pages must be positive")
        if self.rate_limit_ms < 0:
            raise ValueError("rate_limit_ms must be non-negative")
        if self.retry_attempts < 0:
            raise ValueError("retry_attempts must be non-negative")
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be positive")
        for pattern in self.allowed_patterns:
            re.compile(pattern)


@dataclass
class CrawlTarget:
    """Seeds plus options for one ingestion run."""
    tool_id: str
    seed_urls: List[str]
    options: CrawlOptions = field(default_factory=CrawlOptions)
    version: Optional[str] = None

    def __post_init__(self):
        if not self.tool_id:
            raise ValueError("tool_id cannot be empty")
        if not self.seed_urls:
            raise ValueError("At least one seed URL is required")


@dataclass
class Page:
    """A crawled page and how its fetch went."""
    url: str
    depth: int
    status: PageStatus
    text: Optional[str] = None
    title: Optional[str] = None
    section: Optional[str] = None
    version: Optional[str] = None
    content_type: Optional[str] = None
    status_code: Optional[int] = None
    error: Optional[str] = None
    chunk_count: int = 0
    fetched_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class Chunk:
    """A bounded segment of documentation text.

    Chunks are immutable; attaching an embedding produces a new instance.
    """
    id: str
    tool_id: str
    text: str
    source_url: str
    section: Optional[str] = None
    version: str = "latest"
    content_hash: str = ""
    token_count: int = 0
    chunk_index: int = 0
    total_chunks: int = 1
    embedding: Optional[List[float]] = None
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if not self.content_hash:
            object.__setattr__(self, "content_hash", content_hash(self.text))

    @property
    def dedup_key(self):
        return (self.tool_id, self.source_url, self.content_hash)

    def with_embedding(self, embedding: Sequence[float]) -> "Chunk":
        return replace(self, embedding=[float(x) for x in embedding])

    def to_dict(self, include_embedding: bool = False) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        if not include_embedding:
            data.pop("embedding")
        return data


@dataclass(frozen=True)
class FallbackFormat:
    format: PromptFormat
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return {"format": self.format.value, "confidence": self.confidence}


@dataclass(frozen=True)
class FormatDetectionResult:
    """Outcome of one format detection run."""
    preferred_format: PromptFormat
    confidence_score: float
    detection_methods_used: List[str]
    fallback_formats: List[FallbackFormat] = field(default_factory=list)

    def __post_init__(self):
        if not 0 <= self.confidence_score <= 100:
            raise ValueError(f"confidence_score out of range: {self.confidence_score}")
        if not self.detection_methods_used:
            raise ValueError("detection_methods_used cannot be empty")
        if len(self.fallback_formats) > 3:
            raise ValueError("At most 3 fallback formats are allowed")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "preferred_format": self.preferred_format.value,
            "confidence_score": self.confidence_score,
            "detection_methods_used": list(self.detection_methods_used),
            "fallback_formats": [f.to_dict() for f in self.fallback_formats],
        }


@dataclass(frozen=True)
class ManifestValidation:
    type: str
    rules: List[str]


@dataclass(frozen=True)
class IDEManifest:
    """Per-tool summary of preferred format, templates and sources."""
    id: str
    name: str
    preferred_format: PromptFormat
    fallback_formats: List[PromptFormat]
    validation: ManifestValidation
    templates: Dict[str, str]
    doc_version: str
    doc_sources: List[str]
    trusted: bool
    last_updated: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "preferred_format": self.preferred_format.value,
            "fallback_formats": [f.value for f in self.fallback_formats],
            "validation": {"type": self.validation.type, "rules": list(self.validation.rules)},
            "templates": dict(self.templates),
            "doc_version": self.doc_version,
            "doc_sources": list(self.doc_sources),
            "trusted": self.trusted,
            "last_updated": self.last_updated.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IDEManifest":
        validation = data.get("validation") or {}
        last_updated = data.get("last_updated")
        if isinstance(last_updated, str):
            last_updated = datetime.fromisoformat(last_updated)
        return cls(
            id=data["id"],
            name=data["name"],
            preferred_format=PromptFormat.parse(data["preferred_format"]),
            fallback_formats=[PromptFormat.parse(f) for f in data.get("fallback_formats", [])],
            validation=ManifestValidation(type=validation.get("type", ""),
                                          rules=list(validation.get("rules", []))),
            templates=dict(data.get("templates", {})),
            doc_version=data.get("doc_version", "latest"),
            doc_sources=list(data.get("doc_sources", [])),
            trusted=bool(data.get("trusted", False)),
            last_updated=last_updated or utcnow(),
        )


@dataclass(frozen=True)
class RetrievedChunk:
    chunk: Chunk
    similarity: float

    def to_source(self, max_text: Optional[int] = None) -> Dict[str, Any]:
        text = self.chunk.text
        if max_text is not None and len(text) > max_text:
            text = text[:max_text] + "..."
        return {
            "chunk_id": self.chunk.id,
            "url": self.chunk.source_url,
            "section": self.chunk.section,
            "text": text,
            "similarity": round(self.similarity, 4),
        }


@dataclass
class RetrievalMetadata:
    total_chunks: int = 0
    average_similarity: float = 0.0
    retrieval_time_ms: float = 0.0
    context_length: int = 0
    dropped_for_budget: int = 0


@dataclass
class RetrievalResult:
    """Ranked chunks for one query plus the assembled context."""
    query: str
    tool_id: str
    results: List[RetrievedChunk]
    context: str
    metadata: RetrievalMetadata = field(default_factory=RetrievalMetadata)

    def sources(self, max_text: Optional[int] = None) -> List[Dict[str, Any]]:
        return [r.to_source(max_text) for r in self.results]
