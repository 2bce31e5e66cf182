"""Periodic manifest validation.

Each tool's manifest is checked for structure, version drift against stored
chunks, dangling sources and age. Invalid or missing manifests are rebuilt.
Tools are processed concurrently under a fixed cap and one tool's failure
never affects another.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from observability.logging import get_structured_logger
from services.shared.models import IDEManifest, PromptFormat, utcnow

from .format_detector import FormatDetector
from .manifest_builder import ManifestBuilder, dominant_version, validate_template

logger = logging.getLogger(__name__)
slog = get_structured_logger(__name__, component="manifest_validation")

REQUIRED_FIELDS = [
    "id", "name", "preferred_format", "fallback_formats", "validation",
    "templates", "doc_version", "doc_sources", "trusted", "last_updated",
]


class ValidationStatus(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    REGENERATED = "regenerated"
    FAILED = "failed"


@dataclass
class ToolRef:
    """Minimal tool identity needed to validate or rebuild a manifest."""
    id: str
    name: str
    docs_url: Optional[str] = None


@dataclass
class ManifestCheck:
    tool_id: str
    tool_name: str
    status: ValidationStatus = ValidationStatus.VALID
    issues: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tool_id": self.tool_id,
            "tool_name": self.tool_name,
            "status": self.status.value,
            "issues": list(self.issues),
            "error": self.error,
        }


@dataclass
class ValidationSummary:
    results: List[ManifestCheck]

    def count(self, status: ValidationStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_tools": len(self.results),
            "valid": self.count(ValidationStatus.VALID),
            "invalid": self.count(ValidationStatus.INVALID),
            "regenerated": self.count(ValidationStatus.REGENERATED),
            "failed": self.count(ValidationStatus.FAILED),
            "results": [r.to_dict() for r in self.results],
        }


def structure_issues(data: Dict[str, Any]) -> List[str]:
    """Structural problems in a serialized manifest."""
    issues = [f"Missing required field: {name}" for name in REQUIRED_FIELDS if name not in data]

    preferred = data.get("preferred_format")
    if preferred is not None:
        try:
            PromptFormat.parse(preferred)
        except ValueError:
            issues.append(f"Unknown preferred_format: {preferred!r}")

    fallbacks = data.get("fallback_formats")
    if fallbacks is not None and not isinstance(fallbacks, list):
        issues.append("fallback_formats must be a list")

    templates = data.get("templates")
    if templates is not None:
        if not isinstance(templates, dict):
            issues.append("templates must be an object")
        elif not templates:
            issues.append("templates object is empty")

    sources = data.get("doc_sources")
    if sources is not None and not isinstance(sources, list):
        issues.append("doc_sources must be a list")

    return issues


class ManifestValidator:
    """Validates and, where needed, regenerates manifests for many tools."""

    def __init__(self,
                 store,
                 detector: Optional[FormatDetector] = None,
                 builder: Optional[ManifestBuilder] = None,
                 concurrency: int = 5,
                 max_age_days: int = 90,
                 sample_size: int = 50,
                 clock: Callable[[], datetime] = utcnow):
        if concurrency < 1:
            raise ValueError("concurrency must be positive")
        self.store = store
        # Scheduled runs do not spend LLM calls on classification
        self.detector = detector or FormatDetector(enable_llm_fallback=False)
        self.builder = builder or ManifestBuilder()
        self.concurrency = concurrency
        self.max_age = timedelta(days=max_age_days)
        self.sample_size = sample_size
        self.clock = clock

    async def _version_changed(self, tool_id: str, doc_version: str) -> bool:
        # Same rule the builder uses to stamp doc_version
        chunks = await self.store.chunks_for_tool(tool_id)
        if not chunks:
            return False
        return doc_version != dominant_version(chunks)

    async def _dangling_sources(self, manifest: IDEManifest) -> List[str]:
        stored = {c.source_url for c in await self.store.chunks_for_tool(manifest.id)}
        return [src for src in manifest.doc_sources if src not in stored]

    async def check(self, manifest: Optional[IDEManifest], tool: ToolRef) -> List[str]:
        """Issues that make a manifest invalid; empty when it is valid."""
        if manifest is None:
            return ["No manifest exists"]

        data = manifest.to_dict()
        issues = structure_issues(data)
        for fmt_value, template in manifest.templates.items():
            try:
                fmt = PromptFormat.parse(fmt_value)
            except ValueError:
                issues.append(f"Unknown template format: {fmt_value!r}")
                continue
            issues.extend(validate_template(fmt, template))

        if await self._version_changed(tool.id, manifest.doc_version):
            issues.append("Documentation version has changed")

        dangling = await self._dangling_sources(manifest)
        if dangling:
            issues.append(f"{len(dangling)} doc sources no longer have stored chunks")

        if self.clock() - manifest.last_updated > self.max_age:
            issues.append(f"Manifest is older than {self.max_age.days} days")

        return issues

    async def regenerate(self, tool: ToolRef) -> IDEManifest:
        """Detect the format from stored chunks and save a rebuilt manifest.

        Raises:
            ValueError: The tool has no stored chunks
        """
        chunks = await self.store.chunks_for_tool(tool.id)
        if not chunks:
            raise ValueError("No doc chunks available for manifest regeneration")

        detection = await self.detector.detect_for_chunks(tool.id, chunks, sample_size=self.sample_size)
        manifest = self.builder.build_manifest(tool.id, tool.name, detection, chunks,
                                               docs_url=tool.docs_url, now=self.clock())
        await self.store.save_manifest(manifest)
        return manifest

    async def validate_tool(self, tool: ToolRef) -> ManifestCheck:
        result = ManifestCheck(tool_id=tool.id, tool_name=tool.name)
        try:
            try:
                manifest = await self.store.get_manifest(tool.id)
            except (KeyError, ValueError, TypeError) as e:
                manifest = None
                result.issues.append(f"Stored manifest could not be read: {e}")

            result.issues.extend(await self.check(manifest, tool))
            if not result.issues:
                return result

            result.status = ValidationStatus.INVALID
            await self.regenerate(tool)
            result.status = ValidationStatus.REGENERATED
            result.issues.append("Manifest successfully regenerated")
        except Exception as e:
            result.status = ValidationStatus.FAILED
            result.error = str(e)
            slog.error("Manifest validation failed", tool_id=tool.id, error=str(e),
                       error_type=type(e).__name__)
        return result

    async def validate_all(self, tools: Optional[Sequence[ToolRef]] = None) -> ValidationSummary:
        """Validate every tool, at most ``concurrency`` at a time."""
        if tools is None:
            tools = [ToolRef(id=tool_id, name=tool_id) for tool_id in await self.store.list_tools()]

        slog.info("Manifest validation started", tool_count=len(tools))
        semaphore = asyncio.Semaphore(self.concurrency)

        async def bounded(tool: ToolRef) -> ManifestCheck:
            async with semaphore:
                return await self.validate_tool(tool)

        results = list(await asyncio.gather(*(bounded(t) for t in tools)))
        summary = ValidationSummary(results)

        problems = [r for r in results if r.status in (ValidationStatus.INVALID, ValidationStatus.FAILED)]
        if problems:
            slog.warning("Manifest validation issues", problems=[r.to_dict() for r in problems])
        slog.info("Manifest validation finished", **{k: v for k, v in summary.to_dict().items()
                                                     if k != "results"})
        return summary
