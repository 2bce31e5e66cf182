"""Prompt-format detection.

A heuristic stage scores each candidate format from structural signals in the
documentation. When the best score is below ``min_confidence`` an LLM
classifier is consulted; if that fails the heuristic answer is returned with
its confidence capped and an explicit failure marker.
"""

import logging
import re
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from observability.logging import get_structured_logger
from observability.metrics import record_format_detection
from services.shared.errors import PipelineError
from services.shared.models import Chunk, FallbackFormat, FormatDetectionResult, PromptFormat

from .llm_classifier import LLMClassifier

logger = logging.getLogger(__name__)
slog = get_structured_logger(__name__, component="format_detector")

LLM_FAILURE_MARKER = "llm-fallback-failed"
DEFAULT_MIN_CONFIDENCE = 60


@dataclass
class FormatScore:
    format: PromptFormat
    score: float
    methods: List[str] = field(default_factory=list)


Analyzer = Callable[[str], FormatScore]


def _top(scores: Dict[PromptFormat, float], methods: List[str], default: PromptFormat) -> FormatScore:
    if not scores:
        return FormatScore(default, 0, methods)
    # Ties resolve to the first format listed
    best = max(scores, key=lambda f: scores[f])
    return FormatScore(best, scores[best], methods)


def analyze_file_extensions(text: str) -> FormatScore:
    lowered = text.lower()
    methods = []
    scores = OrderedDict([(PromptFormat.JSON, 0), (PromptFormat.MARKDOWN, 0), (PromptFormat.XML, 0)])

    if ".json" in lowered or "json file" in lowered or "package.json" in lowered:
        scores[PromptFormat.JSON] += 25
        methods.append("json-file-extension")
    if ".md" in lowered or "readme.md" in lowered or "markdown file" in lowered:
        scores[PromptFormat.MARKDOWN] += 25
        methods.append("markdown-file-extension")
    if ".xml" in lowered or "xml file" in lowered or "pom.xml" in lowered:
        scores[PromptFormat.XML] += 25
        methods.append("xml-file-extension")
    if "readme" in lowered or "read-me" in lowered:
        scores[PromptFormat.MARKDOWN] += 15
        methods.append("readme-hint")

    return _top(scores, methods, PromptFormat.JSON)


def analyze_code_fences(text: str) -> FormatScore:
    total_fences = text.count("```") / 2
    if total_fences == 0:
        return FormatScore(PromptFormat.PLAINTEXT, 0)

    fence_counts = OrderedDict([
        (PromptFormat.JSON, len(re.findall(r"```json", text, re.IGNORECASE))),
        (PromptFormat.MARKDOWN, len(re.findall(r"```markdown", text, re.IGNORECASE))),
        (PromptFormat.XML, len(re.findall(r"```xml", text, re.IGNORECASE))),
    ])

    methods = []
    scores: Dict[PromptFormat, float] = OrderedDict()
    for fmt, count in fence_counts.items():
        scores[fmt] = 0
        if count:
            scores[fmt] = count / total_fences * 40
            methods.append(f"{fmt.value}-code-fence")

    scores[PromptFormat.PLAINTEXT] = 0
    if not any(fence_counts.values()):
        scores[PromptFormat.PLAINTEXT] = 20
        methods.append("generic-code-fence")

    return _top(scores, methods, PromptFormat.PLAINTEXT)


JSON_SCHEMA_OBJECT_RE = re.compile(r'\{[^}]*"(?:type|properties|required|additionalProperties)"[^}]*\}')
JSON_SCHEMA_KEYWORDS = ['"type":', '"properties":', '"required":', '"items":', '"$schema"']


def analyze_json_schemas(text: str) -> FormatScore:
    lowered = text.lower()
    methods = []
    score = 0

    if '"schema"' in lowered or "json schema" in lowered or "jsonschema" in lowered:
        score += 35
        methods.append("json-schema-keyword")

    objects = JSON_SCHEMA_OBJECT_RE.findall(text)
    if objects:
        score += min(len(objects) * 10, 30)
        methods.append("json-schema-pattern")

    keyword_hits = [k for k in JSON_SCHEMA_KEYWORDS if k in lowered]
    if keyword_hits:
        score += len(keyword_hits) * 5
        methods.append("json-schema-keywords")

    return FormatScore(PromptFormat.JSON, min(score, 50), methods)


HEADING_RE = re.compile(r"^#{1,6}\s", re.MULTILINE)
BULLET_RE = re.compile(r"^[-*+]\s", re.MULTILINE)
NUMBERED_RE = re.compile(r"^\d+\.\s", re.MULTILINE)
LINK_RE = re.compile(r"\[([^\]]+)\]\(([^)]+)\)")
BOLD_RE = re.compile(r"\*\*[^*]+\*\*")
ITALIC_RE = re.compile(r"\*[^*]+\*")


def analyze_markdown_structure(text: str) -> FormatScore:
    methods = []
    score = 0

    signals = [
        (HEADING_RE, 3, 25, "markdown-headings"),
        (BULLET_RE, 2, 20, "markdown-bullets"),
        (NUMBERED_RE, 2, 15, "markdown-numbered-lists"),
        (LINK_RE, 2, 15, "markdown-links"),
    ]
    for pattern, weight, cap, method in signals:
        count = len(pattern.findall(text))
        if count:
            score += min(count * weight, cap)
            methods.append(method)

    emphasis = len(BOLD_RE.findall(text)) + len(ITALIC_RE.findall(text))
    if emphasis:
        score += min(emphasis, 10)
        methods.append("markdown-formatting")

    return FormatScore(PromptFormat.MARKDOWN, min(score, 60), methods)


COMMAND_RE = re.compile(r"\$[\s]*[a-z][a-z0-9_-]*[\s]*[a-z0-9_-]", re.IGNORECASE | re.MULTILINE)
FLAG_RE = re.compile(r"(?:--[a-z][a-z0-9_-]+|-[a-z])")
CLI_STRUCTURE_KEYWORDS = ["command", "flag", "option", "usage", "syntax", "arguments"]


def analyze_cli_patterns(text: str) -> FormatScore:
    lowered = text.lower()
    methods = []
    score = 0

    commands = COMMAND_RE.findall(text)
    if commands:
        score += min(len(commands) * 8, 30)
        methods.append("cli-dollar-commands")

    flags = FLAG_RE.findall(text)
    if flags:
        score += min(len(flags) * 3, 25)
        methods.append("cli-flags")

    keyword_hits = [k for k in CLI_STRUCTURE_KEYWORDS if k in lowered]
    if keyword_hits:
        score += len(keyword_hits) * 4
        methods.append("cli-keywords")

    if "usage:" in lowered or "options:" in lowered or "examples:" in lowered:
        score += 15
        methods.append("cli-man-page")

    return FormatScore(PromptFormat.CLI, min(score, 60), methods)


FORMAT_KEYWORDS = OrderedDict([
    (PromptFormat.JSON, ["json", "json format", "json object", "json array"]),
    (PromptFormat.MARKDOWN, ["markdown", "md format", "markdown syntax"]),
    (PromptFormat.XML, ["xml", "xml format", "xml element", "xml tag"]),
    (PromptFormat.CLI, ["command line", "cli", "terminal", "shell", "bash"]),
    (PromptFormat.PLAINTEXT, ["plain text", "text format", "text file"]),
])


def analyze_keywords(text: str) -> FormatScore:
    lowered = text.lower()
    methods = []
    scores: Dict[PromptFormat, float] = OrderedDict()

    for fmt, keywords in FORMAT_KEYWORDS.items():
        hits = [k for k in keywords if k in lowered]
        if hits:
            scores[fmt] = len(hits) * 6
            methods.append(f"{fmt.value}-keywords")

    top = _top(scores, methods, PromptFormat.PLAINTEXT)
    top.score = min(top.score, 30)
    return top


DEFAULT_ANALYZERS: List[Analyzer] = [
    analyze_file_extensions,
    analyze_code_fences,
    analyze_json_schemas,
    analyze_markdown_structure,
    analyze_cli_patterns,
    analyze_keywords,
]


def aggregate_scores(scores: Sequence[FormatScore]) -> List[FormatScore]:
    """Sum scores per format, keep positive totals, best first.

    Equal totals keep the order in which formats first scored.
    """
    merged: "OrderedDict[PromptFormat, FormatScore]" = OrderedDict()
    for item in scores:
        if item.score <= 0:
            continue
        entry = merged.setdefault(item.format, FormatScore(item.format, 0))
        entry.score += item.score
        for method in item.methods:
            if method not in entry.methods:
                entry.methods.append(method)
    return sorted(merged.values(), key=lambda s: s.score, reverse=True)


def sample_documentation(chunks: Sequence[Chunk], limit: int = 10, max_chars: int = 20000) -> str:
    """Deterministic text sample of a tool's chunks for detection."""
    ordered = sorted(chunks, key=lambda c: (c.source_url, c.chunk_index, c.id))
    sample = "\n\n".join(c.text for c in ordered[:limit])
    return sample[:max_chars]


class FormatDetector:
    """Two-stage prompt-format detector."""

    def __init__(self,
                 llm_classifier: Optional[LLMClassifier] = None,
                 min_confidence: float = DEFAULT_MIN_CONFIDENCE,
                 enable_llm_fallback: bool = True,
                 analyzers: Optional[Sequence[Analyzer]] = None):
        if not 0 < min_confidence <= 100:
            raise ValueError("min_confidence must be in (0, 100]")
        self.llm_classifier = llm_classifier
        self.min_confidence = min_confidence
        self.enable_llm_fallback = enable_llm_fallback
        self.analyzers = list(analyzers) if analyzers is not None else list(DEFAULT_ANALYZERS)

    def heuristic(self, documentation: str) -> FormatDetectionResult:
        """Heuristic-only detection; never calls the network."""
        ranked = aggregate_scores([analyze(documentation) for analyze in self.analyzers])
        if not ranked:
            return FormatDetectionResult(
                preferred_format=PromptFormat.PLAINTEXT,
                confidence_score=20,
                detection_methods_used=["default"],
                fallback_formats=[],
            )

        top = ranked[0]
        return FormatDetectionResult(
            preferred_format=top.format,
            confidence_score=min(top.score, 100),
            detection_methods_used=list(top.methods) or ["heuristic"],
            fallback_formats=[FallbackFormat(s.format, min(s.score, 100)) for s in ranked[1:4]],
        )

    async def detect_format(self, tool_id: str, documentation: str) -> FormatDetectionResult:
        """Detect the preferred prompt format for a tool's documentation."""
        heuristic = self.heuristic(documentation or "")

        if heuristic.confidence_score >= self.min_confidence:
            record_format_detection("heuristic", heuristic.preferred_format.value)
            return heuristic

        if not self.enable_llm_fallback or self.llm_classifier is None:
            record_format_detection("heuristic", heuristic.preferred_format.value)
            return heuristic

        try:
            result = await self.llm_classifier.classify_format(tool_id, documentation or "")
        except PipelineError as e:
            slog.warning("LLM format classification failed; using heuristic result",
                         tool_id=tool_id, error=str(e), error_type=type(e).__name__,
                         heuristic_format=heuristic.preferred_format.value)
            record_format_detection("llm_failed", heuristic.preferred_format.value)
            return FormatDetectionResult(
                preferred_format=heuristic.preferred_format,
                confidence_score=max(0, min(heuristic.confidence_score, self.min_confidence - 1)),
                detection_methods_used=list(heuristic.detection_methods_used) + [LLM_FAILURE_MARKER],
                fallback_formats=list(heuristic.fallback_formats),
            )

        record_format_detection("llm", result.preferred_format.value)
        return result

    async def detect_for_chunks(self, tool_id: str, chunks: Sequence[Chunk],
                                sample_size: int = 10) -> FormatDetectionResult:
        return await self.detect_format(tool_id, sample_documentation(chunks, limit=sample_size))
