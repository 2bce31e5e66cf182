"""Per-tool manifest assembly.

A manifest is rebuilt wholesale from a format detection and the stored chunk
set. Apart from ``last_updated`` the output depends only on the inputs, so
scheduled rebuilds of unchanged data produce identical manifests.
"""

import json
import logging
import re
from collections import Counter
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence
from urllib.parse import urlparse

from services.shared.models import (
    Chunk,
    FormatDetectionResult,
    IDEManifest,
    ManifestValidation,
    PromptFormat,
    utcnow,
)

logger = logging.getLogger(__name__)

KNOWN_DOCS_DOMAINS = (
    "github.com",
    "githubusercontent.com",
    "readthedocs.io",
    "readthedocs.org",
    "gitbook.io",
)

BASE_RULES = [
    "Must have both system and user sections",
    "Each section should be non-empty",
    "Should follow the IDE-specific format guidelines",
    "Code examples should be properly formatted",
]

FORMAT_RULES: Dict[PromptFormat, List[str]] = {
    PromptFormat.JSON: [
        "Valid JSON syntax required",
        'Must include "system" field',
        'Must include "user" field',
        "All strings must be properly escaped",
    ],
    PromptFormat.MARKDOWN: [
        "Valid Markdown syntax required",
        "Must have System and User sections as headers",
        "Code blocks should use proper language fencing",
        "Links should use Markdown link syntax",
    ],
    PromptFormat.PLAINTEXT: [
        "Plain text format with clear section separators",
        "Sections must be prefixed with UPPERCASE labels",
        "Each section should be on its own line",
        "No special characters required",
    ],
    PromptFormat.CLI: [
        "Valid command-line syntax required",
        "Flags must use proper -- or - notation",
        "Arguments must be properly quoted",
        "Option names should be lowercase with hyphens",
    ],
    PromptFormat.XML: [
        "Valid XML syntax required",
        "Must have system and user root elements",
        "All tags must be properly closed",
        "Special characters must be properly escaped",
    ],
}

FORMAT_ORDER = [PromptFormat.JSON, PromptFormat.MARKDOWN, PromptFormat.PLAINTEXT,
                PromptFormat.CLI, PromptFormat.XML, PromptFormat.CUSTOM]


def _system_line(tool_name: str) -> str:
    return (f"You are a helpful assistant specialized in {tool_name}. "
            "Provide clear, concise responses tailored to the user's needs.")


def _question(tool_name: str) -> str:
    return f"What would you like to know about {tool_name}?"


def render_json_template(tool_name: str) -> str:
    return json.dumps({
        "system": _system_line(tool_name),
        "user": _question(tool_name),
        "context": {
            "ide_specific_features": [],
            "code_examples": [],
            "best_practices": [],
        },
    }, indent=2)


def render_markdown_template(tool_name: str) -> str:
    return f"""# Prompt Template

## System

{_system_line(tool_name)}

### IDE-Specific Features
- Feature 1
- Feature 2
- Feature 3

### Best Practices
1. Practice 1
2. Practice 2
3. Practice 3

## User

{_question(tool_name)}

### Context
Include relevant information about your task or question.

### Examples
Provide examples if applicable.
"""


def render_plaintext_template(tool_name: str) -> str:
    return f"""SYSTEM:
{_system_line(tool_name)}

IDE-SPECIFIC FEATURES:
- Feature 1
- Feature 2
- Feature 3

BEST PRACTICES:
1. Practice 1
2. Practice 2
3. Practice 3

USER:
{_question(tool_name)}

CONTEXT:
Include relevant information about your task or question.

EXAMPLES:
Provide examples if applicable.
"""


def render_cli_template(tool_name: str) -> str:
    system = _system_line(tool_name).replace('"', '\\"')
    question = _question(tool_name).replace('"', '\\"')
    return (f'--system "{system}" --user "{question}" '
            '--context "Include relevant information about your task or question." --format json')


def _xml_escape(value: str) -> str:
    return value.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def render_xml_template(tool_name: str) -> str:
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<prompt>
  <system>
    <base>{_xml_escape(_system_line(tool_name))}</base>
    <ide_features>
      <feature>Feature 1</feature>
      <feature>Feature 2</feature>
      <feature>Feature 3</feature>
    </ide_features>
    <best_practices>
      <practice>Practice 1</practice>
      <practice>Practice 2</practice>
      <practice>Practice 3</practice>
    </best_practices>
  </system>
  <user>
    <question>{_xml_escape(_question(tool_name))}</question>
    <context>Include relevant information about your task or question.</context>
    <examples>Provide examples if applicable.</examples>
  </user>
</prompt>
"""


TEMPLATE_RENDERERS: Dict[PromptFormat, Callable[[str], str]] = {
    PromptFormat.JSON: render_json_template,
    PromptFormat.MARKDOWN: render_markdown_template,
    PromptFormat.PLAINTEXT: render_plaintext_template,
    PromptFormat.CLI: render_cli_template,
    PromptFormat.XML: render_xml_template,
}

XML_OPEN_TAG_RE = re.compile(r"<(?![/?!])[^>]*(?<!/)>")
XML_CLOSE_TAG_RE = re.compile(r"</[^>]+>")


def validate_template(fmt: PromptFormat, template: str) -> List[str]:
    """Problems with a rendered template; an empty list means it looks sound."""
    if not template or not template.strip():
        return [f"Template for format {fmt.value} is empty"]

    issues = []
    if fmt == PromptFormat.JSON:
        try:
            json.loads(template)
        except json.JSONDecodeError as e:
            issues.append(f"Invalid JSON template: {e}")
    elif fmt == PromptFormat.XML:
        if len(XML_OPEN_TAG_RE.findall(template)) != len(XML_CLOSE_TAG_RE.findall(template)):
            issues.append("XML template has mismatched tags")
    elif fmt == PromptFormat.MARKDOWN:
        if "#" not in template:
            issues.append("Markdown template should contain headers")
    elif fmt == PromptFormat.CLI:
        if "--" not in template:
            issues.append("CLI template may be missing flags")
    elif fmt in (PromptFormat.PLAINTEXT, PromptFormat.CUSTOM):
        if "SYSTEM:" not in template.upper():
            issues.append("Plaintext template may be missing system section")
    return issues


def validation_rules(fmt: PromptFormat) -> ManifestValidation:
    """Base rules plus the rules specific to ``fmt``."""
    rule_format = PromptFormat.PLAINTEXT if fmt == PromptFormat.CUSTOM else fmt
    return ManifestValidation(
        type="json-schema" if fmt == PromptFormat.JSON else f"{fmt.value}-schema",
        rules=BASE_RULES + FORMAT_RULES[rule_format],
    )


def unique_sources(chunks: Iterable[Chunk]) -> List[str]:
    return sorted({c.source_url for c in chunks if c.source_url})


def dominant_version(chunks: Sequence[Chunk]) -> str:
    """Most common chunk version; ties go to the lexicographically first."""
    counts = Counter(c.version or "latest" for c in chunks)
    if not counts:
        return "latest"
    return sorted(counts.items(), key=lambda item: (-item[1], item[0]))[0][0]


def _host(url: str) -> str:
    return (urlparse(url).hostname or "").lower()


def _host_matches(host: str, domain: str) -> bool:
    return host == domain or host.endswith("." + domain)


class ManifestBuilder:
    """Builds IDE manifests from format detections and chunk sets."""

    def __init__(self,
                 include_all_formats: bool = False,
                 validate_templates: bool = True,
                 known_domains: Sequence[str] = KNOWN_DOCS_DOMAINS):
        self.include_all_formats = include_all_formats
        self.validate_templates = validate_templates
        self.known_domains = tuple(d.lower() for d in known_domains)

    def generate_templates(self, tool_name: str, preferred: PromptFormat,
                           fallbacks: Sequence[PromptFormat]) -> Dict[str, str]:
        wanted = set(FORMAT_ORDER[:5]) if self.include_all_formats else set()
        wanted.add(preferred)
        wanted.update(fallbacks)

        templates = {}
        for fmt in FORMAT_ORDER:
            if fmt in wanted:
                # custom formats have no template of their own
                renderer = TEMPLATE_RENDERERS.get(fmt, render_plaintext_template)
                templates[fmt.value] = renderer(tool_name)
        return templates

    def is_trusted(self, doc_sources: Sequence[str], docs_url: Optional[str] = None) -> bool:
        """True when every source lives on the docs host or a known docs domain."""
        if not doc_sources:
            return False
        reference = _host(docs_url) if docs_url else _host(doc_sources[0])
        domains = ((reference,) if reference else ()) + self.known_domains
        return all(any(_host_matches(_host(src), d) for d in domains) for src in doc_sources)

    def build_manifest(self,
                       tool_id: str,
                       tool_name: str,
                       format_detection: FormatDetectionResult,
                       chunks: Sequence[Chunk],
                       version: Optional[str] = None,
                       docs_url: Optional[str] = None,
                       now: Optional[datetime] = None) -> IDEManifest:
        """Assemble a manifest.

        Args:
            tool_id: Tool identifier
            tool_name: Display name used in templates
            format_detection: Result of format detection for the tool
            chunks: Stored chunks the manifest describes
            version: Documentation version; the dominant chunk version when omitted
            docs_url: Canonical documentation URL for the trust check
            now: Build time, defaults to the current UTC time
        """
        preferred = format_detection.preferred_format
        fallbacks = []
        for item in format_detection.fallback_formats:
            if item.format != preferred and item.format not in fallbacks:
                fallbacks.append(item.format)

        templates = self.generate_templates(tool_name, preferred, fallbacks)
        if self.validate_templates:
            for fmt_value, template in templates.items():
                for issue in validate_template(PromptFormat(fmt_value), template):
                    logger.warning(f"Template validation warning for {tool_id}/{fmt_value}: {issue}")

        doc_sources = unique_sources(chunks)
        manifest = IDEManifest(
            id=tool_id,
            name=tool_name,
            preferred_format=preferred,
            fallback_formats=fallbacks,
            validation=validation_rules(preferred),
            templates=templates,
            doc_version=version or dominant_version(chunks),
            doc_sources=doc_sources,
            trusted=self.is_trusted(doc_sources, docs_url),
            last_updated=now or utcnow(),
        )
        logger.info(f"Built manifest for {tool_id}: {preferred.value}, "
                    f"{len(doc_sources)} sources, version {manifest.doc_version}")
        return manifest
