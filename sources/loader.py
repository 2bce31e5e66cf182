"""Tool source configuration loader.

Loads and validates per-tool documentation sources from YAML files.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import yaml

from manifests.validation import ToolRef
from services.shared.models import CrawlOptions, CrawlTarget

logger = logging.getLogger(__name__)

TOOL_ID_RE = re.compile(r"^[a-z0-9][a-z0-9_-]*$")


@dataclass
class ToolSource:
    """Documentation source for one tool."""
    id: str
    name: str
    docs_url: str
    seed_urls: List[str] = field(default_factory=list)
    max_depth: int = 3
    max_pages: int = 150
    rate_limit_ms: int = 750
    allowed_patterns: List[str] = field(default_factory=list)
    respect_robots_txt: bool = True
    version: Optional[str] = None
    enabled: bool = True

    def __post_init__(self):
        """Validate configuration after initialization."""
        if not self.id or not TOOL_ID_RE.match(self.id):
            raise ValueError(f"Invalid tool id: {self.id!r}")
        if not self.name:
            raise ValueError("Tool name cannot be empty")
        if urlparse(self.docs_url).scheme not in ("http", "https"):
            raise ValueError(f"docs_url must be an http(s) URL: {self.docs_url}")
        if not self.seed_urls:
            self.seed_urls = [self.docs_url]
        if self.max_depth < 0 or self.max_depth > 10:
            raise ValueError("max_depth must be between 0 and 10")
        if self.max_pages < 1:
            raise ValueError("max_pages must be positive")
        if self.rate_limit_ms < 0:
            raise ValueError("rate_limit_ms must be non-negative")
        for pattern in self.allowed_patterns:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"Invalid allowed pattern {pattern!r}: {e}") from e

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolSource":
        """Create ToolSource from dictionary."""
        return cls(
            id=data["id"],
            name=data.get("name") or data["id"],
            docs_url=data["docs_url"],
            seed_urls=list(data.get("seed_urls") or []),
            max_depth=int(data.get("max_depth", 3)),
            max_pages=int(data.get("max_pages", 150)),
            rate_limit_ms=int(data.get("rate_limit_ms", 750)),
            allowed_patterns=list(data.get("allowed_patterns") or []),
            respect_robots_txt=bool(data.get("respect_robots_txt", True)),
            version=data.get("version"),
            enabled=bool(data.get("enabled", True)),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        result = {
            "id": self.id,
            "name": self.name,
            "docs_url": self.docs_url,
            "seed_urls": self.seed_urls,
            "max_depth": self.max_depth,
            "max_pages": self.max_pages,
            "rate_limit_ms": self.rate_limit_ms,
            "respect_robots_txt": self.respect_robots_txt,
            "enabled": self.enabled,
        }
        if self.allowed_patterns:
            result["allowed_patterns"] = self.allowed_patterns
        if self.version:
            result["version"] = self.version
        return result

    def crawl_options(self, **overrides) -> CrawlOptions:
        values = dict(max_depth=self.max_depth, max_pages=self.max_pages,
                      rate_limit_ms=self.rate_limit_ms, respect_robots_txt=self.respect_robots_txt,
                      allowed_patterns=list(self.allowed_patterns))
        values.update(overrides)
        return CrawlOptions(**values)

    def to_crawl_target(self, **overrides) -> CrawlTarget:
        return CrawlTarget(tool_id=self.id, seed_urls=list(self.seed_urls),
                           options=self.crawl_options(**overrides), version=self.version)

    def to_tool_ref(self) -> ToolRef:
        return ToolRef(id=self.id, name=self.name, docs_url=self.docs_url)


def load_tool_file(path: Path) -> ToolSource:
    """Load a single tool definition.

    Raises:
        ValueError: The file is empty, unparsable or fails validation
    """
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Failed to parse YAML file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Empty or invalid YAML file: {path}")
    data.setdefault("id", path.stem)
    try:
        return ToolSource.from_dict(data)
    except KeyError as e:
        raise ValueError(f"Missing field {e} in {path}") from e


class SourceLoader:
    """Loads tool sources from a directory of YAML files, cached by mtime."""

    def __init__(self, sources_dir: Optional[Path] = None):
        """Initialize source loader.

        Args:
            sources_dir: Directory containing tool YAML files.
                        Defaults to this package's directory.
        """
        if sources_dir is None:
            sources_dir = Path(__file__).parent

        self.sources_dir = Path(sources_dir)
        self._cache: Dict[str, ToolSource] = {}
        self._last_modified: Dict[str, float] = {}

    def load_tool(self, tool_id: str) -> Optional[ToolSource]:
        """Load configuration for one tool; None when missing or invalid."""
        yaml_file = self.sources_dir / f"{tool_id}.yaml"

        if not yaml_file.exists():
            logger.warning(f"Tool configuration not found: {yaml_file}")
            return None

        current_mtime = yaml_file.stat().st_mtime
        if self._last_modified.get(tool_id, -1) >= current_mtime and tool_id in self._cache:
            return self._cache[tool_id]

        try:
            source = load_tool_file(yaml_file)
        except (OSError, ValueError) as e:
            logger.error(f"Invalid tool configuration in {yaml_file}: {e}")
            return None

        if source.id != tool_id:
            logger.warning(f"Tool id mismatch in {yaml_file}: {source.id} != {tool_id}")
            source.id = tool_id

        self._cache[tool_id] = source
        self._last_modified[tool_id] = current_mtime
        logger.info(f"Loaded tool configuration: {tool_id}")
        return source

    def load_all(self) -> Dict[str, ToolSource]:
        """Load every tool configuration in the directory."""
        tools = {}

        if not self.sources_dir.exists():
            logger.warning(f"Sources directory not found: {self.sources_dir}")
            return tools

        for yaml_file in sorted(self.sources_dir.glob("*.yaml")):
            source = self.load_tool(yaml_file.stem)
            if source:
                tools[yaml_file.stem] = source

        logger.info(f"Loaded {len(tools)} tool configurations")
        return tools

    def enabled_tools(self) -> Dict[str, ToolSource]:
        return {tool_id: s for tool_id, s in self.load_all().items() if s.enabled}

    def reload_cache(self):
        """Clear cache to force reload of all configurations."""
        self._cache.clear()
        self._last_modified.clear()
        logger.info("Tool configuration cache cleared")
