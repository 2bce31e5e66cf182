"""Per-tool documentation source definitions."""

from .loader import SourceLoader, ToolSource, load_tool_file

__all__ = [
    'SourceLoader',
    'ToolSource',
    'load_tool_file',
]
