"""Document chunking pipeline.

Splits extracted documentation into section-aware, token-bounded chunks with
overlap between neighbours. Boundaries prefer headings and paragraphs and fall
back to raw token windows only for paragraphs longer than ``max_tokens``.
"""

import hashlib
import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence, Tuple

import tiktoken

from services.shared.models import Chunk, content_hash

logger = logging.getLogger(__name__)

HEADING_RE = re.compile(r'^(#{1,6})\s+(.+?)\s*#*\s*$')
FENCE_RE = re.compile(r'^\s*(```|~~~)')


class Tokenizer(Protocol):
    name: str

    def encode(self, text: str) -> List: ...

    def decode(self, tokens: Sequence) -> str: ...


class TiktokenTokenizer:
    """BPE tokenizer matching the embedding models' token accounting."""

    def __init__(self, encoding_name: str = "cl100k_base"):
        self.name = f"tiktoken:{encoding_name}"
        self._encoding = tiktoken.get_encoding(encoding_name)

    def encode(self, text: str) -> List[int]:
        return self._encoding.encode(text, disallowed_special=())

    def decode(self, tokens: Sequence[int]) -> str:
        return self._encoding.decode(list(tokens))


class WhitespaceTokenizer:
    """Word-plus-trailing-whitespace tokens; decoding is exact concatenation."""

    name = "whitespace"
    _TOKEN = re.compile(r'\S+\s*|\s+')

    def encode(self, text: str) -> List[str]:
        return self._TOKEN.findall(text)

    def decode(self, tokens: Sequence[str]) -> str:
        return "".join(tokens)


_default_tokenizer: Optional[Tokenizer] = None


def get_default_tokenizer() -> Tokenizer:
    """cl100k_base when its BPE ranks can be loaded, whitespace tokens otherwise."""
    global _default_tokenizer
    if _default_tokenizer is None:
        try:
            _default_tokenizer = TiktokenTokenizer()
        except Exception as e:
            # get_encoding downloads the ranks file on first use
            logger.warning(f"tiktoken encoding unavailable ({e}); using whitespace tokenizer")
            _default_tokenizer = WhitespaceTokenizer()
    return _default_tokenizer


@dataclass
class Section:
    """A heading-delimited slice of a document."""
    label: Optional[str]
    text: str


def split_sections(text: str, default_label: Optional[str] = None) -> List[Section]:
    """Split markdown on ATX headings, ignoring headings inside code fences.

    The label of a section is its heading path joined with `` > ``.
    """
    sections: List[Section] = []
    heading_path: List[Tuple[int, str]] = []
    current_label = default_label
    buffer: List[str] = []
    in_fence = False

    def flush():
        body = "\n".join(buffer).strip()
        if body:
            sections.append(Section(label=current_label, text=body))

    for line in text.split("\n"):
        if FENCE_RE.match(line):
            in_fence = not in_fence
        match = None if in_fence else HEADING_RE.match(line.strip())
        if match:
            flush()
            buffer = []
            level = len(match.group(1))
            heading_path = [(lvl, h) for lvl, h in heading_path if lvl < level]
            heading_path.append((level, match.group(2).strip()))
            current_label = " > ".join(h for _, h in heading_path)
        buffer.append(line)

    flush()
    return sections


def split_paragraphs(text: str) -> List[str]:
    """Blank-line separated blocks; fenced code stays in one block."""
    paragraphs: List[str] = []
    buffer: List[str] = []
    in_fence = False

    for line in text.split("\n"):
        if FENCE_RE.match(line):
            in_fence = not in_fence
        if not line.strip() and not in_fence:
            if buffer:
                paragraphs.append("\n".join(buffer))
                buffer = []
            continue
        buffer.append(line)

    if buffer:
        paragraphs.append("\n".join(buffer))
    return paragraphs


class DocumentChunker:
    """Chunks documents into token-bounded, overlapping pieces."""

    def __init__(self,
                 max_tokens: int = 1000,
                 overlap_tokens: int = 100,
                 min_tokens: int = 300,
                 tokenizer: Optional[Tokenizer] = None):
        """Initialize chunker.

        Args:
            max_tokens: Upper bound on tokens per chunk
            overlap_tokens: Tokens repeated at the start of the next chunk
            min_tokens: Trailing windows smaller than this are folded into the
                previous chunk of the same section when the result still fits
            tokenizer: Token accounting; defaults to cl100k_base
        """
        if max_tokens <= 0:
            raise ValueError("max_tokens must be positive")
        if not 0 <= overlap_tokens < max_tokens:
            raise ValueError("overlap_tokens must be in [0, max_tokens)")
        if not 0 <= min_tokens < max_tokens:
            raise ValueError("min_tokens must be in [0, max_tokens)")

        self.max_tokens = max_tokens
        self.overlap_tokens = overlap_tokens
        self.min_tokens = min_tokens
        self.tokenizer = tokenizer or get_default_tokenizer()

    def count_tokens(self, text: str) -> int:
        return len(self.tokenizer.encode(text))

    def _windows(self, tokens: List, boundaries: List[int]) -> List[Tuple[int, int]]:
        """Token windows preferring paragraph boundaries."""
        windows: List[Tuple[int, int]] = []
        total = len(tokens)
        start = 0

        while start < total:
            limit = start + self.max_tokens
            if limit >= total:
                end = total
            else:
                candidates = [b for b in boundaries if start < b <= limit]
                end = candidates[-1] if candidates else limit
            windows.append((start, end))
            if end >= total:
                break
            next_start = end - self.overlap_tokens
            start = next_start if next_start > start else end

        # Fold a short tail into its predecessor when the merge still fits
        if len(windows) >= 2:
            prev_start, prev_end = windows[-2]
            tail_start, tail_end = windows[-1]
            fresh = tail_end - prev_end
            if fresh < self.min_tokens and tail_end - prev_start <= self.max_tokens:
                windows[-2:] = [(prev_start, tail_end)]

        return windows

    def _chunk_section(self, section: Section) -> List[Tuple[str, int]]:
        tokens: List = []
        boundaries: List[int] = []
        for paragraph in split_paragraphs(section.text):
            if tokens:
                boundaries.append(len(tokens))
            tokens.extend(self.tokenizer.encode(paragraph + "\n\n"))

        pieces = []
        for start, end in self._windows(tokens, boundaries):
            text = self.tokenizer.decode(tokens[start:end]).strip()
            if text:
                pieces.append((text, end - start))
        return pieces

    @staticmethod
    def _chunk_id(tool_id: str, source_url: str, label: Optional[str], index: int, digest: str) -> str:
        key = f"{tool_id}#{source_url}#{label or 'root'}#{index}#{digest}"
        return hashlib.md5(key.encode("utf-8")).hexdigest()[:16]

    def chunk(self,
              tool_id: str,
              text: str,
              source_url: str,
              version: str = "latest",
              section: Optional[str] = None) -> List[Chunk]:
        """Split a document into ordered chunks.

        Identical inputs always produce identical boundaries and labels.

        Args:
            tool_id: Owning tool
            text: Extracted markdown/plain text
            source_url: Page the text came from
            version: Documentation version
            section: Label for text that precedes the first heading
        """
        if not text or not text.strip():
            return []

        pieces: List[Tuple[Optional[str], str, int, str]] = []
        for sec in split_sections(text, default_label=section):
            for piece_text, token_count in self._chunk_section(sec):
                pieces.append((sec.label, piece_text, token_count, content_hash(piece_text)))

        total = len(pieces)
        chunks = [
            Chunk(
                id=self._chunk_id(tool_id, source_url, label, index, digest),
                tool_id=tool_id,
                text=piece_text,
                source_url=source_url,
                section=label,
                version=version or "latest",
                content_hash=digest,
                token_count=token_count,
                chunk_index=index,
                total_chunks=total,
            )
            for index, (label, piece_text, token_count, digest) in enumerate(pieces)
        ]

        logger.debug(f"Chunked {source_url} into {total} chunks ({self.tokenizer.name})")
        return chunks


def chunk_document(tool_id: str, text: str, source_url: str, version: str = "latest",
                   max_tokens: int = 1000, overlap_tokens: int = 100,
                   section: Optional[str] = None, tokenizer: Optional[Tokenizer] = None) -> List[Chunk]:
    """Convenience wrapper around DocumentChunker."""
    min_tokens = min(300, max_tokens // 3)
    chunker = DocumentChunker(max_tokens=max_tokens, overlap_tokens=overlap_tokens,
                              min_tokens=min_tokens, tokenizer=tokenizer)
    return chunker.chunk(tool_id, text, source_url, version=version, section=section)
