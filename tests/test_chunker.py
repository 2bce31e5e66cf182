"""Unit tests for the document chunker."""

import pytest

from pipelines.chunker import (
    DocumentChunker,
    WhitespaceTokenizer,
    chunk_document,
    split_paragraphs,
    split_sections,
)
from services.shared.models import content_hash


def words(count, prefix="word"):
    return " ".join(f"{prefix}{i}" for i in range(count))


@pytest.fixture
def chunker():
    return DocumentChunker(max_tokens=100, overlap_tokens=10, min_tokens=20,
                           tokenizer=WhitespaceTokenizer())


class TestSplitting:
    """Section and paragraph splitting."""

    def test_sections_follow_heading_path(self):
        text = "# Intro\n\nHello\n\n## Setup\n\nInstall it\n\n# Usage\n\nRun it"
        sections = split_sections(text)

        assert [s.label for s in sections] == ["Intro", "Intro > Setup", "Usage"]

    def test_text_before_first_heading_uses_default_label(self):
        sections = split_sections("Preamble text\n\n# Title\n\nBody", default_label="Page")
        assert sections[0].label == "Page"
        assert sections[1].label == "Title"

    def test_headings_inside_code_fences_are_ignored(self):
        text = "# Real\n\n```\n# not a heading\n```\n\nAfter"
        sections = split_sections(text)
        assert len(sections) == 1
        assert "# not a heading" in sections[0].text

    def test_code_fence_stays_in_one_paragraph(self):
        text = "Intro\n\n```\nline one\n\nline two\n```\n\nOutro"
        paragraphs = split_paragraphs(text)
        assert len(paragraphs) == 3
        assert "line one\n\nline two" in paragraphs[1]


class TestDocumentChunker:
    """Token windows, overlap and metadata."""

    def test_empty_text_yields_no_chunks(self, chunker):
        assert chunker.chunk("cursor", "   ", "https://docs.example.com") == []

    def test_short_document_is_single_chunk(self, chunker):
        chunks = chunker.chunk("cursor", "Short doc text", "https://docs.example.com", section="Page")

        assert len(chunks) == 1
        assert chunks[0].section == "Page"
        assert chunks[0].chunk_index == 0
        assert chunks[0].total_chunks == 1
        assert chunks[0].content_hash == content_hash("Short doc text")

    def test_long_paragraph_is_windowed_with_overlap(self, chunker):
        chunks = chunker.chunk("cursor", words(250), "https://docs.example.com")

        assert len(chunks) == 3
        assert all(c.token_count <= 100 for c in chunks)
        first, second = chunks[0].text.split(), chunks[1].text.split()
        assert first[-10:] == second[:10]
        assert [c.chunk_index for c in chunks] == [0, 1, 2]
        assert all(c.total_chunks == 3 for c in chunks)

    def test_chunking_is_deterministic(self, chunker):
        text = "# Guide\n\n" + words(180) + "\n\n## Details\n\n" + words(90, "detail")
        first = chunker.chunk("cursor", text, "https://docs.example.com/guide")
        second = chunker.chunk("cursor", text, "https://docs.example.com/guide")

        assert [(c.id, c.text, c.section) for c in first] == [(c.id, c.text, c.section) for c in second]

    def test_paragraph_boundaries_are_preferred(self, chunker):
        text = words(60, "a") + "\n\n" + words(60, "b")
        chunks = chunker.chunk("cursor", text, "https://docs.example.com")

        assert chunks[0].text.split()[-1] == "a59"

    def test_chunks_never_exceed_max_tokens(self, chunker):
        text = "\n\n".join(words(n, f"p{n}_") for n in (15, 95, 7, 130, 3))
        chunks = chunker.chunk("cursor", text, "https://docs.example.com")

        assert chunks
        assert all(c.token_count <= 100 for c in chunks)

    def test_version_and_tool_are_carried(self, chunker):
        chunks = chunker.chunk("windsurf", words(20), "https://docs.example.com", version="1.2")
        assert chunks[0].tool_id == "windsurf"
        assert chunks[0].version == "1.2"

    def test_chunk_ids_differ_across_sources(self, chunker):
        a = chunker.chunk("cursor", words(20), "https://docs.example.com/a")
        b = chunker.chunk("cursor", words(20), "https://docs.example.com/b")
        assert a[0].id != b[0].id
        assert a[0].content_hash == b[0].content_hash

    @pytest.mark.parametrize("kwargs", [
        {"max_tokens": 0},
        {"max_tokens": 100, "overlap_tokens": 100},
        {"max_tokens": 100, "overlap_tokens": 10, "min_tokens": 100},
    ])
    def test_invalid_configuration(self, kwargs):
        with pytest.raises(ValueError):
            DocumentChunker(tokenizer=WhitespaceTokenizer(), **kwargs)

    def test_chunk_document_wrapper(self):
        chunks = chunk_document("cursor", words(50), "https://docs.example.com", max_tokens=40,
                                overlap_tokens=5, tokenizer=WhitespaceTokenizer())
        assert len(chunks) >= 2
