"""End-to-end tests for the ingestion pipeline and its CLI."""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest
from typer.testing import CliRunner

from conftest import FakeFetcher, LONG_TEXT, html_page, make_chunk, no_sleep
from indexer.sqlite_adapter import SQLiteChunkStore
from manifests.format_detector import FormatDetector
from pipelines.chunker import DocumentChunker, WhitespaceTokenizer
from pipelines.crawler import Crawler
from pipelines.ingest import IngestionPipeline, app, build_detector
from pipelines.parser import DocumentParser
from config.settings import Settings
from services.shared.errors import StoreUnavailableError
from services.shared.ingest_status import IngestStatus, IngestStatusTracker
from services.shared.models import PromptFormat
from sources.loader import ToolSource

ROOT = "https://docs.example.com"
TOOL = ToolSource(id="cursor", name="Cursor", docs_url=f"{ROOT}/", rate_limit_ms=0, max_depth=1)

MARKDOWN_BODY = LONG_TEXT + " Rules are plain markdown files."


def site():
    return {
        f"{ROOT}/robots.txt": (200, "User-agent: *\nAllow: /\n", "text/plain"),
        f"{ROOT}/": (200, html_page("Home", MARKDOWN_BODY, ["/rules"]), "text/html"),
        f"{ROOT}/rules": (200, html_page("Rules", MARKDOWN_BODY + " Project rules."), "text/html"),
    }


def make_pipeline(store, embedding_service, pages=None, **kwargs):
    chunker = DocumentChunker(max_tokens=200, overlap_tokens=20, min_tokens=50,
                              tokenizer=WhitespaceTokenizer())
    crawler = Crawler(chunker=chunker, sink=store, fetcher=FakeFetcher(pages if pages is not None else site()),
                      parser=DocumentParser(use_trafilatura=False), retry_base_delay=0.0, sleep=no_sleep)
    return IngestionPipeline(store, embedding_service, crawler=crawler,
                             detector=FormatDetector(enable_llm_fallback=False), **kwargs)


def target(**overrides):
    values = dict(retry_attempts=0, max_concurrency=2)
    values.update(overrides)
    return TOOL.to_crawl_target(**values)


class TestIngestionPipeline:
    """Crawl, embed, detect and publish."""

    @pytest.mark.asyncio
    async def test_successful_ingestion(self, store, embedding_service):
        pipeline = make_pipeline(store, embedding_service)

        result = await pipeline.ingest(TOOL, target(), owner="worker-1")

        assert result.succeeded
        assert result.status == IngestStatus.COMPLETED
        assert result.crawl.pages_fetched == 2
        assert result.total_chunks == len(await store.chunks_for_tool("cursor"))
        assert result.record.chunks_processed == result.total_chunks
        assert await store.chunks_missing_embeddings("cursor") == []

        manifest = await store.get_manifest("cursor")
        assert manifest == result.manifest
        assert manifest.name == "Cursor"
        assert manifest.doc_sources == [f"{ROOT}/", f"{ROOT}/rules"]
        assert manifest.trusted is True
        assert isinstance(manifest.preferred_format, PromptFormat)

        data = result.to_dict()
        assert data["status"]["status"] == "completed"
        assert data["manifest"]["id"] == "cursor"

    @pytest.mark.asyncio
    async def test_nothing_crawled_fails_the_record(self, store, embedding_service):
        pipeline = make_pipeline(store, embedding_service, pages={})

        result = await pipeline.ingest(TOOL, target())

        assert result.status == IngestStatus.FAILED
        assert "No documentation chunks" in result.record.error_message
        assert result.manifest is None
        assert await store.get_manifest("cursor") is None

    @pytest.mark.asyncio
    async def test_replace_existing_deletes_old_chunks(self, store, embedding_service):
        stale = make_chunk("stale", "Old page that no longer exists", source_url=f"{ROOT}/old")
        await store.upsert_chunks([stale])
        pipeline = make_pipeline(store, embedding_service)

        result = await pipeline.ingest(TOOL, target(), replace_existing=True)

        assert result.deleted_chunks == 1
        assert "stale" not in {c.id for c in await store.chunks_for_tool("cursor")}

    @pytest.mark.asyncio
    async def test_existing_chunks_are_kept_without_replace(self, store, embedding_service):
        await store.upsert_chunks([make_chunk("kept", "Another page", source_url=f"{ROOT}/kept")])

        result = await make_pipeline(store, embedding_service).ingest(TOOL, target())

        assert result.deleted_chunks == 0
        assert f"{ROOT}/kept" in result.manifest.doc_sources

    @pytest.mark.asyncio
    async def test_store_failure_fails_the_record(self, store, embedding_service):
        crawler = Mock()
        crawler.crawl = AsyncMock(side_effect=StoreUnavailableError("disk full"))
        pipeline = IngestionPipeline(store, embedding_service, crawler=crawler,
                                     detector=FormatDetector(enable_llm_fallback=False))

        result = await pipeline.ingest(TOOL)

        assert result.status == IngestStatus.FAILED
        assert result.record.error_message == "disk full"

    @pytest.mark.asyncio
    async def test_sqlite_failure_is_recorded_as_store_error(self, tmp_path, embedding_service):
        store = SQLiteChunkStore(str(tmp_path / "chunks.db"))
        await store.initialize()
        store.conn.execute("DROP TABLE chunks")

        result = await make_pipeline(store, embedding_service).ingest(TOOL, target(), replace_existing=True)

        assert result.status == IngestStatus.FAILED
        assert result.record.error_message.startswith("Chunk delete failed")
        await store.close()

    @pytest.mark.asyncio
    async def test_unexpected_errors_fail_and_propagate(self, store, embedding_service):
        crawler = Mock()
        crawler.crawl = AsyncMock(side_effect=RuntimeError("boom"))
        tracker = IngestStatusTracker()
        pipeline = IngestionPipeline(store, embedding_service, crawler=crawler, tracker=tracker)

        with pytest.raises(RuntimeError):
            await pipeline.ingest(TOOL)

        [record] = tracker.for_tool("cursor")
        assert record.status == IngestStatus.FAILED
        assert "boom" in record.error_message

    @pytest.mark.asyncio
    async def test_cancellation_fails_the_record(self, store, embedding_service):
        crawler = Mock()
        crawler.crawl = AsyncMock(side_effect=asyncio.CancelledError())
        tracker = IngestStatusTracker()
        pipeline = IngestionPipeline(store, embedding_service, crawler=crawler, tracker=tracker)

        with pytest.raises(asyncio.CancelledError):
            await pipeline.ingest(TOOL)

        [record] = tracker.for_tool("cursor")
        assert record.error_message == "Ingestion cancelled"

    @pytest.mark.asyncio
    async def test_embed_missing_only_embeds_new_chunks(self, store, embedding_service, fake_provider):
        await store.upsert_chunks([make_chunk("done", "already embedded", embedding=[1.0, 1.0, 1.0]),
                                   make_chunk("todo", "needs a vector", source_url=f"{ROOT}/todo")])
        pipeline = IngestionPipeline(store, embedding_service)

        result = await pipeline.embed_missing("cursor")

        assert result.succeeded == ["todo"]
        assert fake_provider.calls == [["needs a vector"]]
        assert await pipeline.embed_missing("cursor") is not None
        assert len(fake_provider.calls) == 1


class TestBuildDetector:
    """Detector wiring from settings."""

    def test_without_provider_the_llm_is_disabled(self):
        detector = build_detector(Settings())
        assert detector.enable_llm_fallback is False

    def test_no_llm_flag(self):
        detector = build_detector(Settings(openai_api_key="key"), use_llm=False)
        assert detector.llm_classifier is None

    def test_provider_enables_classifier(self):
        detector = build_detector(Settings(openai_api_key="key"))
        assert detector.llm_classifier is not None
        assert detector.llm_classifier.model == "gpt-4o-mini"


class TestCLI:
    """Command line entry points that need no network."""

    def test_invalid_tool_file(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("name: [unclosed\n", encoding="utf-8")

        result = CliRunner().invoke(app, ["ingest", str(path), "--memory"])

        assert result.exit_code == 1
        assert "Invalid tool file" in result.output

    def test_detect_format_without_chunks(self, tmp_path):
        result = CliRunner().invoke(app, ["detect-format", "cursor", "--db", str(tmp_path / "empty.db"),
                                          "--no-llm"])

        assert result.exit_code == 1
        assert "No chunks stored for cursor" in result.output

    def test_cleanup_reports_stats(self, tmp_path):
        result = CliRunner().invoke(app, ["cleanup", "--db", str(tmp_path / "empty.db")])

        assert result.exit_code == 0
        assert "duplicates_removed" in result.output
