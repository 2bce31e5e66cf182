"""Ingestion orchestration and command line interface.

One ingestion run crawls a tool's documentation, embeds the stored chunks,
detects the tool's preferred prompt format and saves a fresh manifest. Each
run owns an ingest status record for its whole lifetime.

Usage:
    python -m pipelines.ingest ingest sources/cursor.yaml
    python -m pipelines.ingest ingest-all --sources-dir sources
    python -m pipelines.ingest validate-manifests
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import typer
from rich.console import Console
from rich.table import Table

from config.database import StoreConfig, StoreType, create_store
from config.settings import Settings, get_settings
from indexer.embeddings import EmbeddingBatchResult, EmbeddingService
from manifests.format_detector import FormatDetector
from manifests.llm_classifier import LLMClassifier
from manifests.manifest_builder import ManifestBuilder
from manifests.validation import ManifestValidator
from observability.logging import get_structured_logger, setup_logging
from services.shared.errors import ConfigurationError, PipelineError
from services.shared.ingest_status import IngestRecord, IngestStatus, IngestStatusTracker
from services.shared.models import CrawlTarget, IDEManifest
from sources.loader import SourceLoader, ToolSource, load_tool_file

from .chunker import DocumentChunker
from .crawler import Crawler, CrawlStats

logger = logging.getLogger(__name__)
slog = get_structured_logger(__name__, component="ingest")


@dataclass
class IngestResult:
    """Outcome of one ingestion run."""
    tool_id: str
    record: IngestRecord
    crawl: Optional[CrawlStats] = None
    embeddings: Optional[EmbeddingBatchResult] = None
    manifest: Optional[IDEManifest] = None
    deleted_chunks: int = 0
    total_chunks: int = 0

    @property
    def status(self) -> IngestStatus:
        return self.record.status

    @property
    def succeeded(self) -> bool:
        return self.record.status == IngestStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tool_id": self.tool_id,
            "status": self.record.to_dict(),
            "crawl": self.crawl.to_dict() if self.crawl else None,
            "embeddings": self.embeddings.to_dict() if self.embeddings else None,
            "manifest": self.manifest.to_dict() if self.manifest else None,
            "deleted_chunks": self.deleted_chunks,
            "total_chunks": self.total_chunks,
        }


class IngestionPipeline:
    """Crawl, embed, classify and publish a manifest for one tool at a time."""

    def __init__(self,
                 store,
                 embedding_service: EmbeddingService,
                 crawler: Optional[Crawler] = None,
                 detector: Optional[FormatDetector] = None,
                 builder: Optional[ManifestBuilder] = None,
                 tracker: Optional[IngestStatusTracker] = None,
                 detection_sample_size: int = 10):
        self.store = store
        self.embedding_service = embedding_service
        self.crawler = crawler or Crawler(chunker=DocumentChunker(), sink=store)
        self.detector = detector or FormatDetector()
        self.builder = builder or ManifestBuilder()
        self.tracker = tracker or IngestStatusTracker()
        self.detection_sample_size = detection_sample_size

    async def embed_missing(self, tool_id: str) -> EmbeddingBatchResult:
        """Embed every stored chunk of ``tool_id`` that has no vector yet."""
        missing = await self.store.chunks_missing_embeddings(tool_id)
        if not missing:
            return EmbeddingBatchResult()

        result = await self.embedding_service.generate_embeddings(missing)
        if result.embeddings:
            attached = await self.store.attach_embeddings(result.embeddings)
            logger.info(f"Attached {attached} embeddings for {tool_id}")
        if result.failed:
            logger.warning(f"{len(result.failed)} chunks of {tool_id} could not be embedded")
        return result

    async def ingest(self,
                     tool: ToolSource,
                     target: Optional[CrawlTarget] = None,
                     replace_existing: bool = False,
                     owner: Optional[str] = None,
                     cancel_event: Optional[asyncio.Event] = None,
                     deadline: Optional[float] = None) -> IngestResult:
        """Run a full ingestion for ``tool``.

        Per-page and per-chunk failures are reported in the result tallies.
        Run-level failures (store unavailable, no usable provider, nothing
        crawled) fail the status record and are returned, not raised.

        Args:
            tool: Tool definition
            target: Seeds and crawl options; derived from ``tool`` when omitted
            replace_existing: Delete the tool's stored chunks before crawling
            owner: Owner token for the status record
            cancel_event: Stops the crawl early; stored chunks are kept
            deadline: Crawl time budget in seconds
        """
        target = target or tool.to_crawl_target()
        record = await self.tracker.create(tool.id, owner=owner)
        result = IngestResult(tool_id=tool.id, record=record)
        await self.tracker.start(record)
        slog.info("Ingestion started", tool_id=tool.id, record_id=record.id,
                  seeds=len(target.seed_urls), replace_existing=replace_existing)

        try:
            if replace_existing:
                result.deleted_chunks = await self.store.delete_tool_chunks(tool.id)
                record.add_log(f"Deleted {result.deleted_chunks} existing chunks")

            result.crawl = await self.crawler.crawl(
                target.seed_urls, tool.id, options=target.options, version=target.version,
                cancel_event=cancel_event, deadline=deadline,
            )
            record.add_log(f"Crawled {result.crawl.pages_fetched} pages, "
                           f"stored {result.crawl.chunks_stored} chunks")

            result.embeddings = await self.embed_missing(tool.id)
            record.add_log(f"Embedded {len(result.embeddings.embeddings)} chunks, "
                           f"{len(result.embeddings.failed)} failed")

            chunks = await self.store.chunks_for_tool(tool.id)
            result.total_chunks = len(chunks)
            if not chunks:
                raise PipelineError(f"No documentation chunks were stored for {tool.id}")

            detection = await self.detector.detect_for_chunks(
                tool.id, chunks, sample_size=self.detection_sample_size
            )
            result.manifest = self.builder.build_manifest(
                tool.id, tool.name, detection, chunks,
                version=target.version, docs_url=tool.docs_url,
            )
            await self.store.save_manifest(result.manifest)
            record.add_log(f"Saved manifest (preferred format {detection.preferred_format.value})")

            await self.tracker.complete(record, result.total_chunks)
        except PipelineError as e:
            await self.tracker.fail(record, str(e), chunks_processed=result.total_chunks)
            slog.error("Ingestion failed", tool_id=tool.id, record_id=record.id,
                       error=str(e), error_type=type(e).__name__)
            return result
        except asyncio.CancelledError:
            await self.tracker.fail(record, "Ingestion cancelled", chunks_processed=result.total_chunks)
            raise
        except Exception as e:
            await self.tracker.fail(record, f"Unexpected error: {e}",
                                    chunks_processed=result.total_chunks)
            raise

        slog.info("Ingestion completed", tool_id=tool.id, record_id=record.id,
                  chunks=result.total_chunks,
                  embedded=len(result.embeddings.embeddings) if result.embeddings else 0,
                  preferred_format=result.manifest.preferred_format.value)
        return result


def build_detector(settings: Settings, use_llm: bool = True) -> FormatDetector:
    """Heuristic detector, with the LLM fallback when a provider key is set."""
    if use_llm and settings.provider is not None:
        return FormatDetector(llm_classifier=LLMClassifier.from_settings(settings))
    return FormatDetector(enable_llm_fallback=False)


async def build_pipeline(store, settings: Optional[Settings] = None,
                         use_llm: bool = True) -> IngestionPipeline:
    """Wire a pipeline from settings.

    Raises:
        ConfigurationError: No embedding provider is configured
    """
    settings = settings or get_settings()
    return IngestionPipeline(
        store=store,
        embedding_service=EmbeddingService.from_settings(settings),
        detector=build_detector(settings, use_llm),
    )


# Command line interface

console = Console()
app = typer.Typer(help="IDE documentation ingestion pipeline")


def _store_config(db_path: Optional[str], memory: bool) -> StoreConfig:
    config = StoreConfig.from_env()
    if memory:
        return StoreConfig(type=StoreType.MEMORY)
    if db_path:
        return config.model_copy(update={"type": StoreType.SQLITE, "sqlite_path": db_path})
    return config


def _init_logging():
    settings = get_settings()
    setup_logging(level=settings.log_level, log_file=settings.log_file, use_json=settings.log_json)


async def _close(store):
    close = getattr(store, "close", None)
    if close is not None:
        await close()


def _print_results(results):
    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Tool", style="bold")
    table.add_column("Status")
    table.add_column("Pages", justify="right")
    table.add_column("Chunks", justify="right")
    table.add_column("Embed failures", justify="right")
    table.add_column("Format")
    table.add_column("Error", style="red")

    for result in results:
        status = result.status.value
        style = "green" if result.succeeded else "red"
        table.add_row(
            result.tool_id,
            f"[{style}]{status}[/{style}]",
            str(result.crawl.pages_fetched) if result.crawl else "-",
            str(result.total_chunks),
            str(len(result.embeddings.failed)) if result.embeddings else "-",
            result.manifest.preferred_format.value if result.manifest else "-",
            result.record.error_message or "",
        )
    console.print(table)


async def _run_ingest(tools, store_config: StoreConfig, replace: bool, use_llm: bool,
                      max_pages: Optional[int], max_depth: Optional[int]):
    store = await create_store(store_config)
    try:
        pipeline = await build_pipeline(store, use_llm=use_llm)
        overrides = {}
        if max_pages is not None:
            overrides["max_pages"] = max_pages
        if max_depth is not None:
            overrides["max_depth"] = max_depth

        results = []
        for tool in tools:
            target = tool.to_crawl_target(**overrides)
            results.append(await pipeline.ingest(tool, target, replace_existing=replace))
        return results
    finally:
        await _close(store)


@app.command()
def ingest(
    tool_file: Path = typer.Argument(..., help="Tool definition YAML file"),
    db_path: Optional[str] = typer.Option(None, "--db", help="SQLite database path"),
    memory: bool = typer.Option(False, "--memory", help="Use an in-memory store"),
    replace: bool = typer.Option(False, "--replace", help="Delete existing chunks first"),
    max_pages: Optional[int] = typer.Option(None, "--max-pages", help="Override max pages"),
    max_depth: Optional[int] = typer.Option(None, "--max-depth", help="Override max depth"),
    no_llm: bool = typer.Option(False, "--no-llm", help="Skip LLM format classification"),
):
    """Ingest one tool's documentation"""
    _init_logging()
    try:
        tool = load_tool_file(tool_file)
    except (OSError, ValueError) as e:
        console.print(f"❌ Invalid tool file: {e}", style="bold red")
        raise typer.Exit(1)

    with console.status(f"[bold blue]Ingesting {tool.name}..."):
        try:
            results = asyncio.run(_run_ingest([tool], _store_config(db_path, memory), replace,
                                              not no_llm, max_pages, max_depth))
        except PipelineError as e:
            console.print(f"❌ Ingestion failed: {e}", style="bold red")
            raise typer.Exit(1)

    _print_results(results)
    if not all(r.succeeded for r in results):
        raise typer.Exit(1)


@app.command("ingest-all")
def ingest_all(
    sources_dir: Optional[Path] = typer.Option(None, "--sources-dir", help="Directory of tool YAML files"),
    db_path: Optional[str] = typer.Option(None, "--db", help="SQLite database path"),
    replace: bool = typer.Option(False, "--replace", help="Delete existing chunks first"),
    no_llm: bool = typer.Option(False, "--no-llm", help="Skip LLM format classification"),
):
    """Ingest every enabled tool"""
    _init_logging()
    tools = list(SourceLoader(sources_dir).enabled_tools().values())
    if not tools:
        console.print("No enabled tools found", style="bold yellow")
        raise typer.Exit(1)

    with console.status(f"[bold blue]Ingesting {len(tools)} tools..."):
        try:
            results = asyncio.run(_run_ingest(tools, _store_config(db_path, False), replace,
                                              not no_llm, None, None))
        except PipelineError as e:
            console.print(f"❌ Ingestion failed: {e}", style="bold red")
            raise typer.Exit(1)

    _print_results(results)
    if not all(r.succeeded for r in results):
        raise typer.Exit(1)


@app.command()
def embed(
    tool_id: str = typer.Argument(..., help="Tool id"),
    db_path: Optional[str] = typer.Option(None, "--db", help="SQLite database path"),
):
    """Embed stored chunks that have no vector yet"""
    _init_logging()

    async def run():
        store = await create_store(_store_config(db_path, False))
        try:
            pipeline = IngestionPipeline(store, EmbeddingService.from_settings(get_settings()))
            return await pipeline.embed_missing(tool_id)
        finally:
            await _close(store)

    with console.status(f"[bold blue]Embedding chunks for {tool_id}..."):
        try:
            result = asyncio.run(run())
        except PipelineError as e:
            console.print(f"❌ Embedding failed: {e}", style="bold red")
            raise typer.Exit(1)

    console.print(f"✅ {len(result.embeddings)} embedded, {len(result.failed)} failed, "
                  f"{result.cache_hits} cache hits", style="bold green")


@app.command()
def cleanup(
    tool_id: Optional[str] = typer.Option(None, "--tool", help="Limit to one tool"),
    db_path: Optional[str] = typer.Option(None, "--db", help="SQLite database path"),
):
    """Remove duplicate chunks"""
    _init_logging()

    async def run():
        store = await create_store(_store_config(db_path, False))
        try:
            return await store.remove_duplicates(tool_id)
        finally:
            await _close(store)

    try:
        stats = asyncio.run(run())
    except PipelineError as e:
        console.print(f"❌ Cleanup failed: {e}", style="bold red")
        raise typer.Exit(1)

    table = Table(title="Duplicate cleanup")
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    for key, value in stats.to_dict().items():
        table.add_row(key, str(value))
    console.print(table)


@app.command("validate-manifests")
def validate_manifests(
    sources_dir: Optional[Path] = typer.Option(None, "--sources-dir", help="Directory of tool YAML files"),
    db_path: Optional[str] = typer.Option(None, "--db", help="SQLite database path"),
    concurrency: int = typer.Option(5, "--concurrency", help="Tools validated at once"),
):
    """Validate stored manifests and regenerate invalid ones"""
    _init_logging()
    tools = [t.to_tool_ref() for t in SourceLoader(sources_dir).enabled_tools().values()]

    async def run():
        store = await create_store(_store_config(db_path, False))
        try:
            validator = ManifestValidator(store, concurrency=concurrency)
            return await validator.validate_all(tools or None)
        finally:
            await _close(store)

    with console.status("[bold blue]Validating manifests..."):
        try:
            summary = asyncio.run(run())
        except PipelineError as e:
            console.print(f"❌ Validation failed: {e}", style="bold red")
            raise typer.Exit(1)

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Tool", style="bold")
    table.add_column("Status")
    table.add_column("Issues")
    for check in summary.results:
        table.add_row(check.tool_id, check.status.value, "; ".join(check.issues) or check.error or "")
    console.print(table)


@app.command("detect-format")
def detect_format(
    tool_id: str = typer.Argument(..., help="Tool id"),
    db_path: Optional[str] = typer.Option(None, "--db", help="SQLite database path"),
    no_llm: bool = typer.Option(False, "--no-llm", help="Skip LLM format classification"),
):
    """Detect the preferred prompt format from stored chunks"""
    _init_logging()

    async def run():
        store = await create_store(_store_config(db_path, False))
        try:
            chunks = await store.chunks_for_tool(tool_id)
            if not chunks:
                return None
            return await build_detector(get_settings(), not no_llm).detect_for_chunks(tool_id, chunks)
        finally:
            await _close(store)

    try:
        detection = asyncio.run(run())
    except ConfigurationError as e:
        console.print(f"❌ {e}", style="bold red")
        raise typer.Exit(1)

    if detection is None:
        console.print(f"No chunks stored for {tool_id}", style="bold yellow")
        raise typer.Exit(1)

    console.print(f"🔍 Preferred format: [bold]{detection.preferred_format.value}[/bold] "
                  f"({detection.confidence_score:.0f}% confidence)")
    console.print(f"Methods: {', '.join(detection.detection_methods_used)}")
    for fallback in detection.fallback_formats:
        console.print(f"  • {fallback.format.value} ({fallback.confidence:.0f}%)")


if __name__ == "__main__":
    app()
