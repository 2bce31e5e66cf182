"""Documentation crawler.

Breadth-first traversal with a bounded worker pool. Each run owns its own
frontier, visited set and per-host rate-limit map; nothing is shared between
runs.
"""

import asyncio
import logging
import random
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Set, Tuple
from urllib.parse import urlparse

from config.policy_loader import PolicyConfig, policy_config
from observability.logging import get_structured_logger
from observability.metrics import fetch_retries, record_page
from services.shared.errors import (
    PipelineError,
    StoreUnavailableError,
    error_for_status,
    is_retryable,
)
from services.shared.models import Chunk, CrawlOptions, Page, PageStatus, utcnow
from services.shared.retry import RetryPolicy

from .chunker import DocumentChunker
from .fetcher import AiohttpFetcher, FetchResponse, Fetcher
from .parser import DocumentParser, detect_version
from .policy import RobotsPolicy
from .url_normalizer import URLNormalizer

logger = logging.getLogger(__name__)
slog = get_structured_logger(__name__, component="crawler")


class ChunkSink(Protocol):
    async def upsert_chunks(self, chunks: Sequence[Chunk]) -> int: ...


@dataclass
class CrawlStats:
    """Statistics for a crawl session."""
    tool_id: str
    pages_visited: int = 0
    pages_fetched: int = 0
    pages_skipped: int = 0
    pages_failed: int = 0
    skipped_robots: int = 0
    skipped_pattern: int = 0
    chunks_stored: int = 0
    total_bytes: int = 0
    retries: int = 0
    max_depth_seen: int = 0
    cancelled: bool = False
    errors: List[Dict[str, str]] = field(default_factory=list)
    pages: List[Page] = field(default_factory=list)
    start_time: datetime = field(default_factory=utcnow)
    end_time: Optional[datetime] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return None

    def finish(self):
        """Mark crawl as finished."""
        self.end_time = utcnow()

    def fetched_urls(self) -> List[str]:
        return [p.url for p in self.pages if p.status in (PageStatus.OK, PageStatus.FAILED,
                                                          PageStatus.SKIPPED_CONTENT)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tool_id": self.tool_id,
            "pages_visited": self.pages_visited,
            "pages_fetched": self.pages_fetched,
            "pages_skipped": self.pages_skipped,
            "pages_failed": self.pages_failed,
            "skipped_robots": self.skipped_robots,
            "skipped_pattern": self.skipped_pattern,
            "chunks_stored": self.chunks_stored,
            "total_bytes": self.total_bytes,
            "retries": self.retries,
            "max_depth_seen": self.max_depth_seen,
            "cancelled": self.cancelled,
            "errors": list(self.errors),
            "duration_seconds": self.duration_seconds,
        }


class _HostRateLimiter:
    """Per-host next-allowed-time map.

    The lock only guards the reservation; callers sleep outside it.
    """

    def __init__(self, clock: Callable[[], float], jitter: float = 0.1):
        self.clock = clock
        self.jitter = jitter
        self.next_allowed: Dict[str, float] = {}
        self._lock = asyncio.Lock()

    async def reserve(self, host: str, interval: float) -> float:
        """Reserve the next slot for ``host`` and return how long to wait."""
        async with self._lock:
            now = self.clock()
            slot = max(now, self.next_allowed.get(host, now))
            self.next_allowed[host] = slot + interval + random.uniform(0, self.jitter * interval)
        return slot - now


@dataclass
class _CrawlRun:
    """Mutable state for one crawl, shared by its workers."""
    tool_id: str
    options: CrawlOptions
    version: Optional[str]
    normalizer: URLNormalizer
    stats: CrawlStats
    allowed_patterns: List[re.Pattern]
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    seen: Set[str] = field(default_factory=set)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    fetch_slots: int = 0
    stopping: bool = False
    fatal: Optional[BaseException] = None


class Crawler:
    """Asynchronous documentation crawler.

    Pages are parsed, chunked and handed to ``sink`` as they are fetched, so a
    cancelled crawl keeps everything stored before the cancellation.
    """

    def __init__(self,
                 chunker: DocumentChunker,
                 sink: Optional[ChunkSink] = None,
                 fetcher: Optional[Fetcher] = None,
                 parser: Optional[DocumentParser] = None,
                 config: Optional[PolicyConfig] = None,
                 retry_base_delay: float = 1.0,
                 drain_timeout: float = 5.0,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.chunker = chunker
        self.sink = sink
        self.config = config or policy_config
        self.fetcher = fetcher
        self.parser = parser or DocumentParser()
        self.retry_base_delay = retry_base_delay
        self.drain_timeout = drain_timeout
        self.clock = clock
        self.sleep = sleep
        self.supported_content_types = self.config.get_supported_content_types()

    async def crawl(self,
                    seed_urls: Sequence[str],
                    tool_id: str,
                    options: Optional[CrawlOptions] = None,
                    version: Optional[str] = None,
                    cancel_event: Optional[asyncio.Event] = None,
                    deadline: Optional[float] = None) -> CrawlStats:
        """Crawl from ``seed_urls`` and store chunks for ``tool_id``.

        Args:
            seed_urls: Depth-0 URLs
            tool_id: Owning tool for produced chunks
            options: Depth, page, politeness and retry limits
            version: Documentation version; detected per page when omitted
            cancel_event: Set to stop spawning fetches
            deadline: Overall time budget in seconds

        Returns:
            CrawlStats with per-page records. Partial results survive
            cancellation.

        Raises:
            StoreUnavailableError: The chunk sink is unreachable
        """
        options = options or CrawlOptions()
        seeds = [u for u in (URLNormalizer.normalize(s) for s in seed_urls) if u]
        if not seeds:
            raise ValueError("No valid seed URLs")

        normalizer = URLNormalizer(seeds[0], same_origin_only=options.same_origin_only,
                                   blocked_extensions=self.config.get_blocked_extensions())
        for seed in seeds[1:]:
            normalizer.allow_origin(seed)

        run = _CrawlRun(
            tool_id=tool_id,
            options=options,
            version=version,
            normalizer=normalizer,
            stats=CrawlStats(tool_id=tool_id),
            allowed_patterns=[re.compile(p) for p in options.allowed_patterns],
        )
        for seed in seeds:
            if seed not in run.seen:
                run.seen.add(seed)
                run.queue.put_nowait((seed, 0))

        user_agent = options.user_agent or self.config.get_user_agent()
        own_fetcher = self.fetcher is None
        fetcher = self.fetcher or AiohttpFetcher(user_agent, max_connections=options.max_concurrency,
                                                 max_body_bytes=options.max_content_bytes)
        policy = RobotsPolicy(fetcher, user_agent=user_agent, config=self.config)
        limiter = _HostRateLimiter(self.clock)

        slog.info("Crawl started", tool_id=tool_id, seeds=len(seeds),
                  max_depth=options.max_depth, max_pages=options.max_pages)

        workers = [
            asyncio.create_task(self._worker(run, fetcher, policy, limiter))
            for _ in range(options.max_concurrency)
        ]
        try:
            await self._wait_until_done(run, cancel_event, deadline)
        finally:
            await self._shutdown(run, workers)
            if own_fetcher:
                await fetcher.close()
            run.stats.finish()

        if run.fatal is not None:
            raise run.fatal

        stats = run.stats
        slog.info("Crawl finished", tool_id=tool_id, fetched=stats.pages_fetched,
                  skipped=stats.pages_skipped, failed=stats.pages_failed,
                  chunks=stats.chunks_stored, cancelled=stats.cancelled)
        return stats

    async def _wait_until_done(self, run: _CrawlRun, cancel_event: Optional[asyncio.Event],
                               deadline: Optional[float]):
        join_task = asyncio.create_task(run.queue.join())
        waiters = {join_task}
        cancel_task = None
        if cancel_event is not None:
            cancel_task = asyncio.create_task(cancel_event.wait())
            waiters.add(cancel_task)

        try:
            done, _ = await asyncio.wait(waiters, timeout=deadline,
                                         return_when=asyncio.FIRST_COMPLETED)
            if join_task not in done:
                reason = "cancelled" if cancel_task in done else "deadline reached"
                logger.warning(f"Stopping crawl for {run.tool_id}: {reason}")
                run.stats.cancelled = True
        finally:
            for task in waiters:
                if not task.done():
                    task.cancel()

    async def _shutdown(self, run: _CrawlRun, workers: List[asyncio.Task]):
        run.stopping = True
        for _ in workers:
            run.queue.put_nowait(None)
        _, pending = await asyncio.wait(workers, timeout=self.drain_timeout)
        for task in pending:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

    async def _worker(self, run: _CrawlRun, fetcher: Fetcher, policy: RobotsPolicy,
                      limiter: _HostRateLimiter):
        while True:
            item = await run.queue.get()
            try:
                if item is None:
                    return
                if run.stopping:
                    continue
                url, depth = item
                try:
                    await self._process(run, fetcher, policy, limiter, url, depth)
                except StoreUnavailableError as e:
                    logger.error(f"Store unavailable while crawling {url}: {e}")
                    run.fatal = e
                    run.stopping = True
                except Exception as e:
                    # Unexpected per-page error: record and keep crawling
                    logger.exception(f"Unexpected error processing {url}")
                    self._record(run, Page(url=url, depth=depth, status=PageStatus.FAILED, error=str(e)))
            finally:
                run.queue.task_done()

    def _record(self, run: _CrawlRun, page: Page):
        stats = run.stats
        stats.pages.append(page)
        if page.status == PageStatus.OK:
            stats.pages_fetched += 1
            stats.chunks_stored += page.chunk_count
            stats.max_depth_seen = max(stats.max_depth_seen, page.depth)
        elif page.status == PageStatus.FAILED:
            stats.pages_failed += 1
            stats.errors.append({"url": page.url, "error": page.error or "unknown"})
        else:
            stats.pages_skipped += 1
            if page.status == PageStatus.SKIPPED_ROBOTS:
                stats.skipped_robots += 1
            elif page.status == PageStatus.SKIPPED_PATTERN:
                stats.skipped_pattern += 1
        record_page(page.status.value)

    def _matches_allowed(self, run: _CrawlRun, url: str) -> bool:
        if not run.allowed_patterns:
            return True
        return any(p.search(url) for p in run.allowed_patterns)

    async def _process(self, run: _CrawlRun, fetcher: Fetcher, policy: RobotsPolicy,
                       limiter: _HostRateLimiter, url: str, depth: int):
        options = run.options

        if not self._matches_allowed(run, url):
            self._record(run, Page(url=url, depth=depth, status=PageStatus.SKIPPED_PATTERN,
                                   error="No allowed pattern matches"))
            return

        if policy.is_url_blacklisted(url) or policy.is_non_documentation(url):
            self._record(run, Page(url=url, depth=depth, status=PageStatus.SKIPPED_PATTERN,
                                   error="Non-documentation URL"))
            return

        if options.respect_robots_txt and not await policy.can_fetch(url):
            self._record(run, Page(url=url, depth=depth, status=PageStatus.SKIPPED_ROBOTS,
                                   error="Blocked by robots.txt"))
            return

        async with run.lock:
            if run.fetch_slots >= options.max_pages:
                return
            run.fetch_slots += 1
            run.stats.pages_visited += 1

        interval = options.rate_limit_ms / 1000.0
        if options.respect_robots_txt:
            crawl_delay = await policy.crawl_delay(url)
            if crawl_delay:
                interval = max(interval, crawl_delay)

        try:
            response = await self._fetch_with_retry(run, fetcher, limiter, url, interval)
        except PipelineError as e:
            logger.warning(f"Giving up on {url}: {e}")
            self._record(run, Page(url=url, depth=depth, status=PageStatus.FAILED, error=str(e),
                                   status_code=getattr(e, "status", None)))
            return

        page, links = await self._handle_response(run, response, url, depth)
        self._record(run, page)
        if links:
            await self._enqueue_links(run, links, response.final_url or url, depth)

    async def _fetch_with_retry(self, run: _CrawlRun, fetcher: Fetcher, limiter: _HostRateLimiter,
                                url: str, interval: float) -> FetchResponse:
        host = urlparse(url).netloc
        attempts = 0

        async def attempt() -> FetchResponse:
            nonlocal attempts
            attempts += 1
            if attempts > 1:
                run.stats.retries += 1
                fetch_retries.inc()
            wait = await limiter.reserve(host, interval)
            if wait > 0:
                await self.sleep(wait)
            response = await fetcher.get(url, timeout=run.options.timeout)
            if not response.ok:
                raise error_for_status(response.status, url, response.headers.get("retry-after"))
            return response

        retry = RetryPolicy(max_attempts=run.options.retry_attempts + 1,
                            base_delay=self.retry_base_delay, max_delay=30.0,
                            multiplier=2.0, jitter=0.3)
        return await retry.run(attempt, is_retryable, description=f"GET {url}", sleep=self.sleep)

    def _supported(self, content_type: str, url: str) -> bool:
        path = urlparse(url).path.lower()
        if path.endswith(('.md', '.markdown', '.txt')):
            return True
        if not content_type:
            return False
        return any(t in content_type for t in self.supported_content_types)

    async def _handle_response(self, run: _CrawlRun, response: FetchResponse,
                               url: str, depth: int) -> Tuple[Page, List[str]]:
        """Parse, chunk and store one fetched page; returns links to follow."""
        options = run.options
        content_type = response.content_type.lower()

        declared = response.headers.get("content-length")
        too_large = (declared and declared.isdigit() and int(declared) > options.max_content_bytes) \
            or len(response.text.encode("utf-8", errors="ignore")) > options.max_content_bytes
        if too_large:
            return _skipped_content(url, depth, response, "Content too large to process"), []

        if not self._supported(content_type, url):
            return _skipped_content(url, depth, response, f"Unsupported content type: {content_type}"), []

        run.stats.total_bytes += len(response.text)
        parsed = self.parser.parse(response.text, url, content_type)
        links = parsed.links if parsed.content_kind == "html" else []

        text = parsed.text.strip()
        if len(text) < options.min_content_chars:
            # Index pages are often short but still link to the real docs
            return _skipped_content(url, depth, response, "Content too short to store"), links

        page_version = run.version or detect_version(url, parsed.title, parsed.section, text)
        chunks = self.chunker.chunk(run.tool_id, text, url, version=page_version,
                                    section=parsed.section or parsed.title)

        stored = 0
        if chunks and self.sink is not None:
            stored = await self.sink.upsert_chunks(chunks)

        page = Page(url=url, depth=depth, status=PageStatus.OK, text=text, title=parsed.title,
                    section=parsed.section, version=page_version, content_type=content_type,
                    status_code=response.status, chunk_count=stored if self.sink else len(chunks))
        logger.debug(f"Fetched {url} (depth {depth}): {len(chunks)} chunks")
        return page, links

    async def _enqueue_links(self, run: _CrawlRun, links: List[str], base_url: str, depth: int):
        if depth >= run.options.max_depth or run.stopping:
            return

        resolved: List[str] = []
        for href in links:
            link = run.normalizer.resolve(href, base_url)
            if link:
                resolved.append(link)

        async with run.lock:
            for link in resolved:
                if link not in run.seen:
                    run.seen.add(link)
                    run.queue.put_nowait((link, depth + 1))


def _skipped_content(url: str, depth: int, response: FetchResponse, reason: str) -> Page:
    return Page(url=url, depth=depth, status=PageStatus.SKIPPED_CONTENT, error=reason,
                content_type=response.content_type, status_code=response.status)

