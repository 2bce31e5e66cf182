"""Prometheus metrics for crawling, embedding, classification and chat."""

import logging
import re
import time
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse
from prometheus_client import Counter, Histogram, generate_latest
from prometheus_client.core import CollectorRegistry

logger = logging.getLogger(__name__)

idedocs_registry = CollectorRegistry()

# HTTP
request_count = Counter(
    'idedocs_http_requests_total',
    'Total number of HTTP requests',
    ['method', 'endpoint', 'status_code'],
    registry=idedocs_registry
)

request_duration = Histogram(
    'idedocs_http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=idedocs_registry
)

# Crawling
pages_total = Counter(
    'idedocs_crawl_pages_total',
    'Pages handled by the crawler by outcome',
    ['status'],
    registry=idedocs_registry
)

fetch_retries = Counter(
    'idedocs_crawl_fetch_retries_total',
    'Fetch attempts that were retried',
    registry=idedocs_registry
)

# Embeddings
embedding_batches = Counter(
    'idedocs_embedding_batches_total',
    'Embedding provider batches by outcome',
    ['outcome'],
    registry=idedocs_registry
)

embedding_duration = Histogram(
    'idedocs_embedding_batch_duration_seconds',
    'Embedding batch duration in seconds',
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=idedocs_registry
)

# Format detection
format_detections = Counter(
    'idedocs_format_detections_total',
    'Format detections by deciding stage and format',
    ['stage', 'format'],
    registry=idedocs_registry
)

# Retrieval
retrieval_duration = Histogram(
    'idedocs_retrieval_duration_seconds',
    'Retrieval and context assembly duration in seconds',
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5],
    registry=idedocs_registry
)

retrieval_results = Histogram(
    'idedocs_retrieval_results_count',
    'Chunks returned per query',
    buckets=[0, 1, 2, 3, 5, 10, 20],
    registry=idedocs_registry
)

# Chat
chat_completions = Counter(
    'idedocs_chat_completions_total',
    'Chat completions by outcome and confidence',
    ['outcome', 'confidence'],
    registry=idedocs_registry
)

error_count = Counter(
    'idedocs_errors_total',
    'Total number of errors',
    ['error_type', 'component'],
    registry=idedocs_registry
)


def record_page(status: str) -> None:
    pages_total.labels(status=status).inc()


def record_embedding_batch(outcome: str, duration: float) -> None:
    embedding_batches.labels(outcome=outcome).inc()
    embedding_duration.observe(duration)


def record_format_detection(stage: str, format_value: str) -> None:
    format_detections.labels(stage=stage, format=format_value).inc()


def record_retrieval(duration: float, result_count: int) -> None:
    retrieval_duration.observe(duration)
    retrieval_results.observe(result_count)


def record_chat(outcome: str, confidence: str = "none", error: Optional[BaseException] = None) -> None:
    chat_completions.labels(outcome=outcome, confidence=confidence).inc()
    if error is not None:
        error_count.labels(error_type=type(error).__name__, component="chat").inc()


def render_metrics() -> bytes:
    """Prometheus exposition text for the registry."""
    return generate_latest(idedocs_registry)


class PrometheusMiddleware:
    """ASGI middleware recording request counts and latency."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        method = request.method
        endpoint = self._normalize_endpoint(request.url.path)
        start_time = time.time()
        status_code = 500

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception as e:
            logger.error(f"Request processing error: {e}")
            error_count.labels(error_type=type(e).__name__, component="http").inc()
            raise
        finally:
            request_count.labels(method=method, endpoint=endpoint, status_code=str(status_code)).inc()
            request_duration.labels(method=method, endpoint=endpoint).observe(time.time() - start_time)

    def _normalize_endpoint(self, path: str) -> str:
        """Collapse ids in paths to keep label cardinality low."""
        path = re.sub(r'/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}', '/{uuid}', path)
        path = re.sub(r'/tools/[^/]+', '/tools/{tool_id}', path)
        return re.sub(r'/\d+', '/{id}', path)


def setup_prometheus_metrics(app: FastAPI) -> None:
    """Install the middleware and the /metrics endpoint."""
    app.add_middleware(PrometheusMiddleware)

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint():
        return PlainTextResponse(render_metrics().decode("utf-8"))

    logger.info("Prometheus metrics configured")
