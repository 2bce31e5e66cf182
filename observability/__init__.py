"""Observability package: logging setup and Prometheus metrics."""

from .logging import (
    setup_logging,
    get_logger,
    get_structured_logger,
    StructuredLogger,
    JSONFormatter,
    ColoredFormatter
)
from .metrics import (
    idedocs_registry,
    render_metrics,
    setup_prometheus_metrics,
    PrometheusMiddleware
)

__all__ = [
    'setup_logging',
    'get_logger',
    'get_structured_logger',
    'StructuredLogger',
    'JSONFormatter',
    'ColoredFormatter',
    'idedocs_registry',
    'render_metrics',
    'setup_prometheus_metrics',
    'PrometheusMiddleware'
]
