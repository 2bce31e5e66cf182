"""Error taxonomy shared by the ingestion and retrieval pipelines.

Per-item failures (a page, a batch of embeddings) are reported through result
tallies; only systemic failures are raised as exceptions.
"""

import asyncio
import logging
from typing import Optional

import aiohttp
import openai

logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """Base class for pipeline errors."""

    retryable = False

    def __init__(self, message: str, *, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


class TransientNetworkError(PipelineError):
    """Timeouts, connection resets and 5xx responses."""

    retryable = True

    def __init__(self, message: str, *, status: Optional[int] = None,
                 cause: Optional[BaseException] = None):
        super().__init__(message, cause=cause)
        self.status = status


class RateLimitError(TransientNetworkError):
    """HTTP 429 or a provider rate limit; may carry a retry hint in seconds."""

    def __init__(self, message: str, *, retry_after: Optional[float] = None,
                 cause: Optional[BaseException] = None):
        super().__init__(message, status=429, cause=cause)
        self.retry_after = retry_after


class ValidationError(PipelineError):
    """Malformed provider output or out-of-enum values."""

    retryable = True


class ConfigurationError(PipelineError):
    """Missing credentials or invalid settings. Never retried."""


class PermanentHTTPError(PipelineError):
    """Non-retryable HTTP status (4xx other than 408/429)."""

    def __init__(self, message: str, *, status: int):
        super().__init__(message)
        self.status = status


class StoreUnavailableError(PipelineError):
    """The document store cannot be reached; aborts the whole run."""


RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return None


def error_for_status(status: int, url: str, retry_after: Optional[str] = None) -> PipelineError:
    """Map an HTTP status code onto the taxonomy."""
    if status == 429:
        return RateLimitError(f"Rate limited by {url}", retry_after=_parse_retry_after(retry_after))
    if status in RETRYABLE_STATUS_CODES:
        return TransientNetworkError(f"HTTP {status} from {url}", status=status)
    return PermanentHTTPError(f"HTTP {status} from {url}", status=status)


def classify_provider_error(exc: BaseException) -> BaseException:
    """Translate openai SDK and aiohttp exceptions into pipeline errors.

    Unknown exceptions are returned unchanged so callers can re-raise them.
    """
    if isinstance(exc, PipelineError):
        return exc

    if isinstance(exc, openai.AuthenticationError) or isinstance(exc, openai.PermissionDeniedError):
        return ConfigurationError(f"Provider rejected credentials: {exc}", cause=exc)

    if isinstance(exc, openai.RateLimitError):
        retry_after = None
        response = getattr(exc, "response", None)
        if response is not None:
            retry_after = _parse_retry_after(response.headers.get("retry-after"))
        return RateLimitError(f"Provider rate limit: {exc}", retry_after=retry_after, cause=exc)

    if isinstance(exc, (openai.APITimeoutError, openai.APIConnectionError, openai.InternalServerError)):
        return TransientNetworkError(f"Provider unavailable: {exc}", cause=exc)

    if isinstance(exc, openai.APIStatusError):
        if exc.status_code in RETRYABLE_STATUS_CODES:
            return TransientNetworkError(f"Provider error {exc.status_code}: {exc}",
                                         status=exc.status_code, cause=exc)
        return PermanentHTTPError(f"Provider error {exc.status_code}: {exc}", status=exc.status_code)

    if isinstance(exc, (asyncio.TimeoutError, aiohttp.ServerTimeoutError)):
        return TransientNetworkError(f"Request timed out: {exc}", cause=exc)

    if isinstance(exc, aiohttp.ClientResponseError):
        return error_for_status(exc.status, str(exc.request_info.real_url))

    if isinstance(exc, aiohttp.ClientError):
        return TransientNetworkError(f"Connection error: {exc}", cause=exc)

    return exc


def is_retryable(exc: BaseException) -> bool:
    """Return True when the error is worth another attempt."""
    exc = classify_provider_error(exc)
    return isinstance(exc, PipelineError) and exc.retryable
