"""Retry policy with exponential backoff and jitter."""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import ConfigurationError, RateLimitError, classify_provider_error, is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with exponential backoff.

    Args:
        max_attempts: Total attempts including the first call
        base_delay: Delay before the first retry (seconds)
        max_delay: Upper bound on any single delay (seconds)
        multiplier: Growth factor between retries
        jitter: Fraction of the computed delay added at random
    """
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.1

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("Delays must be non-negative")
        if self.jitter < 0:
            raise ValueError("jitter must be non-negative")

    def compute_delay(self, attempt: int) -> float:
        """Delay to wait after the given zero-based failed attempt."""
        base = self.base_delay * (self.multiplier ** attempt)
        delay = base + random.uniform(0, self.jitter) * base
        return min(delay, self.max_delay)

    async def run(self,
                  fn: Callable[[], Awaitable[T]],
                  is_retryable_error: Callable[[BaseException], bool] = is_retryable,
                  description: str = "operation",
                  sleep: Optional[Callable[[float], Awaitable[None]]] = None) -> T:
        """Call ``fn`` until it succeeds or attempts are exhausted.

        The last error is re-raised (translated to the pipeline taxonomy when
        recognized). Configuration errors are raised immediately.
        """
        sleep = sleep or asyncio.sleep

        for attempt in range(self.max_attempts):
            try:
                return await fn()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = classify_provider_error(e)
                exhausted = attempt + 1 >= self.max_attempts or not is_retryable_error(error)
                if isinstance(error, ConfigurationError) or exhausted:
                    if error is e:
                        raise
                    raise error from e

                delay = self.compute_delay(attempt)
                if isinstance(error, RateLimitError) and error.retry_after:
                    delay = max(delay, error.retry_after)
                logger.warning(
                    f"{description} failed ({type(error).__name__}: {error}), "
                    f"retrying in {delay:.2f}s (attempt {attempt + 1}/{self.max_attempts})"
                )
                await sleep(delay)

        raise ValueError("max_attempts must be at least 1")


def no_retry() -> RetryPolicy:
    """Single attempt policy, used by tests and one-shot calls."""
    return RetryPolicy(max_attempts=1, base_delay=0.0, jitter=0.0)
