"""
Bounded retry combinator with capped exponential backoff.

Every RPC call site that may hit a lagging or flaky node goes through
retry_async(). Errors flagged as non-retryable (RelayerError.retryable is
False, e.g. a mined revert or an unconfirmed submission) are raised
immediately so a non-idempotent write is never repeated.

Usage:
    from omega_relayer.retry import retry_async, RetryConfig

    config = RetryConfig(max_attempts=3, base_delay=1.0)
    tx = await retry_async(client.get_transaction, signature, config=config)
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import (
    Awaitable,
    Callable,
    Optional,
    ParamSpec,
    TypeVar,
)

import httpx

from .exceptions import RelayerError

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


def is_transient(exception: BaseException) -> bool:
    """Default retry condition: transport failures and retryable relayer errors."""
    if isinstance(exception, RelayerError):
        return exception.retryable
    return isinstance(exception, (httpx.TransportError, httpx.HTTPStatusError, asyncio.TimeoutError))


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_attempts: Total attempts including the first one (minimum 1)
        base_delay: Delay before the second attempt in seconds
        max_delay: Cap applied to every delay
        exponential_base: Growth factor; 1.0 gives linear (constant) backoff
        jitter: Maximum jitter factor (0.0-1.0) added to delays
        retry_condition: Decides whether an exception is worth another attempt
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: float = 0.0
    retry_condition: Callable[[BaseException], bool] = is_transient

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay after the given (0-based) failed attempt."""
        delay = self.base_delay * (self.exponential_base ** attempt)
        delay = min(delay, self.max_delay)

        if self.jitter > 0:
            jitter_range = delay * self.jitter
            delay = delay + random.uniform(-jitter_range, jitter_range)

        return max(0.0, delay)

    def should_retry(self, exception: BaseException) -> bool:
        """Determine if the exception should trigger a retry."""
        return self.retry_condition(exception)


@dataclass
class RetryStats:
    """Statistics about retry execution."""

    attempts: int = 0
    total_delay: float = 0.0
    success: bool = False
    last_exception: Optional[BaseException] = None


class RetryExhausted(RelayerError):
    """Raised when all retry attempts have been exhausted.

    Attributes:
        stats: Statistics about the retry attempts
        original_exception: The last exception that was raised
    """

    error_code = "RETRY_EXHAUSTED"

    def __init__(
        self,
        message: str,
        stats: RetryStats,
        original_exception: BaseException,
    ) -> None:
        super().__init__(message)
        self.stats = stats
        self.original_exception = original_exception


async def retry_async(
    func: Callable[P, Awaitable[T]],
    *args: P.args,
    config: Optional[RetryConfig] = None,
    **kwargs: P.kwargs,
) -> T:
    """Execute an async function with bounded retries.

    Args:
        func: The async function to execute
        *args: Positional arguments for the function
        config: Retry configuration (uses defaults if None)
        **kwargs: Keyword arguments for the function

    Returns:
        The return value of the function

    Raises:
        RetryExhausted: If every attempt failed with a retryable error
        Exception: The first non-retryable error, unchanged
    """
    if config is None:
        config = RetryConfig()

    attempts = max(1, config.max_attempts)
    stats = RetryStats()
    last_exception: Optional[BaseException] = None
    name = getattr(func, "__name__", repr(func))

    for attempt in range(attempts):
        stats.attempts = attempt + 1

        try:
            result = await func(*args, **kwargs)
            stats.success = True
            return result

        except Exception as e:
            last_exception = e
            stats.last_exception = e

            if not config.should_retry(e):
                logger.debug(
                    f"Exception {type(e).__name__} is not retryable, "
                    f"raising immediately"
                )
                raise

            if attempt + 1 >= attempts:
                break

            delay = config.calculate_delay(attempt)
            stats.total_delay += delay

            logger.warning(
                f"Retry {attempt + 1}/{attempts - 1} for "
                f"{name} after {type(e).__name__}: {e}. "
                f"Waiting {delay:.2f}s"
            )

            await asyncio.sleep(delay)

    raise RetryExhausted(
        f"All {attempts} attempts failed for {name}",
        stats=stats,
        original_exception=last_exception,
    ) from last_exception


__all__ = [
    "RetryConfig",
    "RetryStats",
    "RetryExhausted",
    "retry_async",
    "is_transient",
]
