"""
Retry utilities with exponential backoff.

Usage:
    from zkv_relay.retry import retry_async, RetryConfig

    config = RetryConfig(max_retries=4, base_delay=0.5)
    result = await retry_async(fetch_proof, attestation_id, config=config)
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, ParamSpec, Type, TypeVar

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts (0 means no retries)
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential backoff calculation
        jitter: Maximum jitter factor (0.0-1.0) added to delays
        retryable_exceptions: Tuple of exception types that trigger retries
        non_retryable_exceptions: Tuple of exception types that should not be retried
        on_retry: Optional callback called before each retry
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: float = 0.1
    retryable_exceptions: tuple[Type[BaseException], ...] = (Exception,)
    non_retryable_exceptions: tuple[Type[BaseException], ...] = ()
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for the given attempt number (0-based)."""
        delay = self.base_delay * (self.exponential_base ** attempt)
        delay = min(delay, self.max_delay)

        if self.jitter > 0:
            jitter_range = delay * self.jitter
            delay = delay + random.uniform(-jitter_range, jitter_range)

        return max(0.0, delay)

    def should_retry(self, exception: BaseException) -> bool:
        """Determine if the exception should trigger a retry."""
        # Non-retryable takes precedence
        if isinstance(exception, self.non_retryable_exceptions):
            return False
        return isinstance(exception, self.retryable_exceptions)


@dataclass
class RetryStats:
    """Statistics about retry execution."""

    attempts: int = 0
    total_delay: float = 0.0
    success: bool = False
    last_exception: Optional[BaseException] = None


class RetryExhausted(Exception):
    """Raised when all retry attempts have been exhausted."""

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
    """Execute an async function with retry logic.

    Returns:
        The return value of the function

    Raises:
        RetryExhausted: If all retry attempts fail
        Exception: The original exception, if it is not retryable
    """
    if config is None:
        config = RetryConfig()

    stats = RetryStats()
    last_exception: Optional[BaseException] = None
    name = getattr(func, "__name__", repr(func))

    for attempt in range(config.max_retries + 1):
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
                    f"Exception {type(e).__name__} is not retryable, raising immediately"
                )
                raise

            if attempt >= config.max_retries:
                break

            delay = config.calculate_delay(attempt)
            stats.total_delay += delay

            logger.warning(
                f"Retry {attempt + 1}/{config.max_retries} for "
                f"{name} after {type(e).__name__}: {e}. "
                f"Waiting {delay:.2f}s"
            )

            if config.on_retry:
                config.on_retry(attempt + 1, e, delay)

            await asyncio.sleep(delay)

    raise RetryExhausted(
        f"All {config.max_retries + 1} attempts failed for {name}",
        stats=stats,
        original_exception=last_exception,
    ) from last_exception


__all__ = [
    "RetryConfig",
    "RetryStats",
    "RetryExhausted",
    "retry_async",
]
