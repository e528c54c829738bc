"""
Retry with Exponential Backoff.

Bounded retry for transient failures. The aggregation engine uses it to
re-run find-or-create after losing a race on the active-group unique index.
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, TypeVar, ParamSpec, Optional

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_delay: float = 1.0              # Initial delay in seconds
    max_delay: float = 60.0              # Maximum delay
    exponential_base: float = 2.0        # Exponential backoff multiplier
    jitter: bool = True                  # Add randomness to delay
    jitter_factor: float = 0.1           # Jitter as fraction of delay
    retry_exceptions: tuple = (Exception,)  # Exceptions to retry
    no_retry_exceptions: tuple = ()       # Exceptions to NOT retry


@dataclass
class RetryStats:
    """Statistics from a retry operation."""
    attempts: int = 0
    total_delay: float = 0.0
    success: bool = False
    final_exception: Optional[Exception] = None


def calculate_delay(
    attempt: int,
    config: RetryConfig
) -> float:
    """Calculate delay for a given attempt number."""
    delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    delay = min(delay, config.max_delay)

    if config.jitter:
        jitter_range = delay * config.jitter_factor
        delay = delay + random.uniform(-jitter_range, jitter_range)

    return max(0, delay)


def should_retry(
    exc: Exception,
    config: RetryConfig
) -> bool:
    """Determine if an exception should trigger a retry."""
    if config.no_retry_exceptions and isinstance(exc, config.no_retry_exceptions):
        return False
    return isinstance(exc, config.retry_exceptions)


def retry_call(
    func: Callable[P, T],
    *args: P.args,
    config: RetryConfig = None,
    on_retry: Callable[[int, Exception, float], None] = None,
    stats: RetryStats = None,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: P.kwargs
) -> T:
    """
    Call func, retrying with backoff on exceptions the config allows.

    Args:
        func: Function to call
        *args: Positional arguments for func
        config: Retry configuration
        on_retry: Callback called before each retry (attempt, exception, delay)
        stats: Optional RetryStats filled in as the loop runs
        sleep: Sleep function, replaceable in tests
        **kwargs: Keyword arguments for func

    Raises:
        The last exception once all attempts are exhausted, or immediately
        for exceptions that are not retryable.

    Usage:
        group = retry_call(
            _find_or_create,
            category_id,
            location_id,
            config=RetryConfig(max_attempts=3, base_delay=0.05),
        )
    """
    config = config or RetryConfig()
    stats = stats if stats is not None else RetryStats()
    name = getattr(func, "__name__", repr(func))

    for attempt in range(1, config.max_attempts + 1):
        stats.attempts = attempt
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            stats.final_exception = e

            if not should_retry(e, config):
                logger.debug("Not retrying %s: %s not in retry list", name, type(e).__name__)
                raise

            if attempt >= config.max_attempts:
                logger.warning("All %d attempts failed for %s: %s", config.max_attempts, name, e)
                raise

            delay = calculate_delay(attempt, config)
            stats.total_delay += delay
            logger.info(
                "Retry %d/%d for %s after %.2fs: %s: %s",
                attempt,
                config.max_attempts,
                name,
                delay,
                type(e).__name__,
                e,
            )
            if on_retry:
                on_retry(attempt, e, delay)
            sleep(delay)
        else:
            stats.success = True
            return result

    raise RuntimeError("Retry loop exited unexpectedly")
