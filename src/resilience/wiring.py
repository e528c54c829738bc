"""
Sync resilience wiring for the intake pipeline.

Decorators that put a blocking call behind a circuit breaker and bound
its wall-clock time. The timeout works from any thread, because pipeline
invocations run off the main thread.
"""

import functools
import logging
import os
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import ParamSpec, TypeVar

from .circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

# Default bound for a single triage provider call (seconds)
DEFAULT_TRIAGE_TIMEOUT = 10.0


class CallTimeout(Exception):
    """Raised when a wrapped call exceeds its timeout."""

    def __init__(self, name: str, timeout: float):
        self.name = name
        self.timeout = timeout
        super().__init__(f"Call '{name}' timed out after {timeout}s")


def triage_timeout_seconds() -> float:
    """Per-call provider timeout, from TRIAGE_TIMEOUT_SECONDS when set."""
    raw = os.environ.get("TRIAGE_TIMEOUT_SECONDS", "").strip()
    if not raw:
        return DEFAULT_TRIAGE_TIMEOUT
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring invalid TRIAGE_TIMEOUT_SECONDS=%r", raw)
        return DEFAULT_TRIAGE_TIMEOUT
    return value if value > 0 else DEFAULT_TRIAGE_TIMEOUT


def circuit_breaker_sync(cb: CircuitBreaker):
    """
    Decorator that wraps a synchronous function with circuit breaker protection.

    Raises CircuitBreakerOpen while the circuit is open.

    Usage:
        from src.resilience.circuit_breaker import triage_provider_cb

        @circuit_breaker_sync(triage_provider_cb)
        def _create_message(client, prompt):
            ...
    """

    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        @functools.wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return cb.call(func, *args, **kwargs)

        return wrapper

    return decorator


def call_with_timeout(func: Callable[..., T], timeout: float, name: str, *args, **kwargs) -> T:
    """
    Run func on a helper thread and wait at most ``timeout`` seconds.

    On timeout the helper thread is abandoned, not killed. The caller moves
    on and the late result is discarded.
    """
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"timeout-{name}")
    future = pool.submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        logger.warning("Call '%s' exceeded %.1fs timeout", name, timeout)
        raise CallTimeout(name, timeout) from None
    finally:
        pool.shutdown(wait=False)
