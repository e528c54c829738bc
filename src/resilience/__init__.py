"""
Resilience module for error handling and fault tolerance.

Provides:
- Circuit breaker pattern
- Bounded retry with exponential backoff
- Sync wiring helpers (circuit breaker decorator, thread-based timeout)
"""

from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerOpen,
    CircuitState,
    database_cb,
    triage_provider_cb,
)
from .retry import RetryConfig, RetryStats, retry_call
from .wiring import (
    DEFAULT_TRIAGE_TIMEOUT,
    CallTimeout,
    call_with_timeout,
    circuit_breaker_sync,
    triage_timeout_seconds,
)

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "CircuitBreakerOpen",
    "triage_provider_cb",
    "database_cb",
    "retry_call",
    "RetryConfig",
    "RetryStats",
    "circuit_breaker_sync",
    "call_with_timeout",
    "triage_timeout_seconds",
    "CallTimeout",
    "DEFAULT_TRIAGE_TIMEOUT",
]
