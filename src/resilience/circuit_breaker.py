"""
Circuit Breaker for blocking calls.

Fails fast when the triage provider or the store keeps failing, so a
submission burst does not pile up behind a dead dependency.

States:
- CLOSED: calls pass through
- OPEN: calls are rejected until the recovery timeout elapses
- HALF_OPEN: a limited number of probe calls decide whether to close again

Pipeline invocations run on worker threads, so state is guarded by a
threading lock rather than an event-loop lock.
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from functools import wraps
from typing import Callable, Optional, Any, TypeVar, ParamSpec

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpen(Exception):
    """Raised when circuit is open and request is rejected."""
    def __init__(self, name: str, until: datetime):
        self.name = name
        self.until = until
        super().__init__(f"Circuit '{name}' is open until {until.isoformat()}")


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""
    failure_threshold: int = 5          # Failures before opening
    success_threshold: int = 2          # Successes to close from half-open
    timeout_seconds: float = 60.0       # Time in open state before half-open
    half_open_max_calls: int = 3        # Max probe calls in half-open
    exclude_exceptions: tuple = ()       # Never counted as failures
    include_exceptions: tuple = (Exception,)


@dataclass
class CircuitMetrics:
    """Counters for a circuit breaker."""
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    state_changes: int = 0
    last_failure_time: Optional[float] = None
    last_success_time: Optional[float] = None
    last_state_change: Optional[float] = None
    consecutive_failures: int = 0
    consecutive_successes: int = 0


class CircuitBreaker:
    """
    Thread-safe circuit breaker.

    Usage:
        cb = CircuitBreaker("triage_provider")

        @cb
        def call_provider(text):
            ...

        result = cb.call(call_provider, text)
    """

    # Process-wide registry, read by the health endpoint
    _registry: dict[str, "CircuitBreaker"] = {}

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig = None,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._state = CircuitState.CLOSED
        self._metrics = CircuitMetrics()
        self._opened_at: Optional[float] = None
        self._half_open_calls = 0
        self._lock = threading.Lock()

        CircuitBreaker._registry[name] = self

        logger.info("Circuit breaker '%s' initialized", name)

    @property
    def state(self) -> CircuitState:
        """Current state, promoting OPEN to HALF_OPEN once the timeout has passed."""
        with self._lock:
            self._check_state()
            return self._state

    @property
    def metrics(self) -> CircuitMetrics:
        return self._metrics

    @classmethod
    def get(cls, name: str) -> Optional["CircuitBreaker"]:
        return cls._registry.get(name)

    @classmethod
    def all(cls) -> dict[str, "CircuitBreaker"]:
        return cls._registry.copy()

    # Callers of the underscore methods must hold self._lock.

    def _check_state(self) -> None:
        if self._state == CircuitState.OPEN:
            now = time.time()
            if self._opened_at and (now - self._opened_at) >= self.config.timeout_seconds:
                self._transition_to(CircuitState.HALF_OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        self._metrics.state_changes += 1
        self._metrics.last_state_change = time.time()

        if new_state == CircuitState.OPEN:
            self._opened_at = time.time()
            self._half_open_calls = 0
        elif new_state == CircuitState.HALF_OPEN:
            self._half_open_calls = 0
        elif new_state == CircuitState.CLOSED:
            self._metrics.consecutive_failures = 0

        logger.info(
            "Circuit '%s' transitioned: %s -> %s",
            self.name,
            old_state.value,
            new_state.value,
        )

    def _record_success(self) -> None:
        self._metrics.total_calls += 1
        self._metrics.successful_calls += 1
        self._metrics.consecutive_successes += 1
        self._metrics.consecutive_failures = 0
        self._metrics.last_success_time = time.time()

        if self._state == CircuitState.HALF_OPEN:
            if self._metrics.consecutive_successes >= self.config.success_threshold:
                self._transition_to(CircuitState.CLOSED)

    def _record_failure(self) -> None:
        self._metrics.total_calls += 1
        self._metrics.failed_calls += 1
        self._metrics.consecutive_failures += 1
        self._metrics.consecutive_successes = 0
        self._metrics.last_failure_time = time.time()

        if self._state == CircuitState.CLOSED:
            if self._metrics.consecutive_failures >= self.config.failure_threshold:
                self._transition_to(CircuitState.OPEN)
        elif self._state == CircuitState.HALF_OPEN:
            self._transition_to(CircuitState.OPEN)

    def _should_count_failure(self, exc: Exception) -> bool:
        if self.config.exclude_exceptions and isinstance(exc, self.config.exclude_exceptions):
            return False
        return isinstance(exc, self.config.include_exceptions)

    def _admit(self) -> None:
        """Reject the call if the circuit is open or the half-open probe budget is spent."""
        with self._lock:
            self._check_state()

            if self._state == CircuitState.OPEN:
                self._metrics.rejected_calls += 1
                until = datetime.fromtimestamp(
                    self._opened_at + self.config.timeout_seconds,
                    tz=timezone.utc,
                )
                raise CircuitBreakerOpen(self.name, until)

            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_calls >= self.config.half_open_max_calls:
                    self._metrics.rejected_calls += 1
                    raise CircuitBreakerOpen(self.name, datetime.now(timezone.utc))
                self._half_open_calls += 1

    def call(self, func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
        """
        Execute func through the circuit breaker.

        Raises:
            CircuitBreakerOpen: If circuit is open
            Exception: Any exception from func
        """
        self._admit()

        try:
            result = func(*args, **kwargs)
        except Exception as e:
            with self._lock:
                if self._should_count_failure(e):
                    self._record_failure()
            raise

        with self._lock:
            self._record_success()
        return result

    def __call__(self, func: Callable[P, T]) -> Callable[P, T]:
        """Use as decorator."""
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return self.call(func, *args, **kwargs)
        return wrapper

    def reset(self) -> None:
        """Manually reset the circuit breaker to closed state."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._metrics.consecutive_failures = 0
            self._metrics.consecutive_successes = 0
            self._opened_at = None
            self._half_open_calls = 0
        logger.info("Circuit '%s' manually reset", self.name)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "name": self.name,
            "state": self.state.value,
            "metrics": {
                "total_calls": self._metrics.total_calls,
                "successful_calls": self._metrics.successful_calls,
                "failed_calls": self._metrics.failed_calls,
                "rejected_calls": self._metrics.rejected_calls,
                "consecutive_failures": self._metrics.consecutive_failures,
            },
            "config": {
                "failure_threshold": self.config.failure_threshold,
                "success_threshold": self.config.success_threshold,
                "timeout_seconds": self.config.timeout_seconds,
            },
            "opened_at": datetime.fromtimestamp(
                self._opened_at, tz=timezone.utc
            ).isoformat() if self._opened_at else None,
        }


# Shared breakers for the intake pipeline's two external dependencies
triage_provider_cb = CircuitBreaker(
    "triage_provider",
    CircuitBreakerConfig(
        failure_threshold=3,
        timeout_seconds=120,
    )
)

database_cb = CircuitBreaker(
    "database",
    CircuitBreakerConfig(
        failure_threshold=5,
        timeout_seconds=30,
    )
)
