"""Health check endpoint."""

import logging

from fastapi import APIRouter
from pydantic import BaseModel

from ..db import REQUIRED_TABLES, connect, driver_errors, get_db_backend, table_exists
from ..intake.pipeline.classifier import TriageAdapter
from ..resilience.circuit_breaker import CircuitBreaker
from ._helpers import utc_now_iso

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


# --- Pydantic Models ---


class CircuitBreakerStatus(BaseModel):
    name: str
    state: str  # "closed", "open", "half_open"
    failure_count: int
    success_count: int
    rejected_calls: int


class DatabaseHealth(BaseModel):
    backend: str
    reachable: bool
    missing_tables: list[str]
    error: str | None = None


class HealthResponse(BaseModel):
    status: str  # "healthy", "degraded", "unhealthy"
    triage_available: bool | None
    database: DatabaseHealth
    circuit_breakers: list[CircuitBreakerStatus]
    checked_at: str


# --- Helpers ---


def _check_database() -> DatabaseHealth:
    backend = get_db_backend()
    try:
        con = connect()
        try:
            missing = sorted(name for name in REQUIRED_TABLES if not table_exists(con, name))
        finally:
            con.close()
    except (*driver_errors(), OSError, RuntimeError) as exc:
        logger.warning("Database health check failed: %s", exc)
        return DatabaseHealth(backend=backend, reachable=False, missing_tables=[], error=str(exc))
    return DatabaseHealth(backend=backend, reachable=True, missing_tables=missing)


def _circuit_breakers() -> list[CircuitBreakerStatus]:
    statuses = []
    for cb in CircuitBreaker.all().values():
        metrics = cb.metrics
        statuses.append(
            CircuitBreakerStatus(
                name=cb.name,
                state=cb.state.value,
                failure_count=metrics.failed_calls,
                success_count=metrics.successful_calls,
                rejected_calls=metrics.rejected_calls,
            )
        )
    return statuses


# --- Endpoints ---


@router.get("/api/health", response_model=HealthResponse)
def get_health(check_triage: bool = True):
    """Database, triage provider and circuit breaker status.

    ``check_triage=false`` skips the live provider call.
    """
    database = _check_database()
    triage_available = TriageAdapter().health_check() if check_triage else None

    if not database.reachable or database.missing_tables:
        status = "unhealthy"
    elif triage_available is False:
        # Reports still flow with default classifications
        status = "degraded"
    else:
        status = "healthy"

    return HealthResponse(
        status=status,
        triage_available=triage_available,
        database=database,
        circuit_breakers=_circuit_breakers(),
        checked_at=utc_now_iso(),
    )
