"""Campus issue intake - triage, aggregation, prioritization and routing of reports."""

from .errors import (
    AggregationConflict,
    AutomationError,
    IntakeError,
    NotFoundError,
    PersistenceError,
    RoutingError,
    ValidationError,
)
from .models import Classification, PipelineResult, ProgressEvent, ReportSubmission
from .runner import (
    process_report,
    recalculate_priority,
    reprocess_report,
    reroute_group,
    stream_report,
)

__all__ = [
    # Runner
    "process_report",
    "stream_report",
    "recalculate_priority",
    "reprocess_report",
    "reroute_group",
    # Models
    "Classification",
    "PipelineResult",
    "ProgressEvent",
    "ReportSubmission",
    # Errors
    "IntakeError",
    "ValidationError",
    "AutomationError",
    "AggregationConflict",
    "RoutingError",
    "PersistenceError",
    "NotFoundError",
]
