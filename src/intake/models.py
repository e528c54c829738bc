"""Shared record types for the intake pipeline."""

from dataclasses import asdict, dataclass, field
from typing import Any

CATEGORIES = (
    "wifi",
    "water",
    "sanitation",
    "electricity",
    "hostel",
    "academics",
    "safety",
    "food",
    "infrastructure",
)
URGENCY_LEVELS = ("CRITICAL", "HIGH", "MEDIUM", "LOW")
REPORT_TYPES = ("EMERGENCY", "SAFETY", "INFRASTRUCTURE", "ACADEMIC", "GENERAL", "TEST", "SPAM")
CONTEXT_VALIDITY = ("VALID", "AMBIGUOUS", "INVALID")
IMPACT_SCOPES = ("single", "multi")

GROUP_STATUSES = ("open", "in_progress", "resolved")
# Groups in these states accept new reports
ACTIVE_STATUSES = ("open", "in_progress")

# Stage name -> progress value reported when the stage starts
STAGE_PROGRESS = {
    "validating": 5,
    "triaging": 20,
    "aggregating": 50,
    "scoring": 65,
    "routing": 80,
    "persisting": 90,
    "complete": 100,
    "error": 0,
}

STATUS_ACCEPTED = "accepted"
STATUS_REJECTED_SPAM = "rejected_spam"
STATUS_BLOCKED_POLICY = "blocked_policy"
STATUS_ERROR = "error"


@dataclass(frozen=True)
class Classification:
    """Normalized triage output for one report. Every field is always populated."""

    category: str
    urgency_score: float
    impact_scope: str
    environmental_flag: bool
    confidence_score: float
    urgency_level: str
    report_type: str
    reporter_welfare_flag: bool
    requires_immediate_action: bool
    spam_confidence: float
    context_validity: str
    reasoning: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: dict) -> "Classification":
        """Build from a ``classifications`` row dict (integer booleans)."""
        return cls(
            category=row["category"],
            urgency_score=float(row["urgency_score"]),
            impact_scope=row["impact_scope"],
            environmental_flag=bool(row["environmental_flag"]),
            confidence_score=float(row["confidence_score"]),
            urgency_level=row["urgency_level"],
            report_type=row["report_type"],
            reporter_welfare_flag=bool(row["reporter_welfare_flag"]),
            requires_immediate_action=bool(row["requires_immediate_action"]),
            spam_confidence=float(row["spam_confidence"]),
            context_validity=row["context_validity"],
            reasoning=row["reasoning"],
        )


def default_classification(reason: str = "Automated triage unavailable") -> Classification:
    """Neutral classification used when triage fails.

    Zero confidence drives the priority score to 0, so an unclassifiable
    report is never escalated on guesswork.
    """
    return Classification(
        category="infrastructure",
        urgency_score=0.5,
        impact_scope="single",
        environmental_flag=False,
        confidence_score=0.0,
        urgency_level="MEDIUM",
        report_type="GENERAL",
        reporter_welfare_flag=False,
        requires_immediate_action=False,
        spam_confidence=0.0,
        context_validity="VALID",
        reasoning=reason,
    )


@dataclass
class ReportSubmission:
    """Caller input for one report."""

    title: str
    description: str
    category_id: str
    location_id: str
    reporter_ref: str


@dataclass
class ProgressEvent:
    """One step of a pipeline run, in emission order."""

    stage: str
    progress: int
    message: str
    data: dict[str, Any] | None = None

    @property
    def is_terminal(self) -> bool:
        return self.stage in ("complete", "error")

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "stage": self.stage,
            "progress": self.progress,
            "message": self.message,
        }
        if self.data is not None:
            out["data"] = self.data
        return out


@dataclass
class PipelineResult:
    """Terminal outcome of ``process_report``."""

    status: str  # accepted / rejected_spam / blocked_policy / error
    message: str
    report_id: str | None = None
    group_id: str | None = None
    is_new_group: bool | None = None
    total_score: float | None = None
    priority_level: str | None = None
    authority_name: str | None = None
    classification: Classification | None = None
    error_stage: str | None = None
    events: list[ProgressEvent] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == STATUS_ACCEPTED
