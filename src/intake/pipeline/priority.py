"""Priority scoring for issue groups.

Pure-function module with no DB or I/O dependencies.

    raw   = U*0.35 + I*0.30 + F*0.25 + E*0.10
    total = raw * confidence * 100

Low classifier confidence discounts the whole score, so vague or
spam-like reports sink instead of being escalated.
"""

import math
from dataclasses import asdict, dataclass


@dataclass(frozen=True)
class PriorityWeights:
    """Scoring constants. Component weights sum to 1.0."""

    urgency: float = 0.35
    impact: float = 0.30
    frequency: float = 0.25
    environmental: float = 0.10
    impact_base_single: float = 0.4
    impact_base_multi: float = 0.7
    impact_boost_per_report: float = 0.03  # per linked report beyond the first
    frequency_divisor: float = 10.0


DEFAULT_WEIGHTS = PriorityWeights()


@dataclass(frozen=True)
class PriorityInput:
    """Signals feeding one score computation."""

    urgency_score: float
    impact_scope: str  # single / multi
    is_environmental: bool
    confidence_score: float
    report_count: int  # reports linked to the group
    reports_in_window: int  # reports in the trailing frequency window


@dataclass(frozen=True)
class PriorityBreakdown:
    """Score with per-component values, each scaled to its display range (x100)."""

    urgency_component: float  # 0-35
    impact_component: float  # 0-30
    frequency_component: float  # 0-25
    environmental_component: float  # 0-10
    raw_score: float  # 0-100
    confidence_multiplier: float  # 0-1
    total_score: float  # 0-100

    @property
    def priority_level(self) -> str:
        return priority_level(self.total_score)

    def components(self) -> dict[str, float]:
        return {
            "urgency": self.urgency_component,
            "impact": self.impact_component,
            "frequency": self.frequency_component,
            "environmental": self.environmental_component,
        }

    def to_dict(self) -> dict:
        out = asdict(self)
        out["priority_level"] = self.priority_level
        return out


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def round2(value: float) -> float:
    """Round half up to 2 decimals."""
    return math.floor(value * 100 + 0.5) / 100


def urgency_component(urgency_score: float, weights: PriorityWeights = DEFAULT_WEIGHTS) -> float:
    return _clamp01(urgency_score) * weights.urgency


def impact_component(
    impact_scope: str, report_count: int, weights: PriorityWeights = DEFAULT_WEIGHTS
) -> float:
    base = weights.impact_base_multi if impact_scope == "multi" else weights.impact_base_single
    boost = max(0, report_count - 1) * weights.impact_boost_per_report
    return min(base + boost, 1.0) * weights.impact


def frequency_component(
    reports_in_window: int, weights: PriorityWeights = DEFAULT_WEIGHTS
) -> float:
    return min(reports_in_window / weights.frequency_divisor, 1.0) * weights.frequency


def environmental_component(
    is_environmental: bool, weights: PriorityWeights = DEFAULT_WEIGHTS
) -> float:
    return weights.environmental if is_environmental else 0.0


def compute_priority(
    data: PriorityInput, weights: PriorityWeights = DEFAULT_WEIGHTS
) -> PriorityBreakdown:
    """Score one group.

    Args:
        data: Classification-derived signals plus link counts.
        weights: Scoring constants, overridable for tests and tuning.

    Returns:
        PriorityBreakdown rounded to 2 decimals throughout.
    """
    urgency = urgency_component(data.urgency_score, weights)
    impact = impact_component(data.impact_scope, data.report_count, weights)
    frequency = frequency_component(data.reports_in_window, weights)
    environmental = environmental_component(data.is_environmental, weights)

    raw = urgency + impact + frequency + environmental
    multiplier = _clamp01(data.confidence_score)

    return PriorityBreakdown(
        urgency_component=round2(urgency * 100),
        impact_component=round2(impact * 100),
        frequency_component=round2(frequency * 100),
        environmental_component=round2(environmental * 100),
        raw_score=round2(raw * 100),
        confidence_multiplier=round2(multiplier),
        total_score=round2(raw * multiplier * 100),
    )


def priority_level(score: float) -> str:
    if score >= 75:
        return "critical"
    if score >= 50:
        return "high"
    if score >= 25:
        return "medium"
    return "low"


def sort_key(total_score: float, updated_at: str = "") -> tuple:
    """Sort key for highest priority first, most recent first on ties.

    Use with ``sorted(..., key=..., reverse=True)``.
    """
    return (total_score, updated_at)
