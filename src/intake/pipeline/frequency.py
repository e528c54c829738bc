"""Report frequency for issue groups over a trailing time window."""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from src.db import format_timestamp
from src.intake import db_helpers

logger = logging.getLogger(__name__)

FREQUENCY_WINDOW_MINUTES = 30
HIGH_FREQUENCY_THRESHOLD = 5


@dataclass(frozen=True)
class FrequencySample:
    id: str
    group_id: str
    window_minutes: int
    report_count: int
    computed_at: str


def count_recent(
    group_id: str,
    window_minutes: int = FREQUENCY_WINDOW_MINUTES,
    as_of: datetime | None = None,
) -> int:
    """Links to the group with ``as_of - window <= linked_at <= as_of``."""
    as_of = as_of or datetime.now(UTC)
    start = as_of - timedelta(minutes=window_minutes)
    return db_helpers.count_group_links_between(
        group_id, format_timestamp(start), format_timestamp(as_of)
    )


def record_frequency_sample(
    group_id: str,
    window_minutes: int = FREQUENCY_WINDOW_MINUTES,
    as_of: datetime | None = None,
) -> FrequencySample:
    """Count recent links and store the result as a new sample."""
    as_of = as_of or datetime.now(UTC)
    count = count_recent(group_id, window_minutes, as_of)
    computed_at = format_timestamp(as_of)
    sample_id = db_helpers.insert_frequency_sample(group_id, window_minutes, count, computed_at)
    if is_high_frequency(count):
        logger.info(
            "High report frequency for group %s: %s",
            group_id,
            format_frequency(count, window_minutes),
            extra={"group_id": group_id, "report_count": count},
        )
    return FrequencySample(
        id=sample_id,
        group_id=group_id,
        window_minutes=window_minutes,
        report_count=count,
        computed_at=computed_at,
    )


def get_latest_frequency_sample(group_id: str) -> FrequencySample | None:
    row = db_helpers.get_latest_frequency_sample(group_id)
    if not row:
        return None
    return FrequencySample(
        id=row["id"],
        group_id=row["group_id"],
        window_minutes=int(row["window_minutes"]),
        report_count=int(row["report_count"]),
        computed_at=row["computed_at"],
    )


def format_frequency(count: int, window_minutes: int = FREQUENCY_WINDOW_MINUTES) -> str:
    if count == 0:
        return "No recent reports"
    if count == 1:
        return f"1 report in last {window_minutes} minutes"
    return f"{count} reports in last {window_minutes} minutes"


def is_high_frequency(count: int) -> bool:
    return count >= HIGH_FREQUENCY_THRESHOLD
