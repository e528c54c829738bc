"""Aggregation of reports into issue groups by (category, location).

Only active groups (open or in_progress) accept new reports. A resolved
group never receives links, so the next report for that pair starts a new
group.

Two concurrent first reports for the same pair can both miss the active
group and both try to create one. The store's partial unique index lets
only one insert win. The loser gets ``AggregationConflict`` and the whole
find-or-create step is retried, which then finds the winner's group.
"""

import logging
from dataclasses import dataclass

from src.db import _utc_now_iso
from src.intake import db_helpers
from src.intake.errors import AggregationConflict, PersistenceError, UniqueConflict
from src.resilience.retry import RetryConfig, retry_call

logger = logging.getLogger(__name__)

AGGREGATION_RETRY = RetryConfig(
    max_attempts=3,
    base_delay=0.05,
    max_delay=0.5,
    jitter=True,
    jitter_factor=0.5,
    retry_exceptions=(AggregationConflict,),
)


@dataclass(frozen=True)
class AggregationResult:
    group_id: str
    is_new: bool
    linked_at: str


def _find_or_create(report_id: str, category_id: str, location_id: str) -> AggregationResult:
    """One attempt. Group creation and the link commit together."""
    try:
        with db_helpers.session() as con:
            existing_link = db_helpers.get_link_for_report(con, report_id)
            if existing_link:
                # Already aggregated, nothing to write
                return AggregationResult(
                    group_id=existing_link["group_id"],
                    is_new=False,
                    linked_at=existing_link["linked_at"],
                )

            now = _utc_now_iso()
            group = db_helpers.find_active_group(con, category_id, location_id)
            if group:
                group_id = group["id"]
                is_new = False
            else:
                category = db_helpers.fetch_one(
                    con,
                    "SELECT default_authority_id FROM categories WHERE id = :id",
                    {"id": category_id},
                )
                if not category:
                    raise PersistenceError(f"Unknown category: {category_id}")
                group_id = db_helpers.insert_group(
                    con, category_id, location_id, category["default_authority_id"], now
                )
                is_new = True

            db_helpers.insert_link(con, report_id, group_id, now)
    except UniqueConflict as exc:
        raise AggregationConflict(category_id, location_id) from exc

    return AggregationResult(group_id=group_id, is_new=is_new, linked_at=now)


def aggregate_report(
    report_id: str,
    category_id: str,
    location_id: str,
    retry_config: RetryConfig = AGGREGATION_RETRY,
) -> AggregationResult:
    """Link a report to the active group for its pair, creating the group if needed.

    Idempotent: a report that is already linked returns its existing group.

    Raises:
        AggregationConflict: The create race was lost on every attempt.
        PersistenceError: Store unavailable or write failed.
    """

    def _on_retry(attempt: int, exc: Exception, delay: float) -> None:
        logger.info(
            "Aggregation conflict for report %s, retrying (attempt %d)",
            report_id,
            attempt,
            extra={"category_id": category_id, "location_id": location_id},
        )

    result = retry_call(
        _find_or_create,
        report_id,
        category_id,
        location_id,
        config=retry_config,
        on_retry=_on_retry,
    )
    logger.info(
        "Report %s %s group %s",
        report_id,
        "created" if result.is_new else "linked to",
        result.group_id,
    )
    return result


def get_report_count(group_id: str) -> int:
    return db_helpers.count_group_links(group_id)


def get_linked_reports(group_id: str) -> list[dict]:
    """Linked reports (id, title, description, created_at, linked_at). No reporter refs."""
    return db_helpers.list_linked_reports(group_id)
