"""Tests for report aggregation into issue groups."""

import threading
from unittest.mock import patch

import pytest

from src.db import connect, execute
from src.intake import db_helpers
from src.intake.errors import AggregationConflict
from src.intake.pipeline.aggregator import (
    aggregate_report,
    get_linked_reports,
    get_report_count,
)
from src.resilience.retry import RetryConfig

FAST_RETRY = RetryConfig(
    max_attempts=3,
    base_delay=0.001,
    max_delay=0.01,
    jitter=False,
    retry_exceptions=(AggregationConflict,),
)


def _report(make_submission, **overrides) -> str:
    submission = make_submission(**overrides)
    return db_helpers.insert_report(submission)["id"]


def _active_groups(category_id: str, location_id: str) -> int:
    con = connect()
    try:
        cur = execute(
            con,
            """
            SELECT COUNT(*) FROM issue_groups
            WHERE category_id = :c AND location_id = :l AND status IN ('open', 'in_progress')
            """,
            {"c": category_id, "l": location_id},
        )
        return cur.fetchone()[0]
    finally:
        con.close()


class TestAggregateReport:
    def test_first_report_creates_group(self, make_submission):
        report_id = _report(make_submission)
        result = aggregate_report(report_id, "category-water", "location-boys-hostel-a")

        assert result.is_new is True
        group = db_helpers.get_group(result.group_id)
        assert group["status"] == "open"
        # Initial authority is the category default until routing runs
        assert group["authority_id"] == "authority-admin-office"
        assert get_report_count(result.group_id) == 1

    def test_same_pair_links_to_same_group(self, make_submission):
        first = aggregate_report(_report(make_submission), "category-water", "location-boys-hostel-a")
        second = aggregate_report(_report(make_submission), "category-water", "location-boys-hostel-a")

        assert second.is_new is False
        assert second.group_id == first.group_id
        assert get_report_count(first.group_id) == 2

    def test_different_location_new_group(self, make_submission):
        first = aggregate_report(_report(make_submission), "category-water", "location-boys-hostel-a")
        other = aggregate_report(
            _report(make_submission, location_id="location-boys-hostel-b"),
            "category-water",
            "location-boys-hostel-b",
        )
        assert other.is_new is True
        assert other.group_id != first.group_id

    def test_different_category_new_group(self, make_submission):
        first = aggregate_report(_report(make_submission), "category-water", "location-boys-hostel-a")
        other = aggregate_report(
            _report(make_submission, category_id="category-electricity"),
            "category-electricity",
            "location-boys-hostel-a",
        )
        assert other.group_id != first.group_id

    def test_resolved_group_not_reused(self, make_submission):
        first = aggregate_report(_report(make_submission), "category-water", "location-boys-hostel-a")
        db_helpers.update_group_status(first.group_id, "resolved")

        second = aggregate_report(_report(make_submission), "category-water", "location-boys-hostel-a")

        assert second.is_new is True
        assert second.group_id != first.group_id
        assert get_report_count(first.group_id) == 1

    def test_in_progress_group_still_accepts(self, make_submission):
        first = aggregate_report(_report(make_submission), "category-water", "location-boys-hostel-a")
        db_helpers.update_group_status(first.group_id, "in_progress")

        second = aggregate_report(_report(make_submission), "category-water", "location-boys-hostel-a")
        assert second.group_id == first.group_id

    def test_idempotent_for_same_report(self, make_submission):
        report_id = _report(make_submission)
        first = aggregate_report(report_id, "category-water", "location-boys-hostel-a")
        again = aggregate_report(report_id, "category-water", "location-boys-hostel-a")

        assert again.group_id == first.group_id
        assert again.is_new is False
        assert again.linked_at == first.linked_at
        assert get_report_count(first.group_id) == 1

    def test_linked_reports_exclude_reporter_ref(self, make_submission):
        result = aggregate_report(_report(make_submission), "category-water", "location-boys-hostel-a")
        reports = get_linked_reports(result.group_id)
        assert len(reports) == 1
        assert set(reports[0]) == {"id", "title", "description", "created_at", "linked_at"}


class TestConflictRetry:
    def test_lost_race_retries_and_links_to_winner(self, make_submission):
        winner = aggregate_report(_report(make_submission), "category-water", "location-boys-hostel-a")
        loser_report = _report(make_submission)

        real_find = db_helpers.find_active_group
        calls = []

        def stale_first_read(con, category_id, location_id):
            calls.append(1)
            if len(calls) == 1:
                # Simulates reading before the winner committed
                return None
            return real_find(con, category_id, location_id)

        with patch.object(db_helpers, "find_active_group", side_effect=stale_first_read):
            result = aggregate_report(
                loser_report, "category-water", "location-boys-hostel-a", retry_config=FAST_RETRY
            )

        assert len(calls) == 2
        assert result.group_id == winner.group_id
        assert result.is_new is False
        assert _active_groups("category-water", "location-boys-hostel-a") == 1

    def test_conflict_after_retries_exhausted(self, make_submission):
        aggregate_report(_report(make_submission), "category-water", "location-boys-hostel-a")
        report_id = _report(make_submission)

        with patch.object(db_helpers, "find_active_group", return_value=None):
            with pytest.raises(AggregationConflict) as excinfo:
                aggregate_report(
                    report_id, "category-water", "location-boys-hostel-a", retry_config=FAST_RETRY
                )

        assert excinfo.value.category_id == "category-water"
        # The failed attempts rolled back, leaving the report unlinked
        assert db_helpers.get_report_group_id(report_id) is None

    def test_concurrent_first_reports_share_one_group(self, make_submission):
        report_ids = [_report(make_submission) for _ in range(6)]
        results = []
        errors = []
        start = threading.Barrier(len(report_ids))

        def worker(report_id):
            start.wait()
            try:
                results.append(
                    aggregate_report(report_id, "category-water", "location-boys-hostel-a", retry_config=FAST_RETRY)
                )
            except Exception as exc:  # surfaced through the assertion below
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(rid,)) for rid in report_ids]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len({r.group_id for r in results}) == 1
        assert sum(1 for r in results if r.is_new) == 1
        assert _active_groups("category-water", "location-boys-hostel-a") == 1
        assert get_report_count(results[0].group_id) == 6
