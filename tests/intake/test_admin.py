"""Tests for administrator commands."""

import pytest

from src.intake import admin, db_helpers
from src.intake.errors import AggregationConflict, NotFoundError, ValidationError
from src.intake.pipeline.aggregator import aggregate_report


@pytest.fixture
def group_id(make_submission):
    report_id = db_helpers.insert_report(make_submission())["id"]
    return aggregate_report(report_id, "category-water", "location-boys-hostel-a").group_id


class TestAssign:
    def test_assign_records_previous_value(self, group_id):
        action = admin.assign_authority(group_id, "authority-security", "admin-1", notes="Night patrol")

        assert db_helpers.get_group(group_id)["authority_id"] == "authority-security"
        assert action["previous_value"] == {"authority_id": "authority-admin-office"}
        assert action["new_value"] == {"authority_id": "authority-security"}

        (stored,) = db_helpers.list_admin_actions(group_id)
        assert stored["admin_ref"] == "admin-1"
        assert stored["notes"] == "Night patrol"

    def test_unknown_authority(self, group_id):
        with pytest.raises(ValidationError, match="Unknown authority"):
            admin.assign_authority(group_id, "authority-nobody", "admin-1")
        assert db_helpers.list_admin_actions(group_id) == []

    def test_unknown_group(self):
        with pytest.raises(NotFoundError):
            admin.assign_authority("missing", "authority-provost", "admin-1")


class TestStatus:
    def test_change_status(self, group_id):
        action = admin.change_status(group_id, "in_progress", "admin-1")
        assert action["previous_value"] == {"status": "open"}
        assert db_helpers.get_group(group_id)["status"] == "in_progress"

    def test_invalid_status(self, group_id):
        with pytest.raises(ValidationError, match="Invalid status"):
            admin.change_status(group_id, "closed", "admin-1")

    def test_resolve_then_reopen(self, group_id):
        resolved = admin.resolve(group_id, "admin-1", notes="Pump fixed")
        assert resolved["action_type"] == "resolve"
        assert db_helpers.get_group(group_id)["status"] == "resolved"

        reopened = admin.reopen(group_id, "admin-1")
        assert reopened["action_type"] == "reopen"
        assert reopened["previous_value"] == {"status": "resolved"}
        assert db_helpers.get_group(group_id)["status"] == "open"

    def test_reopen_active_group_rejected(self, group_id):
        with pytest.raises(ValidationError, match="already open"):
            admin.reopen(group_id, "admin-1")

    def test_reopen_conflicts_with_newer_active_group(self, group_id, make_submission):
        admin.resolve(group_id, "admin-1")
        newer_report = db_helpers.insert_report(make_submission())["id"]
        newer = aggregate_report(newer_report, "category-water", "location-boys-hostel-a")
        assert newer.is_new

        with pytest.raises(AggregationConflict, match="another active group"):
            admin.reopen(group_id, "admin-1")

        assert db_helpers.get_group(group_id)["status"] == "resolved"
        assert [a["action_type"] for a in db_helpers.list_admin_actions(group_id)] == ["resolve"]


class TestOverridePriority:
    def test_manual_snapshot(self, group_id):
        db_helpers.insert_priority_snapshot(group_id, total_score=38.25, components={"urgency": 28.0})

        action = admin.override_priority(group_id, 92, "Exam week water outage", "admin-1")

        assert action["previous_value"] == {"priority_score": 38.25}
        assert action["new_value"] == {"priority_score": 92.0}
        snapshot = db_helpers.get_latest_priority_snapshot(group_id)
        assert snapshot["is_manual"] == 1
        assert snapshot["total_score"] == 92.0
        assert snapshot["urgency_component"] is None

    def test_without_previous_snapshot(self, group_id):
        action = admin.override_priority(group_id, 10, "Low impact", "admin-1")
        assert action["previous_value"] == {"priority_score": 0}

    @pytest.mark.parametrize("score", [-1, 100.5, "high", True, None])
    def test_invalid_score(self, group_id, score):
        with pytest.raises(ValidationError, match="between 0 and 100"):
            admin.override_priority(group_id, score, "reason", "admin-1")

    def test_reason_required(self, group_id):
        with pytest.raises(ValidationError, match="reason is required"):
            admin.override_priority(group_id, 50, "  ", "admin-1")


class TestApplyAction:
    def test_dispatch_assign(self, group_id):
        action = admin.apply_action(group_id, "assign", "admin-1", {"authority_id": "authority-provost"})
        assert action["action_type"] == "assign"

    def test_dispatch_change_status(self, group_id):
        admin.apply_action(group_id, "change_status", "admin-1", {"status": "in_progress"})
        assert db_helpers.get_group(group_id)["status"] == "in_progress"

    def test_dispatch_override_uses_notes_as_reason(self, group_id):
        admin.apply_action(group_id, "override_priority", "admin-1", {"priority_score": 70}, notes="VIP visit")
        assert db_helpers.get_latest_priority_snapshot(group_id)["reason"] == "VIP visit"

    def test_dispatch_resolve_and_reopen(self, group_id):
        admin.apply_action(group_id, "resolve", "admin-1")
        admin.apply_action(group_id, "reopen", "admin-1")
        assert db_helpers.get_group(group_id)["status"] == "open"

    @pytest.mark.parametrize(
        ("action_type", "new_value", "message"),
        [
            ("delete", None, "Invalid action_type"),
            ("assign", {}, "authority_id required"),
            ("change_status", None, "status required"),
            ("override_priority", {"notes": "x"}, "priority_score required"),
        ],
    )
    def test_missing_fields(self, group_id, action_type, new_value, message):
        with pytest.raises(ValidationError, match=message):
            admin.apply_action(group_id, action_type, "admin-1", new_value)


class TestListIssues:
    @staticmethod
    def _group(category_id, updated_at, score=None, location_id="location-boys-hostel-a"):
        with db_helpers.session() as con:
            group_id = db_helpers.insert_group(con, category_id, location_id, "authority-provost", updated_at)
        if score is not None:
            db_helpers.insert_priority_snapshot(group_id, score)
        return group_id

    def test_highest_priority_first(self):
        low = self._group("category-wifi", "2026-03-01T12:00:00.000000Z", score=20.0)
        high = self._group("category-water", "2026-03-01T09:00:00.000000Z", score=80.0)
        medium = self._group("category-food", "2026-03-01T10:00:00.000000Z", score=45.5)

        rows, total = admin.list_issues()

        assert total == 3
        assert [r["id"] for r in rows] == [high, medium, low]
        assert [r["priority_level"] for r in rows] == ["critical", "medium", "low"]

    def test_ties_go_to_most_recently_updated(self):
        older = self._group("category-wifi", "2026-03-01T08:00:00.000000Z", score=50.0)
        newer = self._group("category-water", "2026-03-02T08:00:00.000000Z", score=50.0)

        rows, _ = admin.list_issues()

        assert [r["id"] for r in rows] == [newer, older]

    def test_unscored_groups_last(self):
        unscored = self._group("category-wifi", "2026-03-05T08:00:00.000000Z")
        scored = self._group("category-water", "2026-03-01T08:00:00.000000Z", score=10.0)

        rows, _ = admin.list_issues()

        assert [r["id"] for r in rows] == [scored, unscored]
        assert rows[1]["current_priority"] is None
        assert rows[1]["priority_level"] == "low"

    def test_manual_override_reorders(self):
        first = self._group("category-wifi", "2026-03-01T08:00:00.000000Z", score=60.0)
        second = self._group("category-water", "2026-03-01T08:00:00.000000Z", score=30.0)
        admin.override_priority(second, 95, "Exam week", "admin-1")

        rows, _ = admin.list_issues()

        assert [r["id"] for r in rows] == [second, first]

    def test_status_filter(self):
        active = self._group("category-wifi", "2026-03-01T08:00:00.000000Z", score=10.0)
        done = self._group("category-water", "2026-03-01T08:00:00.000000Z", score=90.0)
        admin.resolve(done, "admin-1")

        assert [r["id"] for r in admin.list_issues()[0]] == [active]
        assert [r["id"] for r in admin.list_issues("resolved")[0]] == [done]
        assert [r["id"] for r in admin.list_issues("all")[0]] == [done, active]
        assert [r["id"] for r in admin.list_issues("open, resolved")[0]] == [done, active]

    @pytest.mark.parametrize("status", ["closed", "open,closed", ","])
    def test_invalid_status_filter(self, status):
        with pytest.raises(ValidationError, match="Invalid status filter"):
            admin.list_issues(status)

    def test_pagination(self):
        ids = [
            self._group(category, "2026-03-01T08:00:00.000000Z", score=score)
            for category, score in (("category-wifi", 90.0), ("category-water", 70.0), ("category-food", 50.0))
        ]

        page_one, total = admin.list_issues(limit=2)
        page_two, _ = admin.list_issues(page=2, limit=2)

        assert total == 3
        assert [r["id"] for r in page_one] == ids[:2]
        assert [r["id"] for r in page_two] == ids[2:]
        assert admin.list_issues(page=3, limit=2)[0] == []

    def test_invalid_page(self):
        with pytest.raises(ValidationError):
            admin.list_issues(page=0)
