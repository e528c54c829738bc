"""Administrator commands on issue groups.

Every command writes an ``admin_actions`` row with the previous and new
values, so group history can be reconstructed. Also lists groups for the
administrator queue.
"""

import logging

from src.intake import db_helpers
from src.intake.errors import (
    AggregationConflict,
    NotFoundError,
    UniqueConflict,
    ValidationError,
)
from src.intake.models import ACTIVE_STATUSES, GROUP_STATUSES
from src.intake.pipeline.priority import priority_level, sort_key

logger = logging.getLogger(__name__)

ACTION_TYPES = ("assign", "override_priority", "resolve", "reopen", "change_status")


def _require_group(group_id: str) -> dict:
    group = db_helpers.get_group(group_id)
    if not group:
        raise NotFoundError(f"Issue group not found: {group_id}")
    return group


def _record(
    admin_ref: str,
    group_id: str,
    action_type: str,
    previous_value: dict,
    new_value: dict,
    notes: str | None,
) -> dict:
    action_id = db_helpers.insert_admin_action(
        admin_ref, group_id, action_type, previous_value, new_value, notes
    )
    logger.info(
        "Admin %s on group %s: %s -> %s",
        action_type,
        group_id,
        previous_value,
        new_value,
        extra={"admin_ref": admin_ref, "group_id": group_id},
    )
    return {
        "id": action_id,
        "group_id": group_id,
        "action_type": action_type,
        "previous_value": previous_value,
        "new_value": new_value,
        "notes": notes,
    }


def assign_authority(
    group_id: str, authority_id: str, admin_ref: str, notes: str | None = None
) -> dict:
    group = _require_group(group_id)
    if not authority_id or not db_helpers.get_authority(authority_id):
        raise ValidationError(f"Unknown authority: {authority_id}")
    db_helpers.update_group_authority(group_id, authority_id)
    return _record(
        admin_ref,
        group_id,
        "assign",
        {"authority_id": group["authority_id"]},
        {"authority_id": authority_id},
        notes,
    )


def change_status(
    group_id: str,
    status: str,
    admin_ref: str,
    notes: str | None = None,
    action_type: str = "change_status",
) -> dict:
    """Move a group to ``open``, ``in_progress`` or ``resolved``.

    Raises:
        AggregationConflict: Activating the group would give its
            (category, location) a second active group.
    """
    if status not in GROUP_STATUSES:
        raise ValidationError(f"Invalid status: {status}")
    group = _require_group(group_id)

    try:
        db_helpers.update_group_status(group_id, status)
    except UniqueConflict as exc:
        raise AggregationConflict(
            group["category_id"],
            group["location_id"],
            "Cannot reactivate group: another active group exists for "
            f"{group['category_name']} at {group['location_name']}",
        ) from exc

    return _record(
        admin_ref,
        group_id,
        action_type,
        {"status": group["status"]},
        {"status": status},
        notes,
    )


def resolve(group_id: str, admin_ref: str, notes: str | None = None) -> dict:
    return change_status(group_id, "resolved", admin_ref, notes, action_type="resolve")


def reopen(group_id: str, admin_ref: str, notes: str | None = None) -> dict:
    """Make a resolved group active again, so new matching reports link to it."""
    group = _require_group(group_id)
    if group["status"] in ACTIVE_STATUSES:
        raise ValidationError(f"Issue group is already {group['status']}")
    return change_status(group_id, "open", admin_ref, notes, action_type="reopen")


def override_priority(
    group_id: str, score: float, reason: str, admin_ref: str
) -> dict:
    """Append a manual priority snapshot. Components are left null."""
    if isinstance(score, bool) or not isinstance(score, (int, float)) or not 0 <= score <= 100:
        raise ValidationError("priority_score must be a number between 0 and 100")
    if not (reason or "").strip():
        raise ValidationError("A reason is required for a priority override")
    _require_group(group_id)

    current = db_helpers.get_latest_priority_snapshot(group_id)
    db_helpers.insert_priority_snapshot(
        group_id,
        total_score=float(score),
        components=None,
        is_manual=True,
        reason=reason,
    )
    return _record(
        admin_ref,
        group_id,
        "override_priority",
        {"priority_score": current["total_score"] if current else 0},
        {"priority_score": float(score)},
        reason,
    )


def apply_action(
    group_id: str,
    action_type: str,
    admin_ref: str,
    new_value: dict | None = None,
    notes: str | None = None,
) -> dict:
    """Dispatch an action request by type."""
    new_value = new_value or {}
    if action_type not in ACTION_TYPES:
        raise ValidationError("Invalid action_type")

    if action_type == "assign":
        if not new_value.get("authority_id"):
            raise ValidationError("authority_id required for assign action")
        return assign_authority(group_id, new_value["authority_id"], admin_ref, notes)
    if action_type == "resolve":
        return resolve(group_id, admin_ref, notes)
    if action_type == "reopen":
        return reopen(group_id, admin_ref, notes)
    if action_type == "change_status":
        if not new_value.get("status"):
            raise ValidationError("status required for change_status action")
        return change_status(group_id, new_value["status"], admin_ref, notes)

    if new_value.get("priority_score") is None:
        raise ValidationError("priority_score required for override_priority action")
    return override_priority(group_id, new_value["priority_score"], notes or "", admin_ref)


# --- Listing ---

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def parse_status_filter(status: str | None) -> tuple[str, ...] | None:
    """``"active"`` (default), ``"all"`` or a comma list of group statuses.

    Returns None for no filter.
    """
    status = (status or "active").strip().lower()
    if status == "all":
        return None
    if status == "active":
        return ACTIVE_STATUSES
    statuses = tuple(s.strip() for s in status.split(",") if s.strip())
    invalid = [s for s in statuses if s not in GROUP_STATUSES]
    if invalid or not statuses:
        raise ValidationError(f"Invalid status filter: {status}")
    return statuses


def list_issues(
    status: str | None = None,
    category_id: str | None = None,
    location_id: str | None = None,
    authority_id: str | None = None,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
) -> tuple[list[dict], int]:
    """One page of issue groups, highest current priority first.

    Ties go to the most recently updated group. Groups without a snapshot
    sort as priority 0. Returns ``(rows, total)``.
    """
    if page < 1:
        raise ValidationError("page must be at least 1")
    limit = max(1, min(limit, MAX_PAGE_SIZE))

    rows = db_helpers.list_groups(
        parse_status_filter(status),
        category_id=category_id,
        location_id=location_id,
        authority_id=authority_id,
    )
    rows.sort(
        key=lambda r: sort_key(r["current_priority"] or 0.0, r["updated_at"]),
        reverse=True,
    )
    for row in rows:
        row["priority_level"] = priority_level(row["current_priority"] or 0.0)

    offset = (page - 1) * limit
    return rows[offset : offset + limit], len(rows)
