"""Database helpers for the intake tables.

Each helper opens its own connection, so no state is shared between
pipeline invocations. Driver errors come back as ``PersistenceError``,
unique-constraint collisions as its subclass ``UniqueConflict``.
"""

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from src.db import (
    _utc_now_iso,
    connect,
    driver_errors,
    execute,
    is_unique_violation,
    new_id,
)
from src.resilience.circuit_breaker import CircuitBreakerOpen, database_cb
from src.resilience.wiring import circuit_breaker_sync

from .errors import PersistenceError, UniqueConflict
from .models import ACTIVE_STATUSES, Classification, ReportSubmission

logger = logging.getLogger(__name__)


@circuit_breaker_sync(database_cb)
def _open_connection():
    return connect()


@contextmanager
def session() -> Iterator[Any]:
    """Connection scoped to one unit of work. Commits on success, rolls back on error."""
    errors = driver_errors()
    try:
        con = _open_connection()
    except CircuitBreakerOpen as exc:
        raise PersistenceError(f"Store unavailable: {exc}") from exc
    except (*errors, OSError, RuntimeError) as exc:
        logger.error("Store connection failed: %s", exc)
        raise PersistenceError(f"Store unavailable: {exc}") from exc

    try:
        yield con
        con.commit()
    except errors as exc:
        con.rollback()
        if is_unique_violation(exc):
            raise UniqueConflict(str(exc)) from exc
        logger.error("Store write failed: %s", exc)
        raise PersistenceError(str(exc)) from exc
    except BaseException:
        con.rollback()
        raise
    finally:
        con.close()


def _row_dict(cur, row) -> dict | None:
    if row is None:
        return None
    return {col[0]: value for col, value in zip(cur.description, row)}


def fetch_one(con, sql: str, params: dict | None = None) -> dict | None:
    cur = execute(con, sql, params)
    return _row_dict(cur, cur.fetchone())


def fetch_all(con, sql: str, params: dict | None = None) -> list[dict]:
    cur = execute(con, sql, params)
    return [_row_dict(cur, row) for row in cur.fetchall()]


def _query_one(sql: str, params: dict | None = None) -> dict | None:
    with session() as con:
        return fetch_one(con, sql, params)


def _query_all(sql: str, params: dict | None = None) -> list[dict]:
    with session() as con:
        return fetch_all(con, sql, params)


# --- Directory (authorities, categories, locations) ---


def get_authority_by_name(name: str) -> dict | None:
    return _query_one(
        "SELECT id, name, description FROM authorities WHERE name = :name",
        {"name": name},
    )


def get_authority(authority_id: str) -> dict | None:
    return _query_one(
        "SELECT id, name, description FROM authorities WHERE id = :id",
        {"id": authority_id},
    )


def list_authorities() -> list[dict]:
    return _query_all("SELECT id, name, description FROM authorities ORDER BY name")


def get_category(category_id: str) -> dict | None:
    return _query_one(
        """
        SELECT id, name, default_authority_id, is_environmental
        FROM categories WHERE id = :id
        """,
        {"id": category_id},
    )


def get_category_by_name(name: str) -> dict | None:
    return _query_one(
        """
        SELECT id, name, default_authority_id, is_environmental
        FROM categories WHERE name = :name
        """,
        {"name": name},
    )


def get_location(location_id: str) -> dict | None:
    return _query_one(
        "SELECT id, name, kind, is_active FROM locations WHERE id = :id",
        {"id": location_id},
    )


# --- Reports and classifications ---


def insert_report(submission: ReportSubmission, created_at: str | None = None) -> dict:
    """Insert a report row. Returns ``{"id", "created_at"}``."""
    report = {
        "id": new_id(),
        "reporter_ref": submission.reporter_ref,
        "title": submission.title,
        "description": submission.description,
        "category_id": submission.category_id,
        "location_id": submission.location_id,
        "created_at": created_at or _utc_now_iso(),
    }
    with session() as con:
        execute(
            con,
            """
            INSERT INTO reports (
                id, reporter_ref, title, description, category_id, location_id, created_at
            ) VALUES (
                :id, :reporter_ref, :title, :description, :category_id, :location_id, :created_at
            )
            """,
            report,
        )
    return {"id": report["id"], "created_at": report["created_at"]}


def get_report(report_id: str) -> dict | None:
    return _query_one(
        """
        SELECT id, reporter_ref, title, description, category_id, location_id, created_at
        FROM reports WHERE id = :id
        """,
        {"id": report_id},
    )


def upsert_classification(
    report_id: str,
    classification: Classification,
    model: str | None = None,
    raw_output: str | None = None,
) -> None:
    """Write the report's classification, replacing any earlier one."""
    params = classification.to_dict()
    params.update(
        {
            "report_id": report_id,
            "environmental_flag": 1 if classification.environmental_flag else 0,
            "reporter_welfare_flag": 1 if classification.reporter_welfare_flag else 0,
            "requires_immediate_action": 1 if classification.requires_immediate_action else 0,
            "model": model,
            "raw_output": raw_output,
            "created_at": _utc_now_iso(),
        }
    )
    with session() as con:
        execute(
            con,
            """
            INSERT INTO classifications (
                report_id, category, urgency_score, impact_scope, environmental_flag,
                confidence_score, urgency_level, report_type, reporter_welfare_flag,
                requires_immediate_action, spam_confidence, context_validity, reasoning,
                model, raw_output, created_at
            ) VALUES (
                :report_id, :category, :urgency_score, :impact_scope, :environmental_flag,
                :confidence_score, :urgency_level, :report_type, :reporter_welfare_flag,
                :requires_immediate_action, :spam_confidence, :context_validity, :reasoning,
                :model, :raw_output, :created_at
            )
            ON CONFLICT (report_id) DO UPDATE SET
                category = excluded.category,
                urgency_score = excluded.urgency_score,
                impact_scope = excluded.impact_scope,
                environmental_flag = excluded.environmental_flag,
                confidence_score = excluded.confidence_score,
                urgency_level = excluded.urgency_level,
                report_type = excluded.report_type,
                reporter_welfare_flag = excluded.reporter_welfare_flag,
                requires_immediate_action = excluded.requires_immediate_action,
                spam_confidence = excluded.spam_confidence,
                context_validity = excluded.context_validity,
                reasoning = excluded.reasoning,
                model = excluded.model,
                raw_output = excluded.raw_output,
                created_at = excluded.created_at
            """,
            params,
        )


_CLASSIFICATION_COLUMNS = """
    c.category, c.urgency_score, c.impact_scope, c.environmental_flag,
    c.confidence_score, c.urgency_level, c.report_type, c.reporter_welfare_flag,
    c.requires_immediate_action, c.spam_confidence, c.context_validity, c.reasoning
"""


def get_classification(report_id: str) -> Classification | None:
    row = _query_one(
        f"SELECT {_CLASSIFICATION_COLUMNS} FROM classifications c WHERE c.report_id = :report_id",
        {"report_id": report_id},
    )
    return Classification.from_row(row) if row else None


def get_group_classifications(group_id: str) -> list[Classification]:
    """Classifications of every report linked to the group, oldest link first."""
    rows = _query_all(
        f"""
        SELECT {_CLASSIFICATION_COLUMNS}
        FROM issue_links l
        JOIN classifications c ON c.report_id = l.report_id
        WHERE l.group_id = :group_id
        ORDER BY l.linked_at
        """,
        {"group_id": group_id},
    )
    return [Classification.from_row(row) for row in rows]


# --- Issue groups and links ---


def get_group(group_id: str) -> dict | None:
    """Group row joined with its category, location and authority names."""
    return _query_one(
        """
        SELECT g.id, g.category_id, g.location_id, g.authority_id, g.status,
               g.created_at, g.updated_at,
               c.name AS category_name, l.name AS location_name,
               l.kind AS location_kind, a.name AS authority_name
        FROM issue_groups g
        JOIN categories c ON c.id = g.category_id
        JOIN locations l ON l.id = g.location_id
        JOIN authorities a ON a.id = g.authority_id
        WHERE g.id = :id
        """,
        {"id": group_id},
    )


def list_groups(
    statuses: tuple[str, ...] | None = None,
    category_id: str | None = None,
    location_id: str | None = None,
    authority_id: str | None = None,
) -> list[dict]:
    """Groups joined with their names, linked report count and latest total score.

    ``current_priority`` is None for a group with no snapshot yet. Rows are
    unordered; callers sort with ``priority.sort_key``.
    """
    clauses = []
    params: dict[str, Any] = {}
    if statuses:
        names = []
        for i, status in enumerate(statuses):
            params[f"s{i}"] = status
            names.append(f":s{i}")
        clauses.append(f"g.status IN ({', '.join(names)})")
    for column, value in (
        ("category_id", category_id),
        ("location_id", location_id),
        ("authority_id", authority_id),
    ):
        if value:
            clauses.append(f"g.{column} = :{column}")
            params[column] = value
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

    return _query_all(
        f"""
        SELECT g.id, g.category_id, g.location_id, g.authority_id, g.status,
               g.created_at, g.updated_at,
               c.name AS category_name, l.name AS location_name,
               a.name AS authority_name,
               (SELECT COUNT(*) FROM issue_links il WHERE il.group_id = g.id) AS report_count,
               (SELECT s.total_score FROM priority_snapshots s
                WHERE s.group_id = g.id ORDER BY s.computed_at DESC LIMIT 1) AS current_priority
        FROM issue_groups g
        JOIN categories c ON c.id = g.category_id
        JOIN locations l ON l.id = g.location_id
        JOIN authorities a ON a.id = g.authority_id
        {where}
        """,
        params,
    )


def find_active_group(con, category_id: str, location_id: str) -> dict | None:
    return fetch_one(
        con,
        """
        SELECT id, category_id, location_id, authority_id, status, created_at, updated_at
        FROM issue_groups
        WHERE category_id = :category_id AND location_id = :location_id
          AND status IN (:s_open, :s_in_progress)
        """,
        {
            "category_id": category_id,
            "location_id": location_id,
            "s_open": ACTIVE_STATUSES[0],
            "s_in_progress": ACTIVE_STATUSES[1],
        },
    )


def insert_group(con, category_id: str, location_id: str, authority_id: str, now: str) -> str:
    group_id = new_id()
    execute(
        con,
        """
        INSERT INTO issue_groups (
            id, category_id, location_id, authority_id, status, created_at, updated_at
        ) VALUES (
            :id, :category_id, :location_id, :authority_id, 'open', :now, :now
        )
        """,
        {
            "id": group_id,
            "category_id": category_id,
            "location_id": location_id,
            "authority_id": authority_id,
            "now": now,
        },
    )
    return group_id


def get_link_for_report(con, report_id: str) -> dict | None:
    return fetch_one(
        con,
        "SELECT id, report_id, group_id, linked_at FROM issue_links WHERE report_id = :report_id",
        {"report_id": report_id},
    )


def insert_link(con, report_id: str, group_id: str, linked_at: str) -> str:
    link_id = new_id()
    execute(
        con,
        """
        INSERT INTO issue_links (id, report_id, group_id, linked_at)
        VALUES (:id, :report_id, :group_id, :linked_at)
        """,
        {"id": link_id, "report_id": report_id, "group_id": group_id, "linked_at": linked_at},
    )
    execute(
        con,
        "UPDATE issue_groups SET updated_at = :now WHERE id = :id",
        {"now": linked_at, "id": group_id},
    )
    return link_id


def update_group_authority(group_id: str, authority_id: str) -> None:
    with session() as con:
        execute(
            con,
            """
            UPDATE issue_groups SET authority_id = :authority_id, updated_at = :now
            WHERE id = :id
            """,
            {"authority_id": authority_id, "now": _utc_now_iso(), "id": group_id},
        )


def update_group_status(group_id: str, status: str) -> None:
    """Raises UniqueConflict when activating would duplicate an active group."""
    with session() as con:
        execute(
            con,
            "UPDATE issue_groups SET status = :status, updated_at = :now WHERE id = :id",
            {"status": status, "now": _utc_now_iso(), "id": group_id},
        )


def count_group_links(group_id: str) -> int:
    row = _query_one(
        "SELECT COUNT(*) AS n FROM issue_links WHERE group_id = :group_id",
        {"group_id": group_id},
    )
    return int(row["n"]) if row else 0


def count_group_links_between(group_id: str, start: str, end: str) -> int:
    """Links with ``start <= linked_at <= end``."""
    row = _query_one(
        """
        SELECT COUNT(*) AS n FROM issue_links
        WHERE group_id = :group_id AND linked_at >= :start AND linked_at <= :end
        """,
        {"group_id": group_id, "start": start, "end": end},
    )
    return int(row["n"]) if row else 0


def list_linked_reports(group_id: str) -> list[dict]:
    """Reports in a group, without reporter references."""
    return _query_all(
        """
        SELECT r.id, r.title, r.description, r.created_at, l.linked_at
        FROM issue_links l
        JOIN reports r ON r.id = l.report_id
        WHERE l.group_id = :group_id
        ORDER BY l.linked_at
        """,
        {"group_id": group_id},
    )


def get_report_group_id(report_id: str) -> str | None:
    with session() as con:
        link = get_link_for_report(con, report_id)
    return link["group_id"] if link else None


# --- Frequency samples ---


def insert_frequency_sample(
    group_id: str, window_minutes: int, report_count: int, computed_at: str
) -> str:
    sample_id = new_id()
    with session() as con:
        execute(
            con,
            """
            INSERT INTO frequency_samples (id, group_id, window_minutes, report_count, computed_at)
            VALUES (:id, :group_id, :window_minutes, :report_count, :computed_at)
            """,
            {
                "id": sample_id,
                "group_id": group_id,
                "window_minutes": window_minutes,
                "report_count": report_count,
                "computed_at": computed_at,
            },
        )
    return sample_id


def get_latest_frequency_sample(group_id: str) -> dict | None:
    return _query_one(
        """
        SELECT id, group_id, window_minutes, report_count, computed_at
        FROM frequency_samples WHERE group_id = :group_id
        ORDER BY computed_at DESC LIMIT 1
        """,
        {"group_id": group_id},
    )


# --- Priority snapshots ---


def insert_priority_snapshot(
    group_id: str,
    total_score: float,
    components: dict | None = None,
    raw_score: float | None = None,
    confidence_multiplier: float | None = None,
    is_manual: bool = False,
    reason: str | None = None,
    computed_at: str | None = None,
) -> str:
    """Append a snapshot. ``components=None`` stores null components (manual override)."""
    components = components or {}
    snapshot_id = new_id()
    with session() as con:
        execute(
            con,
            """
            INSERT INTO priority_snapshots (
                id, group_id, urgency_component, impact_component, frequency_component,
                environmental_component, raw_score, confidence_multiplier, total_score,
                is_manual, reason, computed_at
            ) VALUES (
                :id, :group_id, :urgency, :impact, :frequency,
                :environmental, :raw_score, :confidence_multiplier, :total_score,
                :is_manual, :reason, :computed_at
            )
            """,
            {
                "id": snapshot_id,
                "group_id": group_id,
                "urgency": components.get("urgency"),
                "impact": components.get("impact"),
                "frequency": components.get("frequency"),
                "environmental": components.get("environmental"),
                "raw_score": raw_score,
                "confidence_multiplier": confidence_multiplier,
                "total_score": total_score,
                "is_manual": 1 if is_manual else 0,
                "reason": reason,
                "computed_at": computed_at or _utc_now_iso(),
            },
        )
    return snapshot_id


_SNAPSHOT_COLUMNS = """
    id, group_id, urgency_component, impact_component, frequency_component,
    environmental_component, raw_score, confidence_multiplier, total_score,
    is_manual, reason, computed_at
"""


def get_latest_priority_snapshot(group_id: str) -> dict | None:
    return _query_one(
        f"""
        SELECT {_SNAPSHOT_COLUMNS} FROM priority_snapshots
        WHERE group_id = :group_id ORDER BY computed_at DESC LIMIT 1
        """,
        {"group_id": group_id},
    )


def list_priority_snapshots(group_id: str) -> list[dict]:
    return _query_all(
        f"""
        SELECT {_SNAPSHOT_COLUMNS} FROM priority_snapshots
        WHERE group_id = :group_id ORDER BY computed_at
        """,
        {"group_id": group_id},
    )


# --- Admin actions ---


def insert_admin_action(
    admin_ref: str,
    group_id: str,
    action_type: str,
    previous_value: dict | None,
    new_value: dict | None,
    notes: str | None = None,
) -> str:
    action_id = new_id()
    with session() as con:
        execute(
            con,
            """
            INSERT INTO admin_actions (
                id, admin_ref, group_id, action_type, previous_value, new_value, notes, created_at
            ) VALUES (
                :id, :admin_ref, :group_id, :action_type, :previous_value, :new_value, :notes, :created_at
            )
            """,
            {
                "id": action_id,
                "admin_ref": admin_ref,
                "group_id": group_id,
                "action_type": action_type,
                "previous_value": json.dumps(previous_value) if previous_value is not None else None,
                "new_value": json.dumps(new_value) if new_value is not None else None,
                "notes": notes,
                "created_at": _utc_now_iso(),
            },
        )
    return action_id


def list_admin_actions(group_id: str) -> list[dict]:
    rows = _query_all(
        """
        SELECT id, admin_ref, group_id, action_type, previous_value, new_value, notes, created_at
        FROM admin_actions WHERE group_id = :group_id ORDER BY created_at
        """,
        {"group_id": group_id},
    )
    for row in rows:
        row["previous_value"] = json.loads(row["previous_value"]) if row["previous_value"] else None
        row["new_value"] = json.loads(row["new_value"]) if row["new_value"] else None
    return rows
