"""Core database infrastructure: connect, execute, schema helpers."""

import logging
import os
import re
import sqlite3
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any
from urllib.parse import urlparse, urlunparse

logger = logging.getLogger(__name__)

ROOT = Path(__file__).resolve().parents[2]
DB_PATH = ROOT / "data" / "intake.db"
SCHEMA_PATH = ROOT / "schema.sql"
SCHEMA_POSTGRES_PATH = ROOT / "schema.postgres.sql"

REQUIRED_TABLES = {
    "authorities",
    "categories",
    "locations",
    "reports",
    "classifications",
    "issue_groups",
    "issue_links",
    "frequency_samples",
    "priority_snapshots",
    "admin_actions",
}

_NAMED_PARAM_RE = re.compile(r"(?<!:):([a-zA-Z_][a-zA-Z0-9_]*)")

# SQLSTATE for unique_violation on Postgres
_PG_UNIQUE_VIOLATION = "23505"


def _normalize_db_url(db_url: str) -> str:
    if not db_url:
        return db_url
    parsed = urlparse(db_url)
    scheme = parsed.scheme
    if "+" not in scheme:
        return db_url
    base_scheme = scheme.split("+", 1)[0]
    if not base_scheme or base_scheme == scheme:
        return db_url
    return urlunparse(parsed._replace(scheme=base_scheme))


def _is_postgres() -> bool:
    return get_db_backend() == "postgres"


def _prepare_query(sql: str, params: Mapping[str, Any] | Sequence[Any] | None):
    """
    Normalize parameter style for the active backend.
    - SQLite: accepts :name or ? placeholders as-is.
    - Postgres (psycopg): translate :name -> %(name)s and ? -> %s.
    """
    if params is None or not _is_postgres():
        return sql, params

    if isinstance(params, Mapping):
        return _NAMED_PARAM_RE.sub(r"%(\1)s", sql), params

    return sql.replace("?", "%s"), params


def execute(con, sql: str, params: Mapping[str, Any] | Sequence[Any] | None = None):
    cur = con.cursor()
    sql, params = _prepare_query(sql, params)
    if params is None:
        cur.execute(sql)
    else:
        cur.execute(sql, params)
    return cur


def is_unique_violation(exc: BaseException) -> bool:
    """True when a driver error is a UNIQUE / partial-unique-index collision."""
    if isinstance(exc, sqlite3.IntegrityError):
        return "UNIQUE constraint failed" in str(exc)
    return getattr(exc, "sqlstate", None) == _PG_UNIQUE_VIOLATION


def driver_errors() -> tuple[type[BaseException], ...]:
    """Exception classes raised by the active DB driver."""
    if _is_postgres():
        import psycopg

        return (psycopg.Error,)
    return (sqlite3.Error,)


def table_exists(con, table_name: str) -> bool:
    if _is_postgres():
        cur = execute(con, "SELECT to_regclass(:table_name)", {"table_name": table_name})
        row = cur.fetchone()
        return row is not None and row[0] is not None
    cur = execute(
        con,
        "SELECT name FROM sqlite_master WHERE type='table' AND name=:table_name",
        {"table_name": table_name},
    )
    return cur.fetchone() is not None


def get_db_backend() -> str:
    db_url = os.environ.get("DATABASE_URL", "").strip()
    if not db_url:
        return "sqlite"
    scheme = urlparse(db_url).scheme.lower()
    if scheme.startswith("postgres"):
        return "postgres"
    return "sqlite"


def get_schema_path() -> Path:
    if get_db_backend() == "postgres":
        return SCHEMA_POSTGRES_PATH
    return SCHEMA_PATH


def connect():
    if _is_postgres():
        db_url = os.environ.get("DATABASE_URL", "").strip()
        if not db_url:
            raise RuntimeError("DATABASE_URL must be set for Postgres backend.")
        db_url = _normalize_db_url(db_url)
        import psycopg

        return psycopg.connect(db_url)

    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    con = sqlite3.connect(DB_PATH, timeout=30)
    con.execute("PRAGMA journal_mode=WAL")
    con.execute("PRAGMA foreign_keys=ON")
    return con


def init_db():
    con = connect()
    schema_sql = get_schema_path().read_text(encoding="utf-8")
    if _is_postgres():
        statements = [s.strip() for s in schema_sql.split(";") if s.strip()]
        cur = con.cursor()
        for statement in statements:
            cur.execute(statement)
        con.commit()
        con.close()
        return
    con.executescript(schema_sql)
    con.commit()
    con.close()


def assert_tables_exist():
    con = connect()
    missing = {name for name in REQUIRED_TABLES if not table_exists(con, name)}
    con.close()
    if missing:
        raise RuntimeError(f"DB_SCHEMA_MISSING_TABLES: {sorted(missing)}")
