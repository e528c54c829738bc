"""Database access layer.

Infrastructure only: connections, parameter-style translation, schema
bootstrap and timestamp/id helpers. Table-level functions for the intake
pipeline live in ``src.intake.db_helpers``.
"""

from .core import (
    connect,
    execute,
    table_exists,
    is_unique_violation,
    driver_errors,
    get_db_backend,
    get_schema_path,
    init_db,
    assert_tables_exist,
    _prepare_query,
    _is_postgres,
    _normalize_db_url,
    DB_PATH,
    ROOT,
    SCHEMA_PATH,
    SCHEMA_POSTGRES_PATH,
    REQUIRED_TABLES,
)
from .helpers import (
    TIMESTAMP_FORMAT,
    _utc_now_iso,
    format_timestamp,
    new_id,
)
