"""Shared helper functions for the db package."""

import uuid
from datetime import UTC, datetime

# Fixed-width so stored timestamps compare correctly as strings.
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def _utc_now_iso() -> str:
    return format_timestamp(datetime.now(UTC))


def format_timestamp(value: datetime) -> str:
    """Render an aware (or naive-UTC) datetime in the stored timestamp format."""
    if value.tzinfo is not None:
        value = value.astimezone(UTC)
    return value.strftime(TIMESTAMP_FORMAT)


def new_id() -> str:
    return str(uuid.uuid4())
