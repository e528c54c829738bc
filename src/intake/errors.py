"""Error taxonomy for the intake pipeline.

Recoverable: AutomationError (caller substitutes a default classification),
AggregationConflict while the retry budget lasts. Everything else is fatal
and ends the pipeline with a terminal error event.
"""


class IntakeError(Exception):
    """Base class for intake pipeline errors."""

    stage: str | None = None


class ValidationError(IntakeError):
    """Caller input is malformed. Raised before any side effect."""


class AutomationError(IntakeError):
    """Classification call failed, timed out, or returned nothing usable."""


class AggregationConflict(IntakeError):
    """Another writer created the active group for the same (category, location)."""

    def __init__(self, category_id: str, location_id: str, message: str | None = None):
        self.category_id = category_id
        self.location_id = location_id
        super().__init__(
            message
            or f"Active issue group already exists for category={category_id} location={location_id}"
        )


class RoutingError(IntakeError):
    """Resolved authority name has no directory record (configuration defect)."""

    def __init__(self, authority_name: str):
        self.authority_name = authority_name
        super().__init__(f"Authority not found: {authority_name}")


class PersistenceError(IntakeError):
    """Store unavailable or a write failed."""


class NotFoundError(IntakeError):
    """Referenced row does not exist."""


class UniqueConflict(PersistenceError):
    """A write collided with a unique constraint or unique index."""
