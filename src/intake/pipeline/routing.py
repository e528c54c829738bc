"""Rule-based routing of issue groups to a responsible authority.

Precedence:
1. fixed category table (wins regardless of location)
2. hostel location with a hostel-managed category -> Provost
3. water / electricity elsewhere -> Administrative Office
4. default -> Administrative Office
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from types import MappingProxyType

from src.intake.errors import RoutingError

logger = logging.getLogger(__name__)

PROVOST = "Provost"
ADMIN_OFFICE = "Administrative Office"
SECURITY = "Security In-Charge"
ACADEMIC_AFFAIRS = "Academic Affairs"


@dataclass(frozen=True)
class RoutingTable:
    """Routing rules. Replace the default instance to change routing in tests."""

    fixed: MappingProxyType = field(
        default_factory=lambda: MappingProxyType(
            {
                "safety": SECURITY,
                "academics": ACADEMIC_AFFAIRS,
                "sanitation": ADMIN_OFFICE,
                "wifi": ADMIN_OFFICE,
                "infrastructure": ADMIN_OFFICE,
            }
        )
    )
    fixed_reasons: MappingProxyType = field(
        default_factory=lambda: MappingProxyType(
            {
                "safety": "Safety issues always route to Security In-Charge",
                "academics": "Academic issues route to Academic Affairs",
                "sanitation": "Sanitation issues route to Administrative Office",
                "wifi": "WiFi issues route to Administrative Office",
                "infrastructure": "Infrastructure issues route to Administrative Office",
            }
        )
    )
    hostel_categories: frozenset = frozenset({"water", "electricity", "hostel", "food"})
    utility_categories: frozenset = frozenset({"water", "electricity"})
    hostel_authority: str = PROVOST
    utility_authority: str = ADMIN_OFFICE
    default_authority: str = ADMIN_OFFICE


DEFAULT_ROUTING_TABLE = RoutingTable()


@dataclass(frozen=True)
class RoutingDecision:
    """Authority name chosen by the rules, before directory lookup."""

    authority_name: str
    reason: str
    confidence: str  # high / medium


@dataclass(frozen=True)
class RoutingResult:
    authority_id: str
    authority_name: str
    reason: str
    confidence: str

    def to_dict(self) -> dict:
        return {
            "authority_id": self.authority_id,
            "authority_name": self.authority_name,
            "reason": self.reason,
            "confidence": self.confidence,
        }


def determine_authority(
    category: str, location_kind: str, table: RoutingTable = DEFAULT_ROUTING_TABLE
) -> RoutingDecision:
    """Apply the routing rules. Pure, no directory access."""
    category = (category or "").lower()

    if category in table.fixed:
        return RoutingDecision(
            authority_name=table.fixed[category],
            reason=table.fixed_reasons.get(category, "Routed based on category"),
            confidence="high",
        )

    if location_kind == "hostel" and category in table.hostel_categories:
        return RoutingDecision(
            authority_name=table.hostel_authority,
            reason=f"{category} issue in hostel location routes to {table.hostel_authority}",
            confidence="high",
        )

    if category in table.utility_categories:
        return RoutingDecision(
            authority_name=table.utility_authority,
            reason=f"{category} issue in {location_kind} routes to {table.utility_authority}",
            confidence="medium",
        )

    return RoutingDecision(
        authority_name=table.default_authority,
        reason=f"Default routing to {table.default_authority}",
        confidence="medium",
    )


def route(
    category: str,
    location_kind: str,
    table: RoutingTable = DEFAULT_ROUTING_TABLE,
    lookup: Callable[[str], dict | None] | None = None,
) -> RoutingResult:
    """Route to an authority record.

    Args:
        category: Category name (e.g. "water").
        location_kind: Location kind (e.g. "hostel").
        table: Routing rules.
        lookup: Authority-by-name directory lookup. Defaults to the store.

    Raises:
        RoutingError: The chosen authority has no directory record.
    """
    if lookup is None:
        from src.intake.db_helpers import get_authority_by_name

        lookup = get_authority_by_name

    decision = determine_authority(category, location_kind, table)
    authority = lookup(decision.authority_name)
    if not authority:
        logger.error(
            "No authority record for routed name %r (category=%s, location_kind=%s)",
            decision.authority_name,
            category,
            location_kind,
        )
        raise RoutingError(decision.authority_name)

    return RoutingResult(
        authority_id=authority["id"],
        authority_name=authority["name"],
        reason=decision.reason,
        confidence=decision.confidence,
    )


def get_routing_suggestion(
    category: str, location_kind: str, table: RoutingTable = DEFAULT_ROUTING_TABLE
) -> dict:
    """Routing decision for admin display, without a directory lookup."""
    decision = determine_authority(category, location_kind, table)
    return {
        "suggested_authority": decision.authority_name,
        "reason": decision.reason,
        "confidence": decision.confidence,
    }
