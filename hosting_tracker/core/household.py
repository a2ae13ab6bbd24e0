"""
Hosting Tracker — Household context.

Optional knowledge about where we and the tracked families live. A location
that matches one of our addresses, a family's address or a neutral venue is
only a hint: it never classifies an event by itself. The LLM suggester gets
it as extra context, and an event that ends up in the review queue carries it
as the suggested category.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from hosting_tracker.core.location import is_neutral_location, location_matches_address
from hosting_tracker.data.models import (
    Address,
    Family,
    HostingCategory,
    NormalizedCalendarEvent,
)


@dataclass(frozen=True)
class HeuristicMatch:
    """What an event's location alone suggests."""

    category: HostingCategory
    family_id: str | None
    note: str


@dataclass
class HouseholdContext:
    my_addresses: list[Address] = field(default_factory=list)
    families: list[Family] = field(default_factory=list)
    neutral_patterns: list[str] = field(default_factory=list)

    def family_names(self) -> dict[str, str]:
        return {f.id: f.name for f in self.families}

    def match(self, event: NormalizedCalendarEvent) -> HeuristicMatch | None:
        """Address/venue heuristics: ours → we-hosted, theirs → they-hosted, venue → neutral."""
        if not event.location:
            return None

        for address in self.my_addresses:
            if location_matches_address(event.location, address.full_address):
                return HeuristicMatch(
                    HostingCategory.WE_HOSTED, None,
                    f"Matched our address: {address.label}",
                )

        for family in self.families:
            for address in family.addresses:
                if location_matches_address(event.location, address.full_address):
                    return HeuristicMatch(
                        HostingCategory.THEY_HOSTED, family.id,
                        f"Matched {family.name} address: {address.label}",
                    )

        if is_neutral_location(event.location, self.neutral_patterns):
            return HeuristicMatch(
                HostingCategory.NEUTRAL, None, "Neutral venue",
            )
        return None


class AddressFamilyResolver:
    """FamilyResolver that attributes an event to the family whose address it's at."""

    def __init__(self, families: list[Family]) -> None:
        self._families = families

    def resolve_family(self, event: NormalizedCalendarEvent) -> str | None:
        for family in self._families:
            for address in family.addresses:
                if location_matches_address(event.location, address.full_address):
                    return family.id
        return None
