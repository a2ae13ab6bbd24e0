"""Family port — pluggable family inference for events.

Rules without a family_id rely on this to know which family an event is about.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from hosting_tracker.data.models import NormalizedCalendarEvent


class FamilyResolver(Protocol):
    """Maps an event to a tracked family id, or None if it can't tell."""

    def resolve_family(self, event: NormalizedCalendarEvent) -> str | None: ...
