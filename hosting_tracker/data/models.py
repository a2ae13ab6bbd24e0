"""
Hosting Tracker — Data Models.

Plain records that flow through the classification core. Calendar events come
in from an importer, rules are authored by the user, and HostingEvents come
out. Nothing here touches storage; persistence belongs to the caller.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum


class HostingCategory(str, Enum):
    THEY_HOSTED = "they-hosted"
    WE_HOSTED = "we-hosted"
    NEUTRAL = "neutral"


class RuleType(str, Enum):
    TITLE_REGEX = "title_regex"
    DESCRIPTION_REGEX = "description_regex"
    LOCATION_EXACT = "location_exact"
    LOCATION_REGEX = "location_regex"
    ATTENDEE_EMAIL = "attendee_email"


class ClassificationMethod(str, Enum):
    AUTO_RULE = "auto-rule"
    AUTO_LLM = "auto-llm"
    MANUAL = "manual"


class HostingStatus(str, Enum):
    OVERDUE = "overdue"
    BALANCED = "balanced"
    WE_OWE = "we-owe"
    THEY_OWE = "they-owe"


class FamilyRole(str, Enum):
    PARENT = "parent"
    CHILD = "child"
    OTHER = "other"


def generate_id() -> str:
    """Return a short random id for new rules, addresses and hosting events."""
    return uuid.uuid4().hex[:12]


@dataclass
class Address:
    """A known address: one of ours, or one belonging to a tracked family."""

    id: str
    label: str             # "Home", "Beach House", ...
    full_address: str
    is_primary: bool = False

    def rename(self, label: str) -> None:
        # Label is the only mutable field.
        self.label = label


@dataclass(frozen=True)
class NormalizedCalendarEvent:
    """Calendar event as delivered by the importer (Google, Apple or manual).

    Read-only input to the classifier.
    """

    id: str
    title: str = ""
    description: str = ""
    location: str = ""
    start_datetime: str = ""
    end_datetime: str = ""
    start_date: str = ""              # YYYY-MM-DD grouping key
    is_all_day: bool = False
    attendees: tuple[str, ...] = ()   # email addresses
    calendar_name: str = ""
    source: str = "manual"            # google | apple | manual


@dataclass
class ClassificationRule:
    """A user-authored matching rule.

    match_count / correct_count are effectiveness counters. They only grow,
    and only the RuleRegistry moves them (correct_count <= match_count).
    positive_examples / negative_examples are context for the LLM and are
    never read by the matcher.
    """

    id: str
    name: str
    type: RuleType
    pattern: str
    category: HostingCategory
    family_id: str | None = None      # None = family inferred from the event
    is_negative: bool = False         # exclusion rule
    priority: int = 50                # higher = checked first
    enabled: bool = True
    match_count: int = 0
    correct_count: int = 0
    positive_examples: list[str] = field(default_factory=list)
    negative_examples: list[str] = field(default_factory=list)


@dataclass
class HostingEvent:
    """A classified gathering.

    family_name is a display cache only; always join on family_id.
    matched_rule_id is set for auto-rule decisions made by a user rule, so
    user feedback can be routed back to that rule.
    """

    id: str
    title: str
    date: str                          # YYYY-MM-DD
    category: HostingCategory
    classification_method: ClassificationMethod
    confidence: float                  # 0-1
    classified_at: str                 # ISO timestamp
    location: str = ""
    family_id: str | None = None
    family_name: str = ""
    notes: str = ""
    calendar_event_id: str | None = None
    matched_rule_id: str | None = None


@dataclass(frozen=True)
class FamilyHostingStats:
    """Derived per-family balance. Recomputed, never edited."""

    family_id: str
    family_name: str
    they_hosted_count: int
    we_hosted_count: int
    neutral_count: int
    last_they_hosted: str | None
    last_we_hosted: str | None
    days_since_they_hosted: int | None
    is_overdue: bool
    status: HostingStatus


@dataclass
class FamilyMember:
    id: str
    name: str
    role: FamilyRole = FamilyRole.OTHER
    person_charm_id: str | None = None  # weak link to an external profile


@dataclass
class Family:
    """A tracked family: identity, where they live, and who they are."""

    id: str
    name: str
    addresses: list[Address] = field(default_factory=list)
    members: list[FamilyMember] = field(default_factory=list)


def add_address(addresses: list[Address], label: str, full_address: str) -> Address:
    """Append a new address; the first one added becomes primary."""
    address = Address(
        id=generate_id(),
        label=label,
        full_address=full_address,
        is_primary=not addresses,
    )
    addresses.append(address)
    return address


def remove_address(addresses: list[Address], address_id: str) -> bool:
    """Remove an address by id, promoting the next one if the primary went away.

    Returns True if something was removed.
    """
    for index, address in enumerate(addresses):
        if address.id == address_id:
            removed = addresses.pop(index)
            if removed.is_primary and addresses:
                addresses[0].is_primary = True
            return True
    return False
