"""Shared test fixtures and configuration.

Sets deterministic environment variables before any hosting_tracker import,
and provides builders for events, rules and hosting events.
"""

import os

# Patch env vars BEFORE any hosting_tracker imports
os.environ.setdefault("LLM_PROVIDER", "anthropic")
os.environ.setdefault("LLM_API_KEY", "")
os.environ.setdefault("NEGATION_MODE", "priority")
os.environ.setdefault("OVERDUE_THRESHOLD_DAYS", "60")
os.environ.setdefault("DEFAULT_RULE_PRIORITY", "50")

import pytest

from hosting_tracker.data.models import (
    ClassificationMethod,
    ClassificationRule,
    HostingCategory,
    HostingEvent,
    NormalizedCalendarEvent,
    RuleType,
)


def make_event(event_id="ev1", **overrides) -> NormalizedCalendarEvent:
    fields = {
        "title": "Dinner at Grandma's",
        "description": "",
        "location": "123 Oak St",
        "start_datetime": "2026-02-07T18:00:00",
        "end_datetime": "2026-02-07T21:00:00",
        "start_date": "2026-02-07",
        "attendees": ("grandma@x.com",),
        "calendar_name": "Family",
        "source": "google",
    }
    fields.update(overrides)
    return NormalizedCalendarEvent(id=event_id, **fields)


def make_rule(rule_id="r1", **overrides) -> ClassificationRule:
    fields = {
        "name": f"Rule {rule_id}",
        "type": RuleType.TITLE_REGEX,
        "pattern": "dinner",
        "category": HostingCategory.THEY_HOSTED,
        "priority": 10,
    }
    fields.update(overrides)
    return ClassificationRule(id=rule_id, **fields)


def make_hosting_event(event_id="h1", **overrides) -> HostingEvent:
    fields = {
        "title": "Dinner",
        "date": "2026-02-07",
        "category": HostingCategory.THEY_HOSTED,
        "classification_method": ClassificationMethod.MANUAL,
        "confidence": 1.0,
        "classified_at": "2026-02-07T22:00:00+00:00",
        "family_id": "fam-smith",
        "family_name": "Smith",
    }
    fields.update(overrides)
    return HostingEvent(id=event_id, **fields)


@pytest.fixture
def grandma_event():
    return make_event()


@pytest.fixture
def attendee_rule():
    return make_rule(
        "r-grandma",
        name="Grandma attends",
        type=RuleType.ATTENDEE_EMAIL,
        pattern="grandma@x.com",
        category=HostingCategory.THEY_HOSTED,
        priority=10,
    )
