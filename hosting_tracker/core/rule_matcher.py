"""
Hosting Tracker — Rule Matcher.

Evaluates a single ClassificationRule against a single calendar event.
Rules are deterministic: a match always carries confidence 1.0. A malformed
regex never raises; it is reported back as a warning and treated as
non-matching. The warning is reported even when the event field is empty, so a
broken rule shows up on the first event it sees.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from functools import lru_cache

from hosting_tracker.core.location import normalize_location
from hosting_tracker.data.models import ClassificationRule, NormalizedCalendarEvent, RuleType

logger = logging.getLogger(__name__)

RULE_CONFIDENCE = 1.0


@dataclass(frozen=True)
class MatchResult:
    """Outcome of evaluating one rule against one event."""

    matched: bool
    confidence: float = 0.0
    warning: str | None = None


_NO_MATCH = MatchResult(matched=False)


@lru_cache(maxsize=512)
def _compile(pattern: str) -> tuple[re.Pattern[str] | None, str | None]:
    """Compile once per pattern; broken patterns are cached as their error text."""
    try:
        return re.compile(pattern, re.IGNORECASE), None
    except re.error as exc:
        return None, f"Invalid regex pattern {pattern!r}: {exc}"


def _regex_search(text: str | None, pattern: str) -> MatchResult:
    if not pattern:
        return _NO_MATCH
    regex, error = _compile(pattern)
    if regex is None:
        return MatchResult(matched=False, warning=error)
    if not text:
        return _NO_MATCH
    if regex.search(text):
        return MatchResult(matched=True, confidence=RULE_CONFIDENCE)
    return _NO_MATCH


def _location_exact(location: str | None, pattern: str) -> MatchResult:
    norm_location = normalize_location(location)
    if norm_location and norm_location == normalize_location(pattern):
        return MatchResult(matched=True, confidence=RULE_CONFIDENCE)
    return _NO_MATCH


def _attendee_email(attendees, pattern: str) -> MatchResult:
    if not attendees or not pattern:
        return _NO_MATCH
    wanted = pattern.strip().lower()
    if any(email and email.strip().lower() == wanted for email in attendees):
        return MatchResult(matched=True, confidence=RULE_CONFIDENCE)
    return _NO_MATCH


_REGEX_TYPES = (RuleType.TITLE_REGEX, RuleType.DESCRIPTION_REGEX, RuleType.LOCATION_REGEX)


def check_rule(rule: ClassificationRule) -> str | None:
    """Problem with the rule itself, independent of any event; None if usable."""
    if rule.type not in set(RuleType):
        return f"Unknown rule type {rule.type!r}"
    if rule.type in _REGEX_TYPES and rule.pattern:
        return _compile(rule.pattern)[1]
    return None


def evaluate_rule(rule: ClassificationRule, event: NormalizedCalendarEvent) -> MatchResult:
    """Evaluate one rule against one event.

    Disabled rules never match. An unknown rule type is logged and treated
    as non-matching.
    """
    if not rule.enabled:
        return _NO_MATCH

    rule_type = rule.type
    if rule_type == RuleType.TITLE_REGEX:
        result = _regex_search(event.title, rule.pattern)
    elif rule_type == RuleType.DESCRIPTION_REGEX:
        result = _regex_search(event.description, rule.pattern)
    elif rule_type == RuleType.LOCATION_EXACT:
        result = _location_exact(event.location, rule.pattern)
    elif rule_type == RuleType.LOCATION_REGEX:
        result = _regex_search(event.location, rule.pattern)
    elif rule_type == RuleType.ATTENDEE_EMAIL:
        result = _attendee_email(event.attendees, rule.pattern)
    else:
        result = MatchResult(matched=False, warning=f"Unknown rule type {rule_type!r}")

    if result.warning:
        # The pipeline reports each broken rule once per batch at WARNING.
        logger.debug("Rule %s (%s): %s", rule.id, rule.name, result.warning)
    return result
