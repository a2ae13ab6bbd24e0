"""
Hosting Tracker — Location Normalizer.

Canonicalizes free-text addresses and venue names so "123 Oak Street, #4"
and "123 oak st 4" compare equal.
"""

from __future__ import annotations

import re

_PUNCTUATION_RE = re.compile(r"[.,#]")
_WHITESPACE_RE = re.compile(r"\s+")

# (long form | abbreviation) → abbreviation
_STREET_SUFFIXES: list[tuple[re.Pattern[str], str]] = [
    (re.compile(rf"\b({long}|{short})\b", re.IGNORECASE), short)
    for long, short in [
        ("street", "st"),
        ("avenue", "ave"),
        ("boulevard", "blvd"),
        ("drive", "dr"),
        ("lane", "ln"),
        ("court", "ct"),
        ("road", "rd"),
    ]
]


def normalize_location(text: str | None) -> str:
    """Return the canonical comparison form of a location string.

    Punctuation is stripped before whitespace is collapsed, so the result
    never contains double spaces and normalizing twice is a no-op.
    """
    if not text:
        return ""
    result = _PUNCTUATION_RE.sub("", text.lower())
    result = _WHITESPACE_RE.sub(" ", result).strip()
    for pattern, replacement in _STREET_SUFFIXES:
        result = pattern.sub(replacement, result)
    return result


def location_matches_address(location: str | None, address: str | None) -> bool:
    """Flexible match: either normalized string contains the other.

    Accepts partial addresses, e.g. an event location that omits the unit
    number still matches the stored full address.
    """
    if not location or not address:
        return False
    norm_location = normalize_location(location)
    norm_address = normalize_location(address)
    if not norm_location or not norm_address:
        return False
    return norm_location in norm_address or norm_address in norm_location


def is_neutral_location(location: str | None, neutral_patterns: list[str]) -> bool:
    """True if the location mentions a neutral venue keyword (park, cafe, ...)."""
    if not location:
        return False
    lower = location.lower()
    return any(p and p.lower() in lower for p in neutral_patterns)
