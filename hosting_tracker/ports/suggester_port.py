"""Suggester port — abstract interface for the LLM classification fallback.

The classification pipeline depends on this protocol, never on a specific
LLM provider. Implementations raise SuggesterError when they can't answer
(SuggesterTimeoutError when their backend timed out); the pipeline turns
that into a needs-review entry.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from hosting_tracker.core.suggester import LLMClassification
    from hosting_tracker.data.models import NormalizedCalendarEvent


class SuggesterError(Exception):
    """Raised when the LLM suggester can't produce a classification."""


class SuggesterTimeoutError(SuggesterError):
    """Raised when the suggester's own backend call timed out."""


class LLMSuggester(Protocol):
    """Classifies one event the rules couldn't."""

    async def __call__(self, event: NormalizedCalendarEvent) -> LLMClassification: ...
