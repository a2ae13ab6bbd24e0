"""
Hosting Tracker — LLM Suggester.

Two jobs, both backed by the configured LLM provider:

1. LLMEventSuggester — the pipeline's fallback when no rule fires. Classifies a
   single event and returns category + confidence. Raises SuggesterError on
   anything it can't turn into a valid answer.
2. suggest_rules() — after a user classifies an event by hand, proposes rules
   that would have caught it. Suggestions are never applied automatically;
   accept_suggestion() turns one into a rule when the user says so.
"""

from __future__ import annotations

import logging
from typing import Iterable, Mapping

from pydantic import BaseModel, Field, ValidationError

from hosting_tracker.core.effectiveness import new_rule
from hosting_tracker.core.household import HouseholdContext
from hosting_tracker.core.llm import LLMError, LLMTimeoutError, complete_json
from hosting_tracker.data.models import (
    ClassificationRule,
    HostingCategory,
    HostingEvent,
    NormalizedCalendarEvent,
    RuleType,
)
from hosting_tracker.ports.suggester_port import SuggesterError, SuggesterTimeoutError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# JSON contracts
# ---------------------------------------------------------------------------


class LLMClassification(BaseModel):
    """Single-event classification returned by the LLM.

    JSON example:
    {
        "category": "neutral",
        "confidence": 0.6,
        "family_id": null,
        "reasoning": "Meeting at a playground"
    }
    """
    category: HostingCategory
    confidence: float = Field(ge=0.0, le=1.0)
    family_id: str | None = None
    reasoning: str = ""


class RuleSuggestion(BaseModel):
    """A rule proposed by the LLM. Presented to the user, never auto-applied."""
    type: RuleType
    pattern: str
    name: str
    reasoning: str = ""
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    potential_false_positives: list[str] = []
    category: HostingCategory
    family_id: str | None = None


class RuleSuggestionResponse(BaseModel):
    suggestions: list[RuleSuggestion] = []


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

_CATEGORY_HELP = """\
Categories are:
- they-hosted: The other family hosted us at their place
- we-hosted: We hosted them at our place
- neutral: Met at a neutral venue (park, restaurant, etc.)
"""

_CLASSIFY_PROMPT = """\
You are the classification engine of a family hosting tracker.
Given one calendar event, decide who hosted the gathering.

{categories}
{families}
{examples}
Return ONLY a JSON object with this schema:
{{"category": "they-hosted" | "we-hosted" | "neutral", "confidence": number between 0 and 1, "family_id": "string or null", "reasoning": "string"}}

- Use a confidence below 0.5 when you are guessing.
- "family_id" must be one of the tracked family ids above, or null.
- No markdown, no explanation outside the JSON.
"""

_RULE_SUGGESTION_PROMPT = """\
You are a classification rule expert for a family hosting tracker app.
When given details about an event that was manually classified, suggest rules that could automatically classify similar events in the future.

Rules can be of these types:
- location_exact: Match exact location string
- location_regex: Match location with regex pattern
- title_regex: Match event title with regex pattern
- description_regex: Match event description with regex
- attendee_email: Match an attendee's email

{categories}
Return ONLY a JSON object with this schema:
{{"suggestions": [{{"type": "string", "pattern": "string", "name": "string", "reasoning": "string", "confidence": number, "potential_false_positives": ["string"], "category": "string", "family_id": "string or null"}}]}}
No markdown, no explanation outside the JSON.
"""


def _describe_event(event: NormalizedCalendarEvent) -> str:
    return "\n".join([
        f"- Title: {event.title or '(no title)'}",
        f"- Date: {event.start_date or '(unknown)'}",
        f"- Location: {event.location or '(no location)'}",
        f"- Description: {event.description or '(no description)'}",
        f"- Attendees: {', '.join(event.attendees) or '(none)'}",
        f"- Calendar: {event.calendar_name or '(unknown)'}",
    ])


def _examples_block(rules: Iterable[ClassificationRule]) -> str:
    lines: list[str] = []
    for rule in rules:
        category = HostingCategory(rule.category).value
        for example in rule.positive_examples:
            lines.append(f'- "{example}" → {category}')
        for example in rule.negative_examples:
            lines.append(f'- "{example}" → NOT {category}')
    if not lines:
        return ""
    return "Previously confirmed examples:\n" + "\n".join(lines) + "\n"


def _families_block(families: Mapping[str, str]) -> str:
    if not families:
        return "No tracked families are known; use null for family_id.\n"
    listed = "\n".join(f"- {fid}: {name}" for fid, name in families.items())
    return f"Tracked families (id: name):\n{listed}\n"


# ---------------------------------------------------------------------------
# Event classification fallback
# ---------------------------------------------------------------------------


class LLMEventSuggester:
    """Production LLMSuggester backed by complete_json().

    rules supply positive/negative examples as context; families maps
    family id → display name so the model can attribute the event. With a
    household, an address or venue the event's location matches is passed
    to the model as a hint; the model still makes the call.
    """

    def __init__(
        self,
        rules: Iterable[ClassificationRule] = (),
        families: Mapping[str, str] | None = None,
        household: HouseholdContext | None = None,
        max_tokens: int = 256,
        timeout: float | None = None,
    ) -> None:
        self._system = _CLASSIFY_PROMPT.format(
            categories=_CATEGORY_HELP,
            families=_families_block(families or {}),
            examples=_examples_block(rules),
        )
        self._family_ids = set(families or {})
        self._household = household
        self._max_tokens = max_tokens
        self._timeout = timeout

    def _user_message(self, event: NormalizedCalendarEvent) -> str:
        message = f"Event details:\n{_describe_event(event)}"
        hint = self._household.match(event) if self._household is not None else None
        if hint is not None:
            message += (
                f"\n\nLocation hint: {hint.note}. "
                f"On its own this suggests {hint.category.value}; weigh it against the other details."
            )
        return message

    async def __call__(self, event: NormalizedCalendarEvent) -> LLMClassification:
        try:
            data = await complete_json(
                system=self._system,
                user_message=self._user_message(event),
                max_tokens=self._max_tokens,
                timeout=self._timeout,
            )
        except LLMTimeoutError as exc:
            raise SuggesterTimeoutError(f"LLM timed out for event {event.id}: {exc}") from exc
        except LLMError as exc:
            raise SuggesterError(f"LLM call failed for event {event.id}: {exc}") from exc

        try:
            result = LLMClassification.model_validate(data)
        except ValidationError as exc:
            raise SuggesterError(
                f"Unusable LLM classification for event {event.id}: {exc}"
            ) from exc

        if result.family_id and result.family_id not in self._family_ids:
            logger.warning(
                "LLM named unknown family %r for event %s, dropping it",
                result.family_id, event.id,
            )
            result = result.model_copy(update={"family_id": None})
        return result


# ---------------------------------------------------------------------------
# Rule suggestions
# ---------------------------------------------------------------------------


def build_rule_suggestion_prompt(
    hosting_event: HostingEvent, event: NormalizedCalendarEvent | None = None,
) -> str:
    """Describe a hand-classified event and ask for 1-3 rules that catch it."""
    description = event.description if event else ""
    attendees = ", ".join(event.attendees) if event else ""
    category = HostingCategory(hosting_event.category).value
    return (
        f'Event was manually classified as "{category}" '
        f'for family "{hosting_event.family_name or hosting_event.family_id or "(unknown)"}".\n'
        "\n"
        "Event details:\n"
        f"- Title: {hosting_event.title}\n"
        f"- Location: {hosting_event.location or '(no location)'}\n"
        f"- Description: {description or '(no description)'}\n"
        f"- Attendees: {attendees or '(none)'}\n"
        "\n"
        "Please suggest 1-3 rules that could automatically classify similar events in the future.\n"
        "Focus on patterns that are specific enough to avoid false positives."
    )


async def suggest_rules(
    hosting_event: HostingEvent, event: NormalizedCalendarEvent | None = None,
) -> list[RuleSuggestion]:
    """Ask the LLM for rule suggestions. Returns [] on any failure."""
    prompt = build_rule_suggestion_prompt(hosting_event, event)
    try:
        data = await complete_json(
            system=_RULE_SUGGESTION_PROMPT.format(categories=_CATEGORY_HELP),
            user_message=prompt,
            max_tokens=1024,
        )
        # A bare list of suggestions is accepted too
        if isinstance(data, list):
            data = {"suggestions": data}
        response = RuleSuggestionResponse.model_validate(data)
    except LLMError as exc:
        logger.error("Rule suggestion request failed: %s", exc)
        return []
    except ValidationError as exc:
        logger.warning("LLM rule suggestions did not match schema: %s", exc)
        return []

    if hosting_event.family_id:
        response = RuleSuggestionResponse(suggestions=[
            s if s.family_id else s.model_copy(update={"family_id": hosting_event.family_id})
            for s in response.suggestions
        ])
    logger.info("LLM suggested %d rule(s) for '%s'", len(response.suggestions), hosting_event.title)
    return response.suggestions


def accept_suggestion(suggestion: RuleSuggestion) -> ClassificationRule:
    """Turn a user-accepted suggestion into an enabled positive rule."""
    return new_rule(
        name=suggestion.name,
        rule_type=suggestion.type,
        pattern=suggestion.pattern,
        category=suggestion.category,
        family_id=suggestion.family_id,
    )
