"""
Hosting Tracker — Classification Pipeline.

Turns normalized calendar events into HostingEvents:

    rules (priority order, negation) → LLM suggester → needs-review queue

Only a rule classifies with confidence 1.0; anything below that comes from the
LLM. Household address and venue matches are hints: they go into the review
queue entry as a suggested category and never classify on their own.

Every event ends up either classified or in the review queue. A broken rule,
an LLM failure or a timeout only affects the event at hand; the batch always
runs to the end.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Collection, Iterable, Mapping, Sequence

from pydantic import ValidationError

from hosting_tracker.config import settings
from hosting_tracker.core.effectiveness import RuleRegistry
from hosting_tracker.core.household import HeuristicMatch, HouseholdContext
from hosting_tracker.core.rule_matcher import RULE_CONFIDENCE, check_rule, evaluate_rule
from hosting_tracker.core.suggester import LLMClassification
from hosting_tracker.data.models import (
    ClassificationMethod,
    ClassificationRule,
    HostingCategory,
    HostingEvent,
    NormalizedCalendarEvent,
    generate_id,
)
from hosting_tracker.ports.family_port import FamilyResolver
from hosting_tracker.ports.suggester_port import LLMSuggester, SuggesterError, SuggesterTimeoutError

logger = logging.getLogger(__name__)


class ReviewReason(str, Enum):
    SUPPRESSED = "suppressed"            # a negative rule vetoed the event
    LLM_UNAVAILABLE = "llm_unavailable"  # no suggester configured
    LLM_ERROR = "llm_error"
    LLM_TIMEOUT = "llm_timeout"
    LLM_INVALID = "llm_invalid"          # suggester answered with garbage


@dataclass(frozen=True)
class RuleWarning:
    """Data-quality problem with a rule (e.g. a regex that doesn't compile)."""

    rule_id: str
    message: str


@dataclass(frozen=True)
class ReviewItem:
    event_id: str
    reason: ReviewReason
    rule_id: str | None = None  # the vetoing rule, for SUPPRESSED
    # household hint, if the location suggested something
    suggested_category: HostingCategory | None = None
    suggested_family_id: str | None = None
    hint: str = ""


@dataclass
class RuleDecision:
    """What the rules alone say about one event."""

    winner: ClassificationRule | None = None
    suppressed_by: ClassificationRule | None = None
    warnings: list[RuleWarning] = field(default_factory=list)


@dataclass
class BatchResult:
    """Output of classify_batch().

    Filled in place as events finish, so a caller holding a reference keeps
    every completed classification even if the batch is cancelled midway.
    """

    classified: list[HostingEvent] = field(default_factory=list)
    needs_review: list[ReviewItem] = field(default_factory=list)
    warnings: list[RuleWarning] = field(default_factory=list)

    @property
    def needs_review_ids(self) -> list[str]:
        return [item.event_id for item in self.needs_review]

    def add_warning(self, warning: RuleWarning) -> None:
        if any(w.rule_id == warning.rule_id for w in self.warnings):
            return
        logger.warning("Rule %s is broken: %s", warning.rule_id, warning.message)
        self.warnings.append(warning)


# ---------------------------------------------------------------------------
# Rule evaluation
# ---------------------------------------------------------------------------


def eligible_rules(
    rules: Iterable[ClassificationRule], family_context: str | None = None,
) -> list[ClassificationRule]:
    """Enabled rules that apply to the event's family, in evaluation order.

    Higher priority first; ties broken by rule id so the order never depends
    on how the caller happened to store the rules. With no family context,
    family-bound rules stay eligible and assign their own family.
    """
    candidates = [
        r for r in rules
        if r.enabled and (
            r.family_id is None or family_context is None or r.family_id == family_context
        )
    ]
    return sorted(candidates, key=lambda r: (-r.priority, r.id))


def evaluate_rules(
    event: NormalizedCalendarEvent,
    rules: Iterable[ClassificationRule],
    family_context: str | None = None,
    negation_mode: str | None = None,
) -> RuleDecision:
    """Apply rules to one event.

    "priority" mode: walk rules in order; the first positive match wins, but a
    negative match at or above the winner's priority (including the same
    priority) vetoes it. "global" mode: any matching negative rule vetoes.
    """
    mode = negation_mode or settings.NEGATION_MODE
    decision = RuleDecision()

    for rule in eligible_rules(rules, family_context):
        if mode == "priority" and decision.winner is not None and rule.priority < decision.winner.priority:
            break
        result = evaluate_rule(rule, event)
        if result.warning:
            decision.warnings.append(RuleWarning(rule.id, result.warning))
        if not result.matched:
            continue
        if rule.is_negative:
            decision.winner = None
            decision.suppressed_by = rule
            return decision
        if decision.winner is None:
            decision.winner = rule

    return decision


# ---------------------------------------------------------------------------
# HostingEvent construction
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _event_date(event: NormalizedCalendarEvent) -> str:
    return event.start_date or event.start_datetime[:10]


def _build_hosting_event(
    event: NormalizedCalendarEvent,
    category: HostingCategory | str,
    method: ClassificationMethod,
    confidence: float,
    family_id: str | None,
    family_names: Mapping[str, str],
    notes: str = "",
    matched_rule_id: str | None = None,
    prior: HostingEvent | None = None,
) -> HostingEvent:
    return HostingEvent(
        id=prior.id if prior else generate_id(),
        calendar_event_id=event.id,
        title=event.title,
        date=_event_date(event),
        location=event.location,
        family_id=family_id,
        family_name=family_names.get(family_id, "") if family_id else "",
        category=HostingCategory(category),
        classification_method=method,
        confidence=confidence,
        notes=notes,
        classified_at=_now_iso(),
        matched_rule_id=matched_rule_id,
    )


def classify_manually(
    event: NormalizedCalendarEvent,
    category: HostingCategory | str,
    family_id: str | None,
    family_name: str = "",
    notes: str = "",
    prior: HostingEvent | None = None,
) -> HostingEvent:
    """User-set classification. The pipeline never re-evaluates these unless asked."""
    hosting_event = _build_hosting_event(
        event, category, ClassificationMethod.MANUAL, 1.0, family_id,
        {family_id: family_name} if family_id else {}, notes=notes, prior=prior,
    )
    logger.info("Manually classified '%s' as %s", event.title, hosting_event.category.value)
    return hosting_event


def add_manual_event(
    title: str,
    date: str,
    category: HostingCategory | str,
    family_id: str,
    family_name: str = "",
    location: str = "",
    notes: str = "",
) -> HostingEvent:
    """Record a gathering that has no calendar event behind it.

    Raises:
        ValueError: if title, date or family_id is missing.
    """
    title = (title or "").strip()
    missing = [name for name, value in (("title", title), ("date", date), ("family_id", family_id)) if not value]
    if missing:
        raise ValueError(f"Manual hosting event is missing: {', '.join(missing)}")

    hosting_event = HostingEvent(
        id=generate_id(),
        title=title,
        date=date,
        location=(location or "").strip(),
        family_id=family_id,
        family_name=family_name,
        category=HostingCategory(category),
        classification_method=ClassificationMethod.MANUAL,
        confidence=1.0,
        notes=(notes or "").strip(),
        classified_at=_now_iso(),
        calendar_event_id=None,
    )
    logger.info("Added manual hosting event '%s' (%s) for %s", title, hosting_event.category.value, family_id)
    return hosting_event


def unclassified_events(
    events: Iterable[NormalizedCalendarEvent], hosting_events: Iterable[HostingEvent],
) -> list[NormalizedCalendarEvent]:
    """Calendar events no HostingEvent points back to yet."""
    classified_ids = {h.calendar_event_id for h in hosting_events if h.calendar_event_id}
    return [e for e in events if e.id not in classified_ids]


def _dedupe(events: Iterable[NormalizedCalendarEvent]) -> list[NormalizedCalendarEvent]:
    seen: set[str] = set()
    unique: list[NormalizedCalendarEvent] = []
    for event in events:
        if event.id in seen:
            logger.debug("Skipping duplicate event %s", event.id)
            continue
        seen.add(event.id)
        unique.append(event)
    return unique


# ---------------------------------------------------------------------------
# Batch pipeline
# ---------------------------------------------------------------------------


def _review(event_id: str, reason: ReviewReason, hint: HeuristicMatch | None) -> ReviewItem:
    if hint is None:
        return ReviewItem(event_id, reason)
    return ReviewItem(
        event_id, reason,
        suggested_category=hint.category,
        suggested_family_id=hint.family_id,
        hint=hint.note,
    )


async def _ask_llm(
    event: NormalizedCalendarEvent,
    llm_suggester: LLMSuggester,
    semaphore: asyncio.Semaphore,
    timeout: float | None,
) -> LLMClassification | ReviewReason:
    async with semaphore:
        try:
            raw = await asyncio.wait_for(llm_suggester(event), timeout=timeout)
        except (asyncio.TimeoutError, SuggesterTimeoutError):
            logger.warning("LLM suggester timed out after %ss for event %s", timeout, event.id)
            return ReviewReason.LLM_TIMEOUT
        except SuggesterError as exc:
            logger.warning("LLM suggester failed for event %s: %s", event.id, exc)
            return ReviewReason.LLM_ERROR
        except Exception as exc:
            logger.warning("Unexpected LLM suggester error for event %s: %s", event.id, exc)
            return ReviewReason.LLM_ERROR

    if isinstance(raw, LLMClassification):
        return raw
    try:
        return LLMClassification.model_validate(raw)
    except ValidationError as exc:
        logger.warning("Invalid LLM classification for event %s: %s", event.id, exc)
        return ReviewReason.LLM_INVALID


async def classify_batch(
    events: Iterable[NormalizedCalendarEvent],
    rules: RuleRegistry | Sequence[ClassificationRule],
    llm_suggester: LLMSuggester | None = None,
    *,
    family_resolver: FamilyResolver | None = None,
    household: HouseholdContext | None = None,
    families: Mapping[str, str] | None = None,
    existing: Iterable[HostingEvent] = (),
    reclassify: Collection[str] = (),
    negation_mode: str | None = None,
    llm_timeout: float | None = None,
    max_concurrency: int | None = None,
    result: BatchResult | None = None,
) -> BatchResult:
    """Classify a batch of events.

    Args:
        events: Normalized calendar events; duplicates by id are ignored.
        rules: A RuleRegistry (preferred — firings are counted once per event
            across runs) or a plain list of rules, whose match counters are
            bumped in place.
        llm_suggester: Async fallback for events no rule decides. None sends
            those events to review.
        family_resolver: Infers the family an event is about.
        household: Address/venue knowledge; a match is attached to the
            event's review entry as a suggested category.
        families: family id → display name for the family_name cache.
        existing: Earlier HostingEvents. Manual ones are kept as-is; others
            are reclassified and keep their id.
        reclassify: Event ids whose manual classification should be redone.
        negation_mode: "priority" or "global"; defaults to NEGATION_MODE.
        llm_timeout: Seconds per LLM call; defaults to LLM_TIMEOUT_SECONDS.
        max_concurrency: Concurrent LLM calls; defaults to LLM_MAX_CONCURRENCY.
        result: Optional BatchResult to fill in place.

    Returns:
        The BatchResult, with classified and needs_review in input order.
    """
    registry = rules if isinstance(rules, RuleRegistry) else RuleRegistry(rules)
    rule_snapshot = registry.rules()
    result = result if result is not None else BatchResult()
    timeout = settings.LLM_TIMEOUT_SECONDS if llm_timeout is None else llm_timeout
    semaphore = asyncio.Semaphore(max_concurrency or settings.LLM_MAX_CONCURRENCY)

    names: dict[str, str] = {}
    if household is not None:
        names.update(household.family_names())
    names.update(families or {})

    prior_by_event = {h.calendar_event_id: h for h in existing if h.calendar_event_id}
    unique_events = _dedupe(events)
    order = {event.id: index for index, event in enumerate(unique_events)}

    # Broken rules are reported even when a higher-priority rule always wins
    for rule in rule_snapshot:
        if rule.enabled:
            problem = check_rule(rule)
            if problem:
                result.add_warning(RuleWarning(rule.id, problem))

    pending: list[
        tuple[NormalizedCalendarEvent, str | None, HostingEvent | None, HeuristicMatch | None]
    ] = []

    for event in unique_events:
        prior = prior_by_event.get(event.id)
        if (
            prior is not None
            and prior.classification_method == ClassificationMethod.MANUAL
            and event.id not in reclassify
        ):
            result.classified.append(prior)
            continue

        family_context = family_resolver.resolve_family(event) if family_resolver else None
        decision = evaluate_rules(event, rule_snapshot, family_context, negation_mode)
        for warning in decision.warnings:
            result.add_warning(warning)

        if decision.suppressed_by is not None:
            logger.info(
                "Event '%s' suppressed by negative rule %s (%s)",
                event.title, decision.suppressed_by.id, decision.suppressed_by.name,
            )
            result.needs_review.append(
                ReviewItem(event.id, ReviewReason.SUPPRESSED, decision.suppressed_by.id)
            )
            continue

        if decision.winner is not None:
            rule = decision.winner
            registry.record_match(rule.id, event.id)
            result.classified.append(_build_hosting_event(
                event, rule.category, ClassificationMethod.AUTO_RULE, RULE_CONFIDENCE,
                rule.family_id or family_context, names,
                notes=f"Matched rule: {rule.name}", matched_rule_id=rule.id, prior=prior,
            ))
            logger.info(
                "Event '%s' → %s via rule %s", event.title, HostingCategory(rule.category).value, rule.id,
            )
            continue

        hint = household.match(event) if household is not None else None
        if llm_suggester is None:
            result.needs_review.append(_review(event.id, ReviewReason.LLM_UNAVAILABLE, hint))
            continue

        pending.append((event, family_context, prior, hint))

    async def _fallback(event, family_context, prior, hint) -> None:
        answer = await _ask_llm(event, llm_suggester, semaphore, timeout)
        if isinstance(answer, ReviewReason):
            result.needs_review.append(_review(event.id, answer, hint))
            return
        result.classified.append(_build_hosting_event(
            event, answer.category, ClassificationMethod.AUTO_LLM, answer.confidence,
            answer.family_id or family_context, names, notes=answer.reasoning, prior=prior,
        ))
        logger.info(
            "Event '%s' → %s via LLM (confidence %.2f)",
            event.title, answer.category.value, answer.confidence,
        )

    if pending:
        await asyncio.gather(*(_fallback(*item) for item in pending))

    result.classified.sort(key=lambda h: order.get(h.calendar_event_id, len(order)))
    result.needs_review.sort(key=lambda r: order.get(r.event_id, len(order)))
    logger.info(
        "Classified %d event(s), %d need review, %d broken rule(s)",
        len(result.classified), len(result.needs_review), len(result.warnings),
    )
    return result
