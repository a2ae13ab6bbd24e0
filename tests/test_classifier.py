"""Tests for hosting_tracker.core.classifier — the classification pipeline."""

import asyncio

import pytest
from unittest.mock import AsyncMock

from conftest import make_event, make_hosting_event, make_rule
from hosting_tracker.core.classifier import (
    BatchResult,
    ReviewReason,
    add_manual_event,
    classify_batch,
    classify_manually,
    eligible_rules,
    evaluate_rules,
    unclassified_events,
)
from hosting_tracker.core.effectiveness import RuleRegistry
from hosting_tracker.core.household import AddressFamilyResolver, HouseholdContext
from hosting_tracker.core.hosting_stats import compute_stats
from hosting_tracker.core.suggester import LLMClassification
from hosting_tracker.data.models import (
    Address,
    ClassificationMethod,
    Family,
    HostingCategory,
    RuleType,
)
from hosting_tracker.ports.suggester_port import SuggesterError, SuggesterTimeoutError


def _llm(category="neutral", confidence=0.6, **extra):
    return AsyncMock(return_value=LLMClassification(category=category, confidence=confidence, **extra))


# ---------------------------------------------------------------------------
# Rule ordering
# ---------------------------------------------------------------------------


class TestEligibleRules:
    def test_sorted_by_priority_then_id(self):
        rules = [
            make_rule("b", priority=5),
            make_rule("c", priority=10),
            make_rule("a", priority=5),
        ]
        assert [r.id for r in eligible_rules(rules)] == ["c", "a", "b"]

    def test_disabled_rules_excluded(self):
        rules = [make_rule("a"), make_rule("b", enabled=False)]
        assert [r.id for r in eligible_rules(rules)] == ["a"]

    def test_family_scoping(self):
        rules = [
            make_rule("any"),
            make_rule("smith", family_id="fam-smith"),
            make_rule("jones", family_id="fam-jones"),
        ]
        assert {r.id for r in eligible_rules(rules, "fam-smith")} == {"any", "smith"}
        assert {r.id for r in eligible_rules(rules, None)} == {"any", "smith", "jones"}


# ---------------------------------------------------------------------------
# Priority & negation
# ---------------------------------------------------------------------------


class TestEvaluateRules:
    def test_higher_priority_wins_regardless_of_list_order(self):
        low = make_rule("low", pattern="dinner", category=HostingCategory.WE_HOSTED, priority=1)
        high = make_rule("high", pattern="grandma", category=HostingCategory.THEY_HOSTED, priority=20)
        event = make_event()
        assert evaluate_rules(event, [low, high]).winner.id == "high"
        assert evaluate_rules(event, [high, low]).winner.id == "high"

    def test_tie_broken_by_id(self):
        b = make_rule("b", category=HostingCategory.WE_HOSTED, priority=10)
        a = make_rule("a", category=HostingCategory.NEUTRAL, priority=10)
        assert evaluate_rules(make_event(), [b, a]).winner.id == "a"

    def test_negative_above_positive_suppresses(self):
        neg = make_rule("neg", pattern="grandma", is_negative=True, priority=20)
        pos = make_rule("pos", pattern="dinner", priority=10)
        decision = evaluate_rules(make_event(), [pos, neg])
        assert decision.winner is None
        assert decision.suppressed_by.id == "neg"

    def test_negative_at_same_priority_suppresses_even_if_id_sorts_later(self):
        pos = make_rule("a-pos", pattern="dinner", priority=10)
        neg = make_rule("z-neg", pattern="grandma", is_negative=True, priority=10)
        decision = evaluate_rules(make_event(), [pos, neg])
        assert decision.winner is None
        assert decision.suppressed_by.id == "z-neg"

    def test_negative_below_positive_does_not_suppress(self):
        pos = make_rule("pos", pattern="dinner", priority=10)
        neg = make_rule("neg", pattern="grandma", is_negative=True, priority=5)
        decision = evaluate_rules(make_event(), [pos, neg])
        assert decision.winner.id == "pos"
        assert decision.suppressed_by is None

    def test_global_mode_lets_any_negative_veto(self):
        pos = make_rule("pos", pattern="dinner", priority=10)
        neg = make_rule("neg", pattern="grandma", is_negative=True, priority=5)
        decision = evaluate_rules(make_event(), [pos, neg], negation_mode="global")
        assert decision.winner is None
        assert decision.suppressed_by.id == "neg"

    def test_non_matching_negative_is_ignored(self):
        pos = make_rule("pos", pattern="dinner", priority=10)
        neg = make_rule("neg", pattern="soccer", is_negative=True, priority=50)
        assert evaluate_rules(make_event(), [pos, neg]).winner.id == "pos"

    def test_broken_rule_is_reported_and_skipped(self):
        broken = make_rule("broken", pattern="(", priority=50)
        pos = make_rule("pos", pattern="dinner", priority=10)
        decision = evaluate_rules(make_event(), [broken, pos])
        assert decision.winner.id == "pos"
        assert [w.rule_id for w in decision.warnings] == ["broken"]


# ---------------------------------------------------------------------------
# classify_batch: rule path
# ---------------------------------------------------------------------------


class TestClassifyBatchRules:
    @pytest.mark.asyncio
    async def test_attendee_rule_example(self, grandma_event, attendee_rule):
        result = await classify_batch([grandma_event], [attendee_rule])
        assert len(result.classified) == 1
        hosting = result.classified[0]
        assert hosting.category == HostingCategory.THEY_HOSTED
        assert hosting.classification_method == ClassificationMethod.AUTO_RULE
        assert hosting.confidence == 1.0
        assert hosting.calendar_event_id == grandma_event.id
        assert hosting.matched_rule_id == attendee_rule.id
        assert hosting.date == "2026-02-07"
        assert result.needs_review == []

    @pytest.mark.asyncio
    async def test_match_count_incremented(self, grandma_event, attendee_rule):
        await classify_batch([grandma_event], [attendee_rule])
        assert attendee_rule.match_count == 1
        assert attendee_rule.correct_count == 0

    @pytest.mark.asyncio
    async def test_registry_counts_each_event_once_across_runs(self, grandma_event, attendee_rule):
        registry = RuleRegistry([attendee_rule])
        await classify_batch([grandma_event], registry)
        await classify_batch([grandma_event], registry)
        assert attendee_rule.match_count == 1

    @pytest.mark.asyncio
    async def test_idempotent_without_llm(self):
        events = [
            make_event("e1", title="Dinner at Grandma's"),
            make_event("e2", title="Soccer practice", attendees=()),
            make_event("e3", title="BBQ at ours", location="9 Elm Rd", attendees=()),
        ]
        rules = [
            make_rule("r1", pattern="grandma", priority=10),
            make_rule("r2", pattern="bbq", category=HostingCategory.WE_HOSTED, priority=5),
            make_rule("r3", pattern="soccer", is_negative=True, priority=1),
        ]
        first = await classify_batch(events, rules)
        second = await classify_batch(events, rules)

        def summary(result):
            return (
                [(h.calendar_event_id, h.category, h.classification_method, h.confidence)
                 for h in result.classified],
                result.needs_review,
            )

        assert summary(first) == summary(second)

    @pytest.mark.asyncio
    async def test_suppressed_event_goes_to_review(self, grandma_event):
        neg = make_rule("neg", pattern="grandma", is_negative=True, priority=20)
        pos = make_rule("pos", pattern="dinner", priority=10)
        llm = _llm()
        result = await classify_batch([grandma_event], [pos, neg], llm)
        assert result.classified == []
        assert result.needs_review[0].reason == ReviewReason.SUPPRESSED
        assert result.needs_review[0].rule_id == "neg"
        llm.assert_not_awaited()
        assert pos.match_count == 0

    @pytest.mark.asyncio
    async def test_rule_family_and_family_name_cache(self, grandma_event):
        rule = make_rule("r", pattern="grandma", family_id="fam-smith")
        result = await classify_batch([grandma_event], [rule], families={"fam-smith": "The Smiths"})
        assert result.classified[0].family_id == "fam-smith"
        assert result.classified[0].family_name == "The Smiths"

    @pytest.mark.asyncio
    async def test_family_resolver_scopes_rules(self):
        smiths = Family("fam-smith", "Smith", addresses=[Address("a1", "Home", "123 Oak Street")])
        jones_rule = make_rule("jones", pattern="dinner", family_id="fam-jones",
                               category=HostingCategory.WE_HOSTED, priority=50)
        generic = make_rule("generic", pattern="dinner", priority=10)
        result = await classify_batch(
            [make_event()], [jones_rule, generic],
            family_resolver=AddressFamilyResolver([smiths]),
        )
        hosting = result.classified[0]
        assert hosting.matched_rule_id == "generic"
        assert hosting.family_id == "fam-smith"

    @pytest.mark.asyncio
    async def test_broken_rule_warning_reported_once_per_batch(self):
        broken = make_rule("broken", pattern="(", priority=50)
        events = [make_event("e1"), make_event("e2")]
        result = await classify_batch(events, [broken])
        assert [w.rule_id for w in result.warnings] == ["broken"]
        assert result.needs_review_ids == ["e1", "e2"]

    @pytest.mark.asyncio
    async def test_broken_rule_reported_even_when_never_reached(self):
        winner = make_rule("a", pattern="dinner", priority=10)
        broken = make_rule("b", pattern="(", priority=1)
        result = await classify_batch([make_event()], [winner, broken])
        assert result.classified[0].matched_rule_id == "a"
        assert [w.rule_id for w in result.warnings] == ["b"]

    @pytest.mark.asyncio
    async def test_disabled_broken_rule_not_reported(self):
        broken = make_rule("b", pattern="(", enabled=False)
        result = await classify_batch([make_event()], [broken])
        assert result.warnings == []

    @pytest.mark.asyncio
    async def test_duplicate_events_classified_once(self, attendee_rule):
        events = [make_event("e1"), make_event("e1", title="Other title")]
        result = await classify_batch(events, [attendee_rule])
        assert len(result.classified) == 1
        assert result.classified[0].title == "Dinner at Grandma's"

    @pytest.mark.asyncio
    async def test_empty_event_fields_never_raise(self):
        event = make_event(title="", description="", location="", attendees=())
        rules = [
            make_rule("t", type=RuleType.TITLE_REGEX, pattern=".*"),
            make_rule("l", type=RuleType.LOCATION_EXACT, pattern=""),
            make_rule("a", type=RuleType.ATTENDEE_EMAIL, pattern="x@y.com"),
        ]
        result = await classify_batch([event], rules)
        assert result.needs_review[0].reason == ReviewReason.LLM_UNAVAILABLE


# ---------------------------------------------------------------------------
# classify_batch: LLM fallback
# ---------------------------------------------------------------------------


class TestClassifyBatchLLM:
    @pytest.mark.asyncio
    async def test_llm_fallback_example(self):
        event = make_event(title="Catch-up", attendees=())
        llm = _llm("neutral", 0.6)
        result = await classify_batch([event], [], llm)
        hosting = result.classified[0]
        assert hosting.classification_method == ClassificationMethod.AUTO_LLM
        assert hosting.category == HostingCategory.NEUTRAL
        assert hosting.confidence == 0.6
        assert hosting.matched_rule_id is None
        llm.assert_awaited_once_with(event)

    @pytest.mark.asyncio
    async def test_llm_not_called_when_rule_matches(self, grandma_event, attendee_rule):
        llm = _llm()
        await classify_batch([grandma_event], [attendee_rule], llm)
        llm.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_llm_dict_answer_is_accepted(self):
        llm = AsyncMock(return_value={"category": "we-hosted", "confidence": 0.7})
        result = await classify_batch([make_event()], [], llm)
        assert result.classified[0].category == HostingCategory.WE_HOSTED

    @pytest.mark.asyncio
    async def test_llm_error_goes_to_review_and_batch_continues(self):
        events = [make_event("e1"), make_event("e2")]

        async def flaky(event):
            if event.id == "e1":
                raise SuggesterError("boom")
            return LLMClassification(category="they-hosted", confidence=0.9)

        result = await classify_batch(events, [], flaky)
        assert result.needs_review[0].event_id == "e1"
        assert result.needs_review[0].reason == ReviewReason.LLM_ERROR
        assert [h.calendar_event_id for h in result.classified] == ["e2"]

    @pytest.mark.asyncio
    async def test_unexpected_llm_exception_is_contained(self):
        llm = AsyncMock(side_effect=RuntimeError("network down"))
        result = await classify_batch([make_event()], [], llm)
        assert result.needs_review[0].reason == ReviewReason.LLM_ERROR

    @pytest.mark.asyncio
    async def test_llm_timeout_goes_to_review(self):
        async def slow(event):
            await asyncio.sleep(5)

        result = await classify_batch([make_event()], [], slow, llm_timeout=0.01)
        assert result.needs_review[0].reason == ReviewReason.LLM_TIMEOUT

    @pytest.mark.asyncio
    async def test_suggester_backend_timeout_goes_to_review_as_timeout(self):
        llm = AsyncMock(side_effect=SuggesterTimeoutError("provider timed out"))
        result = await classify_batch([make_event()], [], llm)
        assert result.needs_review[0].reason == ReviewReason.LLM_TIMEOUT

    @pytest.mark.asyncio
    async def test_invalid_llm_answer_goes_to_review(self):
        llm = AsyncMock(return_value={"category": "they-hosted", "confidence": 7})
        result = await classify_batch([make_event()], [], llm)
        assert result.needs_review[0].reason == ReviewReason.LLM_INVALID

    @pytest.mark.asyncio
    async def test_no_suggester_means_review(self):
        result = await classify_batch([make_event()], [])
        assert result.needs_review[0].reason == ReviewReason.LLM_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_output_keeps_input_order(self):
        events = [make_event(f"e{i}") for i in range(5)]

        async def staggered(event):
            await asyncio.sleep(0.01 * (5 - int(event.id[1:])))
            return LLMClassification(category="neutral", confidence=0.5)

        result = await classify_batch(events, [], staggered, max_concurrency=5)
        assert [h.calendar_event_id for h in result.classified] == [e.id for e in events]

    @pytest.mark.asyncio
    async def test_llm_family_id_used(self):
        llm = _llm("they-hosted", 0.8, family_id="fam-smith")
        result = await classify_batch([make_event()], [], llm, families={"fam-smith": "Smith"})
        assert result.classified[0].family_id == "fam-smith"
        assert result.classified[0].family_name == "Smith"


# ---------------------------------------------------------------------------
# Household hints
# ---------------------------------------------------------------------------


class TestHouseholdHints:
    @pytest.mark.asyncio
    async def test_address_match_never_classifies_below_rule_confidence(self):
        household = HouseholdContext(my_addresses=[Address("me", "Home", "9 Elm St")])
        llm = _llm("neutral", 0.6)
        result = await classify_batch(
            [make_event(location="9 Elm Street", attendees=())], [], llm, household=household,
        )
        hosting = result.classified[0]
        assert hosting.classification_method == ClassificationMethod.AUTO_LLM
        assert hosting.category == HostingCategory.NEUTRAL
        assert hosting.confidence == 0.6
        llm.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_auto_rule_result_below_full_confidence(self):
        smiths = Family("fam-smith", "Smith", addresses=[Address("a1", "Home", "123 Oak Street")])
        household = HouseholdContext(
            my_addresses=[Address("me", "Home", "9 Elm Road")],
            families=[smiths],
            neutral_patterns=["park"],
        )
        events = [
            make_event("e-ours", location="9 Elm Rd."),
            make_event("e-theirs"),
            make_event("e-park", location="Central Park"),
        ]
        result = await classify_batch(events, [], _llm("they-hosted", 0.7), household=household)
        assert len(result.classified) == 3
        for hosting in result.classified:
            if hosting.classification_method == ClassificationMethod.AUTO_RULE:
                assert hosting.confidence == 1.0
            assert hosting.matched_rule_id is None

    @pytest.mark.asyncio
    async def test_hint_attached_to_review_when_llm_unavailable(self):
        household = HouseholdContext(my_addresses=[Address("me", "Home", "9 Elm Road")])
        result = await classify_batch([make_event(location="9 Elm Rd.")], [], household=household)
        assert result.classified == []
        item = result.needs_review[0]
        assert item.reason == ReviewReason.LLM_UNAVAILABLE
        assert item.suggested_category == HostingCategory.WE_HOSTED
        assert item.hint == "Matched our address: Home"

    @pytest.mark.asyncio
    async def test_hint_attached_to_review_when_llm_fails(self):
        smiths = Family("fam-smith", "Smith", addresses=[Address("a1", "Home", "123 Oak Street, Apt 4")])
        household = HouseholdContext(families=[smiths])
        llm = AsyncMock(side_effect=SuggesterError("down"))
        result = await classify_batch([make_event()], [], llm, household=household)
        item = result.needs_review[0]
        assert item.reason == ReviewReason.LLM_ERROR
        assert item.suggested_category == HostingCategory.THEY_HOSTED
        assert item.suggested_family_id == "fam-smith"

    @pytest.mark.asyncio
    async def test_neutral_venue_hint(self):
        household = HouseholdContext(neutral_patterns=["park"])
        result = await classify_batch([make_event(location="Central Park")], [], household=household)
        assert result.needs_review[0].suggested_category == HostingCategory.NEUTRAL

    @pytest.mark.asyncio
    async def test_no_hint_without_household(self):
        result = await classify_batch([make_event()], [])
        item = result.needs_review[0]
        assert item.suggested_category is None
        assert item.hint == ""

    @pytest.mark.asyncio
    async def test_rules_take_precedence_over_hints(self, grandma_event, attendee_rule):
        household = HouseholdContext(my_addresses=[Address("me", "Home", "123 Oak St")])
        result = await classify_batch([grandma_event], [attendee_rule], household=household)
        assert result.classified[0].category == HostingCategory.THEY_HOSTED
        assert result.classified[0].confidence == 1.0


# ---------------------------------------------------------------------------
# Manual classification & reclassification
# ---------------------------------------------------------------------------


class TestManualClassification:
    def test_classify_manually(self, grandma_event):
        hosting = classify_manually(grandma_event, "we-hosted", "fam-smith", "Smith", notes="Pizza")
        assert hosting.classification_method == ClassificationMethod.MANUAL
        assert hosting.category == HostingCategory.WE_HOSTED
        assert hosting.confidence == 1.0
        assert hosting.family_name == "Smith"
        assert hosting.calendar_event_id == grandma_event.id

    @pytest.mark.asyncio
    async def test_manual_classification_is_kept(self, grandma_event, attendee_rule):
        manual = make_hosting_event(
            "h-manual", calendar_event_id=grandma_event.id,
            category=HostingCategory.WE_HOSTED,
        )
        result = await classify_batch([grandma_event], [attendee_rule], existing=[manual])
        assert result.classified == [manual]
        assert attendee_rule.match_count == 0

    @pytest.mark.asyncio
    async def test_explicit_reclassify_overrides_manual_and_keeps_id(self, grandma_event, attendee_rule):
        manual = make_hosting_event(
            "h-manual", calendar_event_id=grandma_event.id,
            category=HostingCategory.WE_HOSTED,
        )
        result = await classify_batch(
            [grandma_event], [attendee_rule], existing=[manual], reclassify={grandma_event.id},
        )
        hosting = result.classified[0]
        assert hosting.id == "h-manual"
        assert hosting.category == HostingCategory.THEY_HOSTED
        assert hosting.classification_method == ClassificationMethod.AUTO_RULE

    @pytest.mark.asyncio
    async def test_auto_classification_is_reclassified_with_same_id(self, grandma_event, attendee_rule):
        earlier = make_hosting_event(
            "h-auto", calendar_event_id=grandma_event.id,
            classification_method=ClassificationMethod.AUTO_LLM, confidence=0.3,
            category=HostingCategory.NEUTRAL,
        )
        result = await classify_batch([grandma_event], [attendee_rule], existing=[earlier])
        assert result.classified[0].id == "h-auto"
        assert result.classified[0].classification_method == ClassificationMethod.AUTO_RULE

    def test_add_manual_event_without_calendar_event(self):
        hosting = add_manual_event(
            "  BBQ at our place ", "2026-01-10", "we-hosted", "fam-smith", "Smith",
            location=" 9 Elm Rd ", notes=" Burgers ",
        )
        assert hosting.calendar_event_id is None
        assert hosting.classification_method == ClassificationMethod.MANUAL
        assert hosting.confidence == 1.0
        assert hosting.category == HostingCategory.WE_HOSTED
        assert (hosting.title, hosting.location, hosting.notes) == ("BBQ at our place", "9 Elm Rd", "Burgers")
        assert hosting.family_id == "fam-smith"
        assert hosting.id

    @pytest.mark.parametrize("title, date, family_id, missing", [
        ("   ", "2026-01-10", "fam-smith", "title"),
        ("BBQ", "", "fam-smith", "date"),
        ("BBQ", "2026-01-10", "", "family_id"),
    ])
    def test_add_manual_event_requires_fields(self, title, date, family_id, missing):
        with pytest.raises(ValueError, match=missing):
            add_manual_event(title, date, "we-hosted", family_id)

    def test_manual_event_counts_in_stats_and_not_as_unclassified(self):
        hosting = add_manual_event("BBQ", "2026-01-10", "we-hosted", "fam-smith")
        assert unclassified_events([make_event("e1")], [hosting])[0].id == "e1"
        assert compute_stats("fam-smith", [hosting]).we_hosted_count == 1

    def test_unclassified_events(self):
        events = [make_event("e1"), make_event("e2")]
        done = [make_hosting_event(calendar_event_id="e1")]
        assert [e.id for e in unclassified_events(events, done)] == ["e2"]


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    @pytest.mark.asyncio
    async def test_partial_results_survive_cancellation(self, attendee_rule):
        rule_event = make_event("e-rule")
        llm_event = make_event("e-llm", attendees=(), title="Catch-up")
        started = asyncio.Event()

        async def hang(event):
            started.set()
            await asyncio.sleep(60)

        partial = BatchResult()
        task = asyncio.create_task(classify_batch(
            [rule_event, llm_event], [attendee_rule], hang, result=partial,
        ))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert [h.calendar_event_id for h in partial.classified] == ["e-rule"]
