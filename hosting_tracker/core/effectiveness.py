"""
Hosting Tracker — Rule Registry & Effectiveness Tracker.

The registry is the single owned store of classification rules. The pipeline
reads rules from it and records when a rule fires; user feedback flows back
through record_outcome(). Counters only grow and correct_count never exceeds
match_count.

Each rule has its own lock so concurrent feedback on the same rule can't lose
an increment; feedback on different rules never contends.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Iterable

from hosting_tracker.config import settings
from hosting_tracker.data.models import (
    ClassificationRule,
    HostingCategory,
    RuleType,
    generate_id,
)

logger = logging.getLogger(__name__)


def new_rule(
    name: str,
    rule_type: RuleType | str,
    pattern: str,
    category: HostingCategory | str,
    family_id: str | None = None,
    is_negative: bool = False,
    priority: int | None = None,
) -> ClassificationRule:
    """Build a fresh, enabled rule with zeroed counters."""
    return ClassificationRule(
        id=generate_id(),
        name=name,
        type=RuleType(rule_type),
        pattern=pattern,
        category=HostingCategory(category),
        family_id=family_id or None,
        is_negative=is_negative,
        priority=settings.DEFAULT_RULE_PRIORITY if priority is None else priority,
    )


def _apply_outcome(
    rule: ClassificationRule, was_correct: bool, count_match: bool
) -> ClassificationRule | None:
    """Return the rule with the outcome applied, or None if it must be ignored."""
    if rule.match_count == 0:
        logger.warning(
            "Ignoring outcome for rule %s (%s): it has never matched", rule.id, rule.name,
        )
        return None

    match_count = rule.match_count + 1 if count_match else rule.match_count
    correct_count = rule.correct_count
    if was_correct:
        if correct_count >= match_count:
            logger.warning(
                "Ignoring confirmation for rule %s: correct_count already equals match_count (%d)",
                rule.id, match_count,
            )
            return None
        correct_count += 1
    return replace(rule, match_count=match_count, correct_count=correct_count)


def record_outcome(
    rules: Iterable[ClassificationRule], rule_id: str, was_correct: bool,
) -> list[ClassificationRule]:
    """Functional form: return a new rule list with the user's verdict applied.

    The firing itself was already counted by the pipeline, so only
    correct_count can move here. Unknown ids leave the list unchanged.
    """
    updated = list(rules)
    for index, rule in enumerate(updated):
        if rule.id == rule_id:
            new = _apply_outcome(rule, was_correct, count_match=False)
            if new is not None:
                updated[index] = new
                logger.info(
                    "Rule %s outcome recorded (correct=%s): %d/%d",
                    rule_id, was_correct, new.correct_count, new.match_count,
                )
            return updated

    logger.warning("record_outcome: unknown rule id %s", rule_id)
    return updated


class RuleRegistry:
    """Owned, thread-safe store of ClassificationRules.

    Rules are held by reference, so counter updates are visible to whoever
    handed the rule objects in.
    """

    def __init__(self, rules: Iterable[ClassificationRule] = ()) -> None:
        self._rules: dict[str, ClassificationRule] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._structure_lock = threading.Lock()
        # (rule_id, decision_id) pairs whose firing was counted / judged
        self._counted: set[tuple[str, str]] = set()
        self._judged: set[tuple[str, str]] = set()
        for rule in rules:
            if rule.id in self._rules:
                logger.warning("Skipping duplicate rule id %s (%s)", rule.id, rule.name)
                continue
            self.add(rule)

    # -- structure ---------------------------------------------------------

    def add(self, rule: ClassificationRule) -> ClassificationRule:
        with self._structure_lock:
            if rule.id in self._rules:
                raise ValueError(f"Duplicate rule id: {rule.id}")
            self._rules[rule.id] = rule
            self._locks[rule.id] = threading.Lock()
        logger.info("Added rule %s (%s, priority %d)", rule.id, rule.name, rule.priority)
        return rule

    def delete(self, rule_id: str) -> bool:
        with self._structure_lock:
            removed = self._rules.pop(rule_id, None)
            self._locks.pop(rule_id, None)
        if removed is None:
            logger.warning("delete: unknown rule id %s", rule_id)
            return False
        logger.info("Deleted rule %s (%s)", rule_id, removed.name)
        return True

    def toggle(self, rule_id: str) -> bool | None:
        """Flip a rule's enabled flag; returns the new state, or None if unknown."""
        lock = self._locks.get(rule_id)
        if lock is None:
            logger.warning("toggle: unknown rule id %s", rule_id)
            return None
        with lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                logger.warning("toggle: rule %s was deleted", rule_id)
                return None
            rule.enabled = not rule.enabled
            return rule.enabled

    def get(self, rule_id: str) -> ClassificationRule | None:
        return self._rules.get(rule_id)

    def rules(self) -> list[ClassificationRule]:
        with self._structure_lock:
            return list(self._rules.values())

    def __len__(self) -> int:
        return len(self._rules)

    def __contains__(self, rule_id: object) -> bool:
        return rule_id in self._rules

    # -- counters ----------------------------------------------------------

    def record_match(self, rule_id: str, decision_id: str) -> bool:
        """Count a rule firing once per (rule, decision). Called by the pipeline."""
        lock = self._locks.get(rule_id)
        if lock is None:
            logger.warning("record_match: unknown rule id %s", rule_id)
            return False
        key = (rule_id, decision_id)
        with lock:
            if key in self._counted:
                return False
            rule = self._rules.get(rule_id)
            if rule is None:
                logger.warning("record_match: rule %s was deleted", rule_id)
                return False
            self._counted.add(key)
            rule.match_count += 1
        return True

    def record_outcome(
        self, rule_id: str, was_correct: bool, decision_id: str | None = None,
    ) -> bool:
        """Apply a user's confirm/override of an auto-rule classification.

        With a decision_id, each decision is judged at most once, and a
        decision the pipeline never counted gets its firing counted here.
        Returns True if any counter moved.
        """
        lock = self._locks.get(rule_id)
        if lock is None:
            logger.warning("record_outcome: unknown rule id %s", rule_id)
            return False

        with lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                logger.warning("record_outcome: rule %s was deleted", rule_id)
                return False
            count_match = False
            if decision_id is not None:
                key = (rule_id, decision_id)
                if key in self._judged:
                    logger.debug("Outcome for %s already recorded, skipping", key)
                    return False
                count_match = key not in self._counted

            updated = _apply_outcome(rule, was_correct, count_match)
            if updated is None:
                return False

            rule.match_count = updated.match_count
            rule.correct_count = updated.correct_count
            if decision_id is not None:
                self._counted.add((rule_id, decision_id))
                self._judged.add((rule_id, decision_id))

        logger.info(
            "Rule %s outcome recorded (correct=%s): %d/%d",
            rule_id, was_correct, rule.correct_count, rule.match_count,
        )
        return True

    def accuracy(self, rule_id: str) -> float | None:
        """correct_count / match_count, or None for unknown or never-fired rules."""
        rule = self._rules.get(rule_id)
        if rule is None or rule.match_count == 0:
            return None
        return rule.correct_count / rule.match_count
