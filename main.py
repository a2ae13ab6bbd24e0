"""
Hosting Tracker — Entry Point.

`python main.py events.json rules.json [families.json]` classifies the events,
then prints the hosting events, the review queue and per-family stats as JSON.
The LLM fallback is used when LLM_API_KEY is set.
"""

import asyncio
import json
import logging
import sys
from dataclasses import asdict

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

from hosting_tracker.config import settings
from hosting_tracker.core.classifier import classify_batch
from hosting_tracker.core.effectiveness import RuleRegistry
from hosting_tracker.core.household import AddressFamilyResolver, HouseholdContext
from hosting_tracker.core.hosting_stats import compute_all_family_stats
from hosting_tracker.core.suggester import LLMEventSuggester
from hosting_tracker.data.models import (
    Address,
    ClassificationRule,
    Family,
    FamilyMember,
    NormalizedCalendarEvent,
)


def _load(path: str):
    with open(path, encoding="utf-8") as fh:
        return json.load(fh)


def _event(d: dict) -> NormalizedCalendarEvent:
    return NormalizedCalendarEvent(**{**d, "attendees": tuple(d.get("attendees", ()))})


def _family(d: dict) -> Family:
    return Family(
        id=d["id"],
        name=d["name"],
        addresses=[Address(**a) for a in d.get("addresses", [])],
        members=[FamilyMember(**m) for m in d.get("members", [])],
    )


def _household(path: str | None) -> tuple[list[Family], list[Address]]:
    """families.json is either a list of families or
    {"my_addresses": [...], "families": [...]}."""
    if not path:
        return [], []
    data = _load(path)
    if isinstance(data, list):
        data = {"families": data}
    families = [_family(d) for d in data.get("families", [])]
    my_addresses = [Address(**a) for a in data.get("my_addresses", [])]
    return families, my_addresses


async def run(events_path: str, rules_path: str, families_path: str | None) -> dict:
    events = [_event(d) for d in _load(events_path)]
    registry = RuleRegistry(ClassificationRule(**d) for d in _load(rules_path))
    families, my_addresses = _household(families_path)
    household = HouseholdContext(
        my_addresses=my_addresses,
        families=families,
        neutral_patterns=settings.NEUTRAL_PATTERNS,
    )

    suggester = None
    if settings.llm_enabled:
        suggester = LLMEventSuggester(registry.rules(), household.family_names(), household)

    result = await classify_batch(
        events,
        registry,
        suggester,
        family_resolver=AddressFamilyResolver(families),
        household=household,
    )
    return {
        "classified": [asdict(h) for h in result.classified],
        "needs_review": [asdict(r) for r in result.needs_review],
        "warnings": [asdict(w) for w in result.warnings],
        "stats": [asdict(s) for s in compute_all_family_stats(families, result.classified)],
    }


def main() -> None:
    if len(sys.argv) not in (3, 4):
        print(__doc__.strip(), file=sys.stderr)
        sys.exit(2)
    families_path = sys.argv[3] if len(sys.argv) == 4 else None
    output = asyncio.run(run(sys.argv[1], sys.argv[2], families_path))
    json.dump(output, sys.stdout, indent=2, ensure_ascii=False)
    print()


if __name__ == "__main__":
    main()
