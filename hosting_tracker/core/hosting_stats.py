"""
Hosting Tracker — Hosting Stats Aggregator.

Folds a family's classified events into counts, last-hosted dates and a
status for the dashboard. Stats are always recomputed from events; nothing
here is stored.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Iterable

from hosting_tracker.config import settings
from hosting_tracker.data.models import (
    Family,
    FamilyHostingStats,
    HostingCategory,
    HostingEvent,
    HostingStatus,
)

logger = logging.getLogger(__name__)


def days_since(date_str: str | None, today: date | None = None) -> int | None:
    """Whole days from an ISO date (YYYY-MM-DD…) to today; None if absent or unparseable."""
    if not date_str:
        return None
    try:
        then = date.fromisoformat(date_str[:10])
    except ValueError:
        logger.warning("Unparseable date in hosting event: %r", date_str)
        return None
    return ((today or date.today()) - then).days


def compute_hosting_status(
    they_hosted_count: int,
    we_hosted_count: int,
    days_since_they_hosted: int | None,
    overdue_threshold_days: int,
) -> HostingStatus:
    """Overdue beats balance: a balanced family that hasn't hosted in ages is overdue."""
    if days_since_they_hosted is not None and days_since_they_hosted > overdue_threshold_days:
        return HostingStatus.OVERDUE

    diff = they_hosted_count - we_hosted_count
    if abs(diff) <= 1:
        return HostingStatus.BALANCED
    if diff > 1:
        # They've hosted more - we owe them
        return HostingStatus.WE_OWE
    return HostingStatus.THEY_OWE


def compute_stats(
    family_id: str,
    events: Iterable[HostingEvent],
    overdue_threshold_days: int | None = None,
    family_name: str = "",
    today: date | None = None,
) -> FamilyHostingStats:
    """Aggregate all HostingEvents for one family.

    Joins on family_id only. Dates are YYYY-MM-DD, so string max is date max.
    """
    threshold = settings.OVERDUE_THRESHOLD_DAYS if overdue_threshold_days is None else overdue_threshold_days

    counts = {category: 0 for category in HostingCategory}
    last: dict[HostingCategory, str | None] = {category: None for category in HostingCategory}
    for event in events:
        if event.family_id != family_id:
            continue
        category = HostingCategory(event.category)
        counts[category] += 1
        if event.date and (last[category] is None or event.date > last[category]):
            last[category] = event.date

    last_they = last[HostingCategory.THEY_HOSTED]
    days_since_they = days_since(last_they, today)
    status = compute_hosting_status(
        counts[HostingCategory.THEY_HOSTED],
        counts[HostingCategory.WE_HOSTED],
        days_since_they,
        threshold,
    )

    return FamilyHostingStats(
        family_id=family_id,
        family_name=family_name,
        they_hosted_count=counts[HostingCategory.THEY_HOSTED],
        we_hosted_count=counts[HostingCategory.WE_HOSTED],
        neutral_count=counts[HostingCategory.NEUTRAL],
        last_they_hosted=last_they,
        last_we_hosted=last[HostingCategory.WE_HOSTED],
        days_since_they_hosted=days_since_they,
        is_overdue=status == HostingStatus.OVERDUE,
        status=status,
    )


def compute_all_family_stats(
    families: Iterable[Family],
    events: Iterable[HostingEvent],
    overdue_threshold_days: int | None = None,
    today: date | None = None,
) -> list[FamilyHostingStats]:
    """One stats record per tracked family, in the order given."""
    events = list(events)
    return [
        compute_stats(family.id, events, overdue_threshold_days, family.name, today)
        for family in families
    ]


def filter_by_status(
    stats: Iterable[FamilyHostingStats], status: HostingStatus | str,
) -> list[FamilyHostingStats]:
    """Dashboard bucket: the families currently in the given status."""
    wanted = HostingStatus(status)
    return [s for s in stats if s.status == wanted]
