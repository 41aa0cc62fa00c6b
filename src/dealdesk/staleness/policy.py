"""Threshold classification for lender updates."""

from __future__ import annotations

from datetime import datetime, timedelta

from src.dealdesk.staleness.schemas import Freshness

_ONE_DAY = timedelta(days=1)


def classify(days_since_update: int, warning_days: int, critical_days: int) -> Freshness:
    """Classify a lender update as fresh, warning or critical.

    Boundaries are inclusive, so a lender sitting exactly on a threshold
    is already flagged. Critical is checked first.

    Args:
        days_since_update: Whole days since the lender was last updated.
        warning_days: Yellow cut-off.
        critical_days: Red cut-off.

    Returns:
        The matching Freshness level.
    """
    if days_since_update >= critical_days:
        return Freshness.CRITICAL
    if days_since_update >= warning_days:
        return Freshness.WARNING
    return Freshness.FRESH


def days_between(earlier: datetime, now: datetime) -> int:
    """Whole days elapsed from ``earlier`` to ``now``, rounded down, never negative."""
    return max(0, (now - earlier) // _ONE_DAY)
