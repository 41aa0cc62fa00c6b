"""Staleness scans over an already-fetched deal snapshot.

Both scans are pure and recomputed on every call: thresholds and ``now``
may change between calls, so nothing is maintained incrementally.

Exports:
    aggregate: Group deals into critical / warning buckets by lender freshness.
    stale_deal_alerts: Deal-level alerts for deals whose own record is stale.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone

import structlog

from src.dealdesk.staleness.policy import classify, days_between
from src.dealdesk.staleness.schemas import (
    AlertSeverity,
    Deal,
    Freshness,
    StaleDealAlert,
    StaleDealEntry,
    StalenessReport,
    StalenessThresholds,
    as_utc,
)

logger = structlog.get_logger(__name__)

# Deal-level alerts escalate to destructive once the deal is this old
DESTRUCTIVE_AFTER_DAYS = 30

ARCHIVED_STATUS = "archived"


def aggregate(
    deals: Iterable[Deal],
    thresholds: StalenessThresholds,
    now: datetime | None = None,
) -> StalenessReport:
    """Scan deals and group them by their most severe stale lender.

    Only lenders that are actively tracked and carry an ``updated_at`` are
    considered; the rest are ignored rather than treated as stale. A deal
    lands in ``critical`` if any considered lender is critical, otherwise
    in ``warning`` if any is warning, otherwise it is omitted. Input order
    is preserved within each bucket.

    Args:
        deals: Deal snapshots in display order.
        thresholds: Warning / critical cut-offs for this computation.
        now: Reference time. Defaults to the current UTC time; a naive
            value is taken as UTC.

    Returns:
        StalenessReport with disjoint critical and warning buckets.
    """
    now = as_utc(now) or datetime.now(timezone.utc)
    report = StalenessReport()

    for deal in deals:
        worst = Freshness.FRESH
        stale_count = 0
        max_days = 0

        for lender in deal.lenders:
            if not lender.is_active or lender.updated_at is None:
                continue

            days = days_between(lender.updated_at, now)
            level = classify(days, thresholds.warning_days, thresholds.critical_days)
            if level == Freshness.FRESH:
                continue

            stale_count += 1
            max_days = max(max_days, days)
            if level == Freshness.CRITICAL:
                worst = Freshness.CRITICAL
            elif worst == Freshness.FRESH:
                worst = Freshness.WARNING

        if stale_count == 0:
            continue

        entry = StaleDealEntry(
            deal_id=deal.id,
            display_name=deal.display_name,
            stale_lender_count=stale_count,
            max_days_since_update=max_days,
        )
        if worst == Freshness.CRITICAL:
            report.critical.append(entry)
        else:
            report.warning.append(entry)

    logger.debug(
        "staleness.aggregated",
        critical=len(report.critical),
        warning=len(report.warning),
        warning_days=thresholds.warning_days,
        critical_days=thresholds.critical_days,
    )
    return report


def stale_deal_alerts(
    deals: Iterable[Deal],
    stale_deal_days: int,
    now: datetime | None = None,
) -> list[StaleDealAlert]:
    """Alerts for deals whose own record has not been updated recently.

    Archived deals and deals without an ``updated_at`` are skipped.
    """
    now = as_utc(now) or datetime.now(timezone.utc)
    alerts: list[StaleDealAlert] = []

    for deal in deals:
        if deal.status == ARCHIVED_STATUS or deal.updated_at is None:
            continue
        days = days_between(deal.updated_at, now)
        if days < stale_deal_days:
            continue
        alerts.append(
            StaleDealAlert(
                deal_id=deal.id,
                display_name=deal.display_name,
                days_since_update=days,
                severity=(
                    AlertSeverity.DESTRUCTIVE
                    if days >= DESTRUCTIVE_AFTER_DAYS
                    else AlertSeverity.WARNING
                ),
            )
        )
    return alerts
