"""Deal and lender freshness -- threshold policy and staleness aggregation.

Pure computation over externally supplied deal snapshots. Thresholds are
always passed in by the caller; nothing here reads preferences or the
clock implicitly except as a default for ``now``.
"""

from __future__ import annotations

from src.dealdesk.staleness.aggregator import aggregate, stale_deal_alerts
from src.dealdesk.staleness.policy import classify, days_between
from src.dealdesk.staleness.schemas import (
    AlertSeverity,
    Deal,
    Freshness,
    LenderUpdate,
    StaleDealAlert,
    StaleDealEntry,
    StalenessReport,
    StalenessThresholds,
    TrackingStatus,
)

__all__ = [
    "AlertSeverity",
    "Deal",
    "Freshness",
    "LenderUpdate",
    "StaleDealAlert",
    "StaleDealEntry",
    "StalenessReport",
    "StalenessThresholds",
    "TrackingStatus",
    "aggregate",
    "classify",
    "days_between",
    "stale_deal_alerts",
]
