"""REST API endpoints for stale alerts and notification read state.

The deal set is owned by the hosted backend, so the staleness endpoints
take the caller's current deal snapshot in the request body and return
the computed buckets together with each alert's read flag. Read-state
endpoints operate on the authenticated user's markers.
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from src.dealdesk.api.deps import enforce_rate_limit, get_read_tracker
from src.dealdesk.config import get_settings
from src.dealdesk.notifications.schemas import NotificationSource, ReadItem
from src.dealdesk.notifications.tracker import NotificationReadTracker
from src.dealdesk.staleness import (
    AlertSeverity,
    Deal,
    StalenessThresholds,
    aggregate,
    stale_deal_alerts,
)

router = APIRouter(prefix="/notifications", tags=["notifications"])


# ── Request Schemas ──────────────────────────────────────────────────────────


class StaleLendersRequest(BaseModel):
    """Deal snapshot plus optional per-user thresholds."""

    deals: list[Deal] = Field(default_factory=list)
    thresholds: StalenessThresholds | None = None
    now: datetime | None = None


class StaleDealsRequest(BaseModel):
    """Deal snapshot plus optional staleness cut-off in days."""

    model_config = ConfigDict(populate_by_name=True)

    deals: list[Deal] = Field(default_factory=list)
    stale_deal_days: int | None = Field(default=None, ge=0, alias="staleDealsDays")
    now: datetime | None = None


class ReadItemsRequest(BaseModel):
    """Items to acknowledge, in ledger shape."""

    items: list[ReadItem] = Field(default_factory=list)


# ── Response Schemas ─────────────────────────────────────────────────────────


class StaleLenderAlertResponse(BaseModel):
    deal_id: str
    display_name: str
    stale_lender_count: int
    max_days_since_update: int
    is_read: bool


class StaleLendersResponse(BaseModel):
    """Disjoint critical and warning buckets."""

    critical: list[StaleLenderAlertResponse]
    warning: list[StaleLenderAlertResponse]
    total: int
    unread: int
    warning_days: int
    critical_days: int


class StaleDealAlertResponse(BaseModel):
    deal_id: str
    display_name: str
    days_since_update: int
    severity: AlertSeverity
    is_read: bool


class StaleDealsResponse(BaseModel):
    alerts: list[StaleDealAlertResponse]
    unread: int
    stale_deal_days: int


class ReadStateResponse(BaseModel):
    """The user's current read markers."""

    loaded: bool
    items: list[ReadItem]
    pending: int


class MarkReadResponse(BaseModel):
    marked: int
    pending: int


# ── Helpers ──────────────────────────────────────────────────────────────────


def _default_thresholds() -> StalenessThresholds:
    # Settings rejects a reversed default pair at load time
    settings = get_settings()
    return StalenessThresholds(
        warning_days=settings.DEFAULT_LENDER_YELLOW_DAYS,
        critical_days=settings.DEFAULT_LENDER_RED_DAYS,
    )


def _stale_alert_read(tracker: NotificationReadTracker, deal_id: str) -> bool:
    return tracker.is_read(NotificationSource.STALE_ALERT, deal_id)


# ── Staleness Endpoints ──────────────────────────────────────────────────────


@router.post("/stale-lenders", response_model=StaleLendersResponse)
async def stale_lenders(
    body: StaleLendersRequest,
    tracker: NotificationReadTracker = Depends(get_read_tracker),
) -> StaleLendersResponse:
    """Group deals by their most overdue actively tracked lender."""
    thresholds = body.thresholds or _default_thresholds()
    report = aggregate(body.deals, thresholds, now=body.now)

    def _entries(bucket):
        return [
            StaleLenderAlertResponse(
                **entry.model_dump(),
                is_read=_stale_alert_read(tracker, entry.deal_id),
            )
            for entry in bucket
        ]

    critical = _entries(report.critical)
    warning = _entries(report.warning)
    return StaleLendersResponse(
        critical=critical,
        warning=warning,
        total=report.total,
        unread=sum(1 for e in critical + warning if not e.is_read),
        warning_days=thresholds.warning_days,
        critical_days=thresholds.critical_days,
    )


@router.post("/stale-deals", response_model=StaleDealsResponse)
async def stale_deals(
    body: StaleDealsRequest,
    tracker: NotificationReadTracker = Depends(get_read_tracker),
) -> StaleDealsResponse:
    """Deals whose own record has not been updated for N days."""
    days = body.stale_deal_days
    if days is None:
        days = get_settings().DEFAULT_STALE_DEAL_DAYS

    alerts = [
        StaleDealAlertResponse(
            **alert.model_dump(),
            is_read=_stale_alert_read(tracker, alert.deal_id),
        )
        for alert in stale_deal_alerts(body.deals, days, now=body.now)
    ]
    return StaleDealsResponse(
        alerts=alerts,
        unread=sum(1 for a in alerts if not a.is_read),
        stale_deal_days=days,
    )


# ── Read-State Endpoints ─────────────────────────────────────────────────────


def _read_state(tracker: NotificationReadTracker) -> ReadStateResponse:
    items = sorted(tracker.read_items(), key=lambda i: (i.source_type, i.source_id))
    return ReadStateResponse(
        loaded=tracker.loaded,
        items=items,
        pending=len(tracker.pending()),
    )


@router.get("/reads", response_model=ReadStateResponse)
async def list_reads(
    tracker: NotificationReadTracker = Depends(get_read_tracker),
) -> ReadStateResponse:
    """Current read markers for the authenticated user."""
    return _read_state(tracker)


@router.post(
    "/reads", response_model=MarkReadResponse, dependencies=[Depends(enforce_rate_limit)]
)
async def mark_read(
    body: ReadItemsRequest,
    tracker: NotificationReadTracker = Depends(get_read_tracker),
) -> MarkReadResponse:
    """Acknowledge items. Idempotent; a failed ledger write is retried later."""
    await tracker.mark_read(body.items)
    return MarkReadResponse(marked=len(set(body.items)), pending=len(tracker.pending()))


@router.post(
    "/reads/all", response_model=MarkReadResponse, dependencies=[Depends(enforce_rate_limit)]
)
async def mark_all_read(
    body: ReadItemsRequest,
    tracker: NotificationReadTracker = Depends(get_read_tracker),
) -> MarkReadResponse:
    """Acknowledge every unread item among those currently displayed."""
    marked = await tracker.mark_all_read(body.items)
    return MarkReadResponse(marked=marked, pending=len(tracker.pending()))


@router.post("/reads/refresh", response_model=ReadStateResponse)
async def refresh_reads(
    tracker: NotificationReadTracker = Depends(get_read_tracker),
) -> ReadStateResponse:
    """Reload markers from the ledger, keeping anything marked locally."""
    await tracker.refresh()
    return _read_state(tracker)
