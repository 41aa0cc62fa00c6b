"""Notification read state -- ledger, process-wide store, per-user tracker.

Exports:
    NotificationSource: Enum of sources that track read state.
    ReadItem: Frozen (source_type, source_id) pair.
    ReadMarker: Persisted acknowledgment.
    ReadMarkerLedger / SqlReadMarkerLedger / RestReadMarkerLedger: Remote ledgers.
    LedgerError: Raised by ledgers on transport or database failure.
    ReadStateStore: Process-wide read-state cache.
    NotificationReadTracker: Idempotent is_read / mark_read for one user.
"""

from __future__ import annotations

from src.dealdesk.notifications.ledger import (
    LedgerError,
    ReadMarkerLedger,
    RestReadMarkerLedger,
    SqlReadMarkerLedger,
)
from src.dealdesk.notifications.schemas import NotificationSource, ReadItem, ReadMarker
from src.dealdesk.notifications.store import ReadStateStore
from src.dealdesk.notifications.tracker import NotificationReadTracker

__all__ = [
    "LedgerError",
    "NotificationReadTracker",
    "NotificationSource",
    "ReadItem",
    "ReadMarker",
    "ReadMarkerLedger",
    "ReadStateStore",
    "RestReadMarkerLedger",
    "SqlReadMarkerLedger",
]
