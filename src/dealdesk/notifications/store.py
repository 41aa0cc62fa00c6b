"""Process-wide cache of per-user read state, backed by a ReadMarkerLedger.

Three sets per user:
- confirmed: markers the ledger is known to hold (loaded or written)
- in_flight: markers with an upsert currently awaiting the ledger
- read: the local view -- confirmed plus every item ever requested

``read`` only grows. A mark-read request is added to it before the remote
write starts and stays there whether or not the write succeeds, so the
local view never regresses to unread. Items are only sent to the ledger
when they are neither confirmed nor in flight, which keeps concurrent and
repeated requests from issuing duplicate writes; an item whose write
failed is not confirmed and is re-sent on the next request for it.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable

import structlog

from src.dealdesk.core.monitoring import read_marker_writes_total
from src.dealdesk.notifications.ledger import LedgerError, ReadMarkerLedger
from src.dealdesk.notifications.schemas import ReadItem

logger = structlog.get_logger(__name__)


class ReadStateStore:
    """Per-user read-state cache shared by every notification source.

    Args:
        ledger: Remote ledger used for snapshot loads and batched upserts.
    """

    def __init__(self, ledger: ReadMarkerLedger) -> None:
        self._ledger = ledger
        self._read: defaultdict[str, set[ReadItem]] = defaultdict(set)
        self._confirmed: defaultdict[str, set[ReadItem]] = defaultdict(set)
        self._in_flight: defaultdict[str, set[ReadItem]] = defaultdict(set)
        self._loaded: set[str] = set()

    async def load_all(self, user_id: str) -> set[ReadItem]:
        """Fetch the user's full marker set from the ledger.

        The result is unioned into the local view, so a reload never drops
        items marked locally while the fetch was in flight.

        Raises:
            LedgerError: The ledger could not be read. Not retried.
        """
        remote = await self._ledger.fetch_all(user_id)
        self._confirmed[user_id] |= remote
        self._read[user_id] |= remote
        self._loaded.add(user_id)
        logger.info(
            "read_state.loaded",
            user_id=user_id,
            remote=len(remote),
            local=len(self._read[user_id]),
        )
        return set(self._read[user_id])

    def is_loaded(self, user_id: str) -> bool:
        """Whether a ledger snapshot has been applied for this user."""
        return user_id in self._loaded

    def is_read(self, user_id: str, item: ReadItem) -> bool:
        """In-memory lookup. Never calls the ledger."""
        return item in self._read[user_id]

    def snapshot(self, user_id: str) -> frozenset[ReadItem]:
        """Current local view for ``user_id``."""
        return frozenset(self._read[user_id])

    def pending(self, user_id: str) -> frozenset[ReadItem]:
        """Items marked locally that the ledger has not confirmed."""
        return frozenset(self._read[user_id] - self._confirmed[user_id])

    async def mark_read(self, user_id: str, items: Iterable[ReadItem]) -> int:
        """Mark ``items`` read for ``user_id``.

        Args:
            user_id: Owner of the markers.
            items: Items to acknowledge; duplicates are collapsed.

        Returns:
            Number of items sent to the ledger in this call.

        Raises:
            LedgerError: The batched upsert failed. The local view still
                contains every requested item.
        """
        requested = set(items)
        if not requested:
            return 0

        batch = requested - self._confirmed[user_id] - self._in_flight[user_id]
        self._read[user_id] |= requested
        if not batch:
            return 0

        self._in_flight[user_id] |= batch
        try:
            await self._ledger.upsert(user_id, batch)
        except LedgerError:
            read_marker_writes_total.labels(status="failure").inc()
            raise
        else:
            self._confirmed[user_id] |= batch
            read_marker_writes_total.labels(status="success").inc()
        finally:
            self._in_flight[user_id] -= batch

        logger.debug("read_state.marked", user_id=user_id, written=len(batch))
        return len(batch)

    def forget(self, user_id: str) -> None:
        """Drop the cached state for a user (session end)."""
        self._read.pop(user_id, None)
        self._confirmed.pop(user_id, None)
        self._in_flight.pop(user_id, None)
        self._loaded.discard(user_id)
