"""User-scoped façade over ReadStateStore.

Each notification source (activity feed, sync-request queue, memo
updates, stale alerts) asks the same tracker whether its items are read
and marks them read. Ledger failures never reach the caller: a failed
load leaves the user with "nothing read", a failed mark-read keeps the
items read locally and is re-attempted on the next call for them.

Exports:
    NotificationReadTracker: is_read / mark_read for one user session.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping
from typing import Any

import structlog

from src.dealdesk.core.tasks import spawn_detached
from src.dealdesk.notifications.ledger import LedgerError
from src.dealdesk.notifications.schemas import NotificationSource, ReadItem
from src.dealdesk.notifications.store import ReadStateStore

logger = structlog.get_logger(__name__)

ItemLike = ReadItem | tuple[str, str] | Mapping[str, Any]


def _coerce(item: ItemLike) -> ReadItem:
    """Accept ReadItem, (type, id) tuples, or ledger-shaped dicts."""
    if isinstance(item, ReadItem):
        return item
    if isinstance(item, tuple):
        source_type, source_id = item
        return ReadItem.of(source_type, source_id)
    return ReadItem.model_validate(item)


class NotificationReadTracker:
    """Idempotent read tracking for one user.

    Args:
        store: Process-wide ReadStateStore.
        user_id: The session's user.
    """

    def __init__(self, store: ReadStateStore, user_id: str) -> None:
        self._store = store
        self._user_id = user_id

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def loaded(self) -> bool:
        """True once a snapshot load has succeeded for this user."""
        return self._store.is_loaded(self._user_id)

    async def load(self) -> bool:
        """Load the user's markers. Also used for on-demand refresh.

        Returns:
            True if the ledger snapshot was applied, False if the load
            failed and the tracker is running on local state only.
        """
        try:
            await self._store.load_all(self._user_id)
        except LedgerError as exc:
            logger.warning(
                "tracker.load_failed",
                user_id=self._user_id,
                error=str(exc),
            )
            return False
        return True

    refresh = load

    def is_read(self, source_type: str | NotificationSource, source_id: str) -> bool:
        """Whether the user has acknowledged the item. Never calls the ledger."""
        return self._store.is_read(self._user_id, ReadItem.of(source_type, source_id))

    def unread(self, items: Iterable[ItemLike]) -> list[ReadItem]:
        """Filter ``items`` down to those not yet read, preserving order."""
        result: list[ReadItem] = []
        for raw in items:
            item = _coerce(raw)
            if not self._store.is_read(self._user_id, item):
                result.append(item)
        return result

    def unread_count(self, items: Iterable[ItemLike]) -> int:
        return len(self.unread(items))

    def read_items(self) -> frozenset[ReadItem]:
        return self._store.snapshot(self._user_id)

    def pending(self) -> frozenset[ReadItem]:
        """Items read locally whose ledger write has not been confirmed."""
        return self._store.pending(self._user_id)

    async def mark_read(self, items: Iterable[ItemLike]) -> None:
        """Acknowledge ``items``. Safe to call redundantly or concurrently."""
        coerced = [_coerce(item) for item in items]
        try:
            await self._store.mark_read(self._user_id, coerced)
        except LedgerError as exc:
            logger.warning(
                "tracker.mark_read_failed",
                user_id=self._user_id,
                count=len(coerced),
                error=str(exc),
            )

    async def mark_all_read(self, items: Iterable[ItemLike]) -> int:
        """Acknowledge every unread item in ``items``.

        Returns:
            Number of items that were unread before the call.
        """
        pending = self.unread(items)
        if pending:
            await self.mark_read(pending)
        return len(pending)

    def mark_read_detached(self, items: Iterable[ItemLike]) -> asyncio.Task:
        """Fire-and-forget variant of mark_read for UI click handlers."""
        coerced = [_coerce(item) for item in items]
        return spawn_detached(
            self.mark_read(coerced),
            name=f"mark_read:{self._user_id}",
        )
