"""RealtimeMergeChannel -- merges pushed insert events into a caller-owned list.

Lifecycle: idle -> connecting -> subscribed -> closed. The channel has no
backlog responsibility: the caller fetches its initial list before
subscribing, and only events generated after subscription are merged.

Each delivered event is applied exactly once per arrival, prepended so
the list stays newest-first. By default there is no deduplication
against the initial fetch, so an event racing that fetch can appear
twice; pass ``dedupe_by_id=True`` to skip records whose id is already
present.

Teardown is explicit. A channel that is never closed keeps its feed
subscription (and listener) alive indefinitely.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import Any

import structlog

from src.dealdesk.core.monitoring import realtime_events_merged_total
from src.dealdesk.realtime.feed import FeedSubscription, RealtimeFeed
from src.dealdesk.realtime.schemas import FeedFilter, NotificationEvent, SubscriptionState

logger = structlog.get_logger(__name__)

RecordListener = Callable[[dict[str, Any]], None]

_CLOSED = object()


class ChannelClosedError(RuntimeError):
    """Raised when subscribing a channel that has already been closed."""


class RealtimeMergeChannel:
    """Subscription that keeps ``records`` up to date with new inserts.

    Args:
        feed: Realtime feed to subscribe through.
        table: Table whose inserts are merged.
        records: Caller-owned list, newest first. Mutated in place.
        feed_filter: Optional equality filter (e.g. one deal's rows).
        dedupe_by_id: Skip records whose ``id`` is already in ``records``.
    """

    def __init__(
        self,
        feed: RealtimeFeed,
        table: str,
        records: list[dict[str, Any]],
        feed_filter: FeedFilter | None = None,
        dedupe_by_id: bool = False,
    ) -> None:
        self._feed = feed
        self._table = table
        self._records = records
        self._filter = feed_filter
        self._dedupe = dedupe_by_id
        self._state = SubscriptionState.IDLE
        self._subscription: FeedSubscription | None = None
        self._listeners: list[RecordListener] = []
        self._queue: asyncio.Queue | None = None
        self.merged_count = 0

    @property
    def state(self) -> SubscriptionState:
        return self._state

    @property
    def records(self) -> list[dict[str, Any]]:
        return self._records

    def add_listener(self, listener: RecordListener) -> None:
        """Call ``listener`` with each record after it has been merged."""
        self._listeners.append(listener)

    # ── Lifecycle ───────────────────────────────────────────────────────

    async def subscribe(self) -> None:
        """Open the feed subscription. No-op if already subscribed.

        Raises:
            ChannelClosedError: The channel was closed; create a new one.
        """
        if self._state == SubscriptionState.CLOSED:
            msg = f"Channel for '{self._table}' is closed"
            raise ChannelClosedError(msg)
        if self._state != SubscriptionState.IDLE:
            return

        self._state = SubscriptionState.CONNECTING
        try:
            subscription = await self._feed.subscribe(self._table, self._filter, self.on_insert)
        except Exception:
            self._state = SubscriptionState.IDLE
            raise

        if self._state == SubscriptionState.CLOSED:
            # Closed while connecting -- release what we just opened
            await self._feed.unsubscribe(subscription)
            return

        self._subscription = subscription
        self._state = SubscriptionState.SUBSCRIBED
        logger.info(
            "realtime.channel_subscribed",
            table=self._table,
            filter=str(self._filter) if self._filter else None,
        )

    async def close(self) -> None:
        """Remove the feed subscription and end ``events()``. Idempotent."""
        if self._state == SubscriptionState.CLOSED:
            return
        self._state = SubscriptionState.CLOSED

        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await self._feed.unsubscribe(subscription)
        if self._queue is not None:
            self._queue.put_nowait(_CLOSED)
        logger.info("realtime.channel_closed", table=self._table, merged=self.merged_count)

    async def __aenter__(self) -> RealtimeMergeChannel:
        await self.subscribe()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ── Merge ───────────────────────────────────────────────────────────

    def on_insert(self, event: NotificationEvent) -> bool:
        """Prepend the event's record to the list.

        Returns:
            True if the record was merged, False if it was skipped (closed
            channel, other table, filter mismatch, or duplicate id with
            dedupe enabled).
        """
        if self._state == SubscriptionState.CLOSED:
            return False
        if event.source_table != self._table or event.event_type != "INSERT":
            return False
        record = event.record
        if self._filter is not None and not self._filter.matches(record):
            return False
        if self._dedupe and event.record_id is not None and self._contains(event.record_id):
            logger.debug("realtime.channel_duplicate_skipped", record_id=event.record_id)
            return False

        self._records.insert(0, record)
        self.merged_count += 1
        realtime_events_merged_total.labels(table=self._table).inc()

        if self._queue is not None:
            self._queue.put_nowait(event)
        for listener in self._listeners:
            try:
                listener(record)
            except Exception:
                logger.exception("realtime.channel_listener_error", table=self._table)
        return True

    def _contains(self, record_id: str) -> bool:
        return any(str(existing.get("id")) == record_id for existing in self._records)

    # ── Message-passing view ────────────────────────────────────────────

    async def events(self) -> AsyncIterator[NotificationEvent]:
        """Iterate merged events until the channel closes.

        Only one iteration is allowed per channel; events merged before
        iteration starts are not replayed.
        """
        if self._queue is not None:
            msg = "events() can only be iterated once per channel"
            raise RuntimeError(msg)
        self._queue = asyncio.Queue()
        if self._state == SubscriptionState.CLOSED:
            return
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item
