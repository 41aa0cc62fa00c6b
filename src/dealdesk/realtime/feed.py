"""Realtime insert-event feed over Redis pub/sub.

Producers publish each inserted row to the table-wide channel and to one
channel per filterable column value. Consumers subscribe to exactly one
channel: ``realtime:{table}`` or ``realtime:{table}:{column}=eq.{value}``.

Delivery is at-least-once from the consumer's point of view: pub/sub
does not replay, so events published before subscribe() returns are not
delivered, and a reconnect may surface duplicates from the producer.
Reconnection is this transport's job; consumers only see an absence of
events while it is down.
"""

from __future__ import annotations

import asyncio
import contextlib
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

import redis.asyncio as aioredis
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.dealdesk.realtime.schemas import FeedFilter, NotificationEvent

logger = structlog.get_logger(__name__)

EventHandler = Callable[[NotificationEvent], None]


def channel_name(table: str, feed_filter: FeedFilter | None = None) -> str:
    """Pub/sub channel for a table, optionally narrowed by an equality filter."""
    if feed_filter is None:
        return f"realtime:{table}"
    return f"realtime:{table}:{feed_filter}"


@dataclass(eq=False)
class FeedSubscription:
    """Handle returned by subscribe(); pass it back to unsubscribe()."""

    channel: str
    table: str
    handler: EventHandler
    pubsub: object | None = None
    task: asyncio.Task | None = field(default=None, repr=False)


class RealtimeFeed(ABC):
    """Abstract per-table insert-event stream."""

    @abstractmethod
    async def subscribe(
        self,
        table: str,
        feed_filter: FeedFilter | None,
        handler: EventHandler,
    ) -> FeedSubscription:
        """Start delivering new inserts on ``table`` to ``handler``."""
        ...

    @abstractmethod
    async def unsubscribe(self, subscription: FeedSubscription) -> None:
        """Stop delivery and release the subscription's resources."""
        ...

    @property
    @abstractmethod
    def active_subscriptions(self) -> int:
        """Number of subscriptions not yet unsubscribed."""
        ...


class RedisRealtimeFeed(RealtimeFeed):
    """RealtimeFeed backed by Redis pub/sub.

    Each subscription owns one PubSub connection and one listener task.

    Args:
        redis: Async Redis client (pool).
        poll_timeout: Seconds get_message() waits before looping.
        max_reconnect_attempts: Listener reconnect attempts before giving up.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        poll_timeout: float = 1.0,
        max_reconnect_attempts: int = 5,
    ) -> None:
        self._redis = redis
        self._poll_timeout = poll_timeout
        self._max_reconnect_attempts = max_reconnect_attempts
        self._subscriptions: set[FeedSubscription] = set()

    @property
    def active_subscriptions(self) -> int:
        return len(self._subscriptions)

    # ── Consumer side ───────────────────────────────────────────────────

    async def subscribe(
        self,
        table: str,
        feed_filter: FeedFilter | None,
        handler: EventHandler,
    ) -> FeedSubscription:
        channel = channel_name(table, feed_filter)
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)

        subscription = FeedSubscription(
            channel=channel, table=table, handler=handler, pubsub=pubsub
        )
        subscription.task = asyncio.create_task(
            self._listen(subscription), name=f"realtime_feed:{channel}"
        )
        self._subscriptions.add(subscription)
        logger.info("realtime.feed_subscribed", channel=channel)
        return subscription

    async def unsubscribe(self, subscription: FeedSubscription) -> None:
        if subscription not in self._subscriptions:
            return
        self._subscriptions.discard(subscription)

        if subscription.task is not None:
            subscription.task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await subscription.task

        pubsub = subscription.pubsub
        if pubsub is not None:
            try:
                await pubsub.unsubscribe(subscription.channel)
                await pubsub.aclose()
            except aioredis.ConnectionError as exc:
                logger.warning(
                    "realtime.feed_unsubscribe_failed",
                    channel=subscription.channel,
                    error=str(exc),
                )
        logger.info("realtime.feed_unsubscribed", channel=subscription.channel)

    async def close(self) -> None:
        """Unsubscribe everything still open (application shutdown)."""
        for subscription in list(self._subscriptions):
            await self.unsubscribe(subscription)

    async def _listen(self, subscription: FeedSubscription) -> None:
        """Listener loop with transport-level reconnection."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_reconnect_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception_type(aioredis.ConnectionError),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self._pump(subscription)
        except aioredis.ConnectionError as exc:
            logger.error(
                "realtime.feed_disconnected",
                channel=subscription.channel,
                error=str(exc),
            )

    async def _pump(self, subscription: FeedSubscription) -> None:
        pubsub = subscription.pubsub
        while True:
            message = await pubsub.get_message(
                ignore_subscribe_messages=True, timeout=self._poll_timeout
            )
            if message is None:
                continue
            self._dispatch(subscription, message.get("data"))

    @staticmethod
    def _dispatch(subscription: FeedSubscription, data: str | bytes | None) -> None:
        if data is None:
            return
        try:
            event = NotificationEvent.from_message(data)
        except ValueError as exc:
            logger.warning(
                "realtime.feed_malformed_message",
                channel=subscription.channel,
                error=str(exc),
            )
            return

        try:
            subscription.handler(event)
        except Exception:
            logger.exception(
                "realtime.feed_handler_error",
                channel=subscription.channel,
                record_id=event.record_id,
            )

    # ── Producer side ───────────────────────────────────────────────────

    async def publish(
        self,
        event: NotificationEvent,
        filter_columns: Iterable[str] = (),
    ) -> int:
        """Publish an insert event to its table channel and filter channels.

        Args:
            event: The insert event.
            filter_columns: Record columns subscribers may filter on.

        Returns:
            Total number of subscribers that received the message.
        """
        message = event.to_message()
        channels = [channel_name(event.source_table)]
        for column in filter_columns:
            value = event.record.get(column)
            if value is not None:
                channels.append(
                    channel_name(event.source_table, FeedFilter(column=column, value=str(value)))
                )

        delivered = 0
        for channel in channels:
            delivered += await self._redis.publish(channel, message)
        logger.debug(
            "realtime.feed_published",
            table=event.source_table,
            record_id=event.record_id,
            channels=len(channels),
            delivered=delivered,
        )
        return delivered
