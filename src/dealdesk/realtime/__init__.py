"""Realtime insert feed and the merge channel that consumes it.

Exports:
    NotificationEvent: One delivered insert event.
    FeedFilter: Equality filter scoping a subscription.
    SubscriptionState: Channel lifecycle states.
    RealtimeFeed / RedisRealtimeFeed: Per-table insert streams.
    RealtimeMergeChannel: Merges new records newest-first into a caller list.
    ChannelClosedError: Raised when re-subscribing a closed channel.
"""

from __future__ import annotations

from src.dealdesk.realtime.channel import ChannelClosedError, RealtimeMergeChannel
from src.dealdesk.realtime.feed import FeedSubscription, RealtimeFeed, RedisRealtimeFeed
from src.dealdesk.realtime.schemas import FeedFilter, NotificationEvent, SubscriptionState

__all__ = [
    "ChannelClosedError",
    "FeedFilter",
    "FeedSubscription",
    "NotificationEvent",
    "RealtimeFeed",
    "RealtimeMergeChannel",
    "RedisRealtimeFeed",
    "SubscriptionState",
]
