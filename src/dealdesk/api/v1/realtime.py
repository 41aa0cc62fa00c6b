"""Server-Sent Events stream of new records for one table.

Each connection owns a RealtimeMergeChannel. Records inserted after the
subscription opens are streamed as they arrive; the caller fetches its
initial list separately. Every frame carries the record and, for
external-sync activity rows, the notice to surface for it. The channel
is closed when the client disconnects.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from src.dealdesk.api.deps import enforce_rate_limit, get_current_user_id, get_realtime_feed
from src.dealdesk.config import get_settings
from src.dealdesk.realtime.activity import to_notice
from src.dealdesk.realtime.channel import RealtimeMergeChannel
from src.dealdesk.realtime.feed import RealtimeFeed
from src.dealdesk.realtime.schemas import FeedFilter

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/realtime", tags=["realtime"])


def open_merge_channel(
    feed: RealtimeFeed,
    table: str,
    column: str | None = None,
    value: str | None = None,
) -> RealtimeMergeChannel:
    """Build an unsubscribed channel using the service's dedupe default."""
    feed_filter = FeedFilter(column=column, value=value) if column and value is not None else None
    return RealtimeMergeChannel(
        feed,
        table,
        records=[],
        feed_filter=feed_filter,
        dedupe_by_id=get_settings().REALTIME_DEDUPE_BY_ID,
    )


async def stream_records(
    channel: RealtimeMergeChannel, queue: asyncio.Queue[dict[str, Any]]
) -> AsyncIterator[str]:
    """Yield one SSE frame per merged record; close the channel on exit."""
    try:
        while True:
            record = await queue.get()
            notice = to_notice(record)
            frame = {
                "record": record,
                "notice": notice.model_dump(mode="json") if notice else None,
            }
            yield f"data: {json.dumps(frame, default=str)}\n\n"
    finally:
        await channel.close()


@router.get("/{table}/stream", dependencies=[Depends(enforce_rate_limit)])
async def stream_table(
    table: str,
    column: str | None = Query(default=None),
    value: str | None = Query(default=None),
    user_id: str = Depends(get_current_user_id),
    feed: RealtimeFeed = Depends(get_realtime_feed),
) -> StreamingResponse:
    """Stream inserts into ``table``, optionally scoped by ``column=value``."""
    channel = open_merge_channel(feed, table, column, value)
    queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
    # Registered before subscribing so nothing merged is missed
    channel.add_listener(queue.put_nowait)
    await channel.subscribe()
    logger.info("realtime.stream_opened", table=table, user_id=user_id)

    return StreamingResponse(
        stream_records(channel, queue),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        background=BackgroundTask(channel.close),
    )
