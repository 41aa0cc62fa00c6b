"""Detached (fire-and-forget) task helper.

The initiating call returns immediately. The task is attempted exactly
once; its failure is logged and never propagates to the caller. Live
tasks are tracked so that shutdown can cancel whatever is still pending,
and so the event loop keeps a strong reference to them.
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

_live_tasks: set[asyncio.Task] = set()


def spawn_detached(coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
    """Schedule ``coro`` on the running loop without awaiting it.

    Args:
        coro: Coroutine to run once.
        name: Task name used in logs.

    Returns:
        The scheduled task. Callers may keep it to cancel early; they
        must not rely on awaiting it for error propagation.
    """

    async def _runner() -> None:
        try:
            await coro
        except asyncio.CancelledError:
            logger.debug("detached_task.cancelled", task=name)
            raise
        except Exception as exc:
            logger.warning("detached_task.failed", task=name, error=str(exc), exc_info=True)

    task = asyncio.create_task(_runner(), name=name)
    _live_tasks.add(task)
    task.add_done_callback(_live_tasks.discard)
    return task


def pending_detached() -> int:
    """Number of detached tasks that have not finished yet."""
    return len(_live_tasks)


async def cancel_detached() -> None:
    """Cancel every pending detached task and wait for them to unwind."""
    tasks = list(_live_tasks)
    for task in tasks:
        task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
    logger.info("detached_task.cancelled_all", count=len(tasks))
