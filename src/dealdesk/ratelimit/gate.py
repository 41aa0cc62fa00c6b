"""RateLimitGate -- wraps a protected entry point with a rate-limit check.

State machine: checking -> allowed | blocked. A blocked verdict with a
known retry-after starts a local countdown that decrements once per
second and re-checks when it reaches zero. A retry-after of 0 re-checks
on the first tick. Without a retry-after the gate stays blocked until
someone calls check() again.

The gate fails open: if the decision call errors for any reason, the
verdict is "allowed". Verdicts are snapshots, so when a manual check and
a countdown re-check overlap, whichever resolves last wins.

One gate per mount. Allowed verdicts are not shared between gates, so
every protected entry performs a fresh check. close() must be called
when the protected scope ends; it cancels the countdown timer.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Mapping
from typing import Protocol

import structlog

from src.dealdesk.core.monitoring import rate_limit_verdicts_total
from src.dealdesk.ratelimit.schemas import GateState, RateLimitVerdict

logger = structlog.get_logger(__name__)


class VerdictSource(Protocol):
    async def decide(
        self, path: str, forward_headers: Mapping[str, str] | None = None
    ) -> RateLimitVerdict: ...


class RateLimitGate:
    """Per-mount gate for one protected path.

    Args:
        source: Decision client (RateLimitClient or anything with ``decide``).
        path: Protected path this gate guards.
        forward_headers: Client headers passed through to the endpoint.
        tick_seconds: Countdown resolution. One tick decrements one second.
        auto_countdown: Run the countdown on an asyncio timer. Disable to
            drive it manually with tick().
    """

    def __init__(
        self,
        source: VerdictSource,
        path: str,
        forward_headers: Mapping[str, str] | None = None,
        tick_seconds: float = 1.0,
        auto_countdown: bool = True,
    ) -> None:
        self._source = source
        self._path = path
        self._forward_headers = dict(forward_headers or {})
        self._tick_seconds = tick_seconds
        self._auto_countdown = auto_countdown

        self._state = GateState.CHECKING
        self._verdict: RateLimitVerdict | None = None
        self._remaining: int | None = None
        self._countdown_task: asyncio.Task | None = None
        self._closed = False
        self.auto_rechecks = 0

    # ── Read-only view ──────────────────────────────────────────────────

    @property
    def path(self) -> str:
        return self._path

    @property
    def state(self) -> GateState:
        return self._state

    @property
    def verdict(self) -> RateLimitVerdict | None:
        return self._verdict

    @property
    def seconds_remaining(self) -> int | None:
        return self._remaining

    @property
    def is_allowed(self) -> bool:
        return self._state == GateState.ALLOWED

    # ── Checks ──────────────────────────────────────────────────────────

    async def check(self) -> RateLimitVerdict:
        """Fetch a fresh verdict and apply it.

        Never raises because of the decision call: errors are logged and
        treated as allowed.
        """
        self._state = GateState.CHECKING
        try:
            verdict = await self._source.decide(self._path, self._forward_headers)
        except Exception as exc:
            logger.warning("rate_limit.check_failed_open", path=self._path, error=str(exc))
            verdict = RateLimitVerdict.allow()
        self._apply(verdict)
        return verdict

    def _apply(self, verdict: RateLimitVerdict) -> None:
        self._verdict = verdict
        rate_limit_verdicts_total.labels(
            side="gate", outcome="allowed" if verdict.allowed else verdict.reason.value
        ).inc()

        if verdict.allowed:
            self._state = GateState.ALLOWED
            self._remaining = None
            self._stop_countdown()
            return

        self._state = GateState.BLOCKED
        self._remaining = verdict.retry_after_seconds
        self._stop_countdown()
        if self._remaining is not None and self._auto_countdown and not self._closed:
            self._countdown_task = asyncio.create_task(
                self._run_countdown(), name=f"rate_limit_countdown:{self._path}"
            )
        logger.info(
            "rate_limit.blocked",
            path=self._path,
            reason=verdict.reason.value,
            retry_after=self._remaining,
        )

    # ── Countdown ───────────────────────────────────────────────────────

    async def tick(self) -> bool:
        """Advance the countdown by one second.

        Returns:
            True if this tick reached zero and triggered a re-check.
        """
        if self._closed or self._state != GateState.BLOCKED or self._remaining is None:
            return False
        if self._remaining > 0:
            self._remaining -= 1
        if self._remaining > 0:
            return False

        self.auto_rechecks += 1
        logger.debug("rate_limit.countdown_elapsed", path=self._path)
        await self.check()
        return True

    async def _run_countdown(self) -> None:
        while True:
            await asyncio.sleep(self._tick_seconds)
            if await self.tick() or self._state != GateState.BLOCKED:
                return

    def _stop_countdown(self) -> None:
        task, self._countdown_task = self._countdown_task, None
        # A re-check issued from inside the countdown must not cancel itself
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    # ── Scope ───────────────────────────────────────────────────────────

    async def close(self) -> None:
        """Cancel the countdown timer. Idempotent."""
        self._closed = True
        task, self._countdown_task = self._countdown_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def __aenter__(self) -> RateLimitGate:
        await self.check()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
