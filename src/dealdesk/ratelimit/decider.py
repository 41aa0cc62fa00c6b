"""Server-side rate-limit decisions for the ``/v1/rate-limit`` endpoint.

Per request, keyed by client IP and path:
1. Known search-engine crawlers are allowed outright.
2. Other bot user agents (or no user agent at all) are blocked for
   BOT_BLOCK seconds.
3. An active block answers ``rate_limited`` with the remaining TTL.
4. Otherwise the request is counted in a fixed window; exceeding the
   window budget blocks the (ip, path) pair for BLOCK seconds.

Counters and blocks live in Redis with TTLs, so no cleanup job is needed.
Any Redis failure fails open.
"""

from __future__ import annotations

import re
import time
from collections.abc import Mapping

import redis.asyncio as aioredis
import structlog

from src.dealdesk.core.monitoring import rate_limit_verdicts_total
from src.dealdesk.ratelimit.schemas import RateLimitReason, RateLimitVerdict

logger = structlog.get_logger(__name__)

BOT_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"bot", r"spider", r"crawl", r"scrape", r"curl", r"wget",
        r"python-requests", r"python-urllib", r"axios", r"node-fetch",
        r"headless", r"phantom", r"selenium", r"puppeteer", r"playwright",
        r"chrome-lighthouse", r"facebookexternalhit", r"whatsapp",
        r"bytespider", r"gptbot", r"ccbot", r"claudebot", r"anthropic",
    )
]

ALLOWED_BOTS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"googlebot", r"bingbot", r"slurp", r"duckduckbot")
]

# More suspicious header signals than this marks the client as a bot
SUSPICIOUS_BOT_THRESHOLD = 2


def classify_user_agent(user_agent: str | None) -> tuple[bool, bool]:
    """Return ``(is_bot, is_allowed_bot)`` for a user-agent string.

    A missing user agent is treated as a (disallowed) bot.
    """
    if not user_agent:
        return True, False
    if any(p.search(user_agent) for p in ALLOWED_BOTS):
        return True, True
    return any(p.search(user_agent) for p in BOT_PATTERNS), False


def suspicious_signals(headers: Mapping[str, str]) -> list[str]:
    """Header combinations that real browsers rarely produce."""
    issues: list[str] = []
    if not headers.get("accept-language"):
        issues.append("missing_accept_language")
    if not headers.get("accept"):
        issues.append("missing_accept")
    user_agent = headers.get("user-agent") or ""
    if "Chrome/" in user_agent and not headers.get("sec-ch-ua"):
        issues.append("missing_client_hints")
    return issues


def client_ip(headers: Mapping[str, str]) -> str:
    """Best-effort client IP behind proxies."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return headers.get("x-real-ip") or headers.get("cf-connecting-ip") or "unknown"


class RateLimitDecider:
    """Fixed-window rate limiter with bot detection.

    Args:
        redis: Async Redis client.
        window_seconds: Counting window length.
        max_requests: Requests allowed per window per (ip, path).
        block_seconds: Block applied when the window budget is exceeded.
        bot_block_seconds: Block applied to detected bots.
    """

    KEY_PREFIX = "ratelimit"

    def __init__(
        self,
        redis: aioredis.Redis,
        window_seconds: int = 60,
        max_requests: int = 30,
        block_seconds: int = 300,
        bot_block_seconds: int = 3600,
    ) -> None:
        self._redis = redis
        self._window = window_seconds
        self._max = max_requests
        self._block = block_seconds
        self._bot_block = bot_block_seconds

    def _block_key(self, ip: str, path: str) -> str:
        return f"{self.KEY_PREFIX}:block:{ip}:{path}"

    def _count_key(self, ip: str, path: str, now: float) -> str:
        window_start = int(now // self._window) * self._window
        return f"{self.KEY_PREFIX}:count:{ip}:{path}:{window_start}"

    async def decide(
        self,
        path: str,
        headers: Mapping[str, str],
        now: float | None = None,
    ) -> RateLimitVerdict:
        """Decide whether the caller identified by ``headers`` may enter ``path``.

        Args:
            path: Protected path; empty means "/".
            headers: Request headers with lower-case names.
            now: Epoch seconds, for tests. Defaults to time.time().
        """
        path = path or "/"
        now = time.time() if now is None else now
        ip = client_ip(headers)
        user_agent = headers.get("user-agent")

        is_bot, is_allowed_bot = classify_user_agent(user_agent)
        if is_allowed_bot:
            return self._record(RateLimitVerdict.allow(), ip, path)

        try:
            if is_bot:
                await self._redis.set(self._block_key(ip, path), "bot", ex=self._bot_block)
                return self._record(
                    RateLimitVerdict.block(RateLimitReason.BOT_DETECTED, self._bot_block),
                    ip,
                    path,
                )

            ttl = await self._redis.ttl(self._block_key(ip, path))
            if ttl and ttl > 0:
                return self._record(
                    RateLimitVerdict.block(RateLimitReason.RATE_LIMITED, ttl), ip, path
                )

            count_key = self._count_key(ip, path, now)
            count = await self._redis.incr(count_key)
            if count == 1:
                await self._redis.expire(count_key, self._window)

            if count > self._max:
                signals = suspicious_signals(headers)
                marker = "bot" if len(signals) > SUSPICIOUS_BOT_THRESHOLD else "rate"
                await self._redis.set(self._block_key(ip, path), marker, ex=self._block)
                return self._record(
                    RateLimitVerdict.block(RateLimitReason.RATE_LIMITED, self._block),
                    ip,
                    path,
                )
        except aioredis.RedisError as exc:
            logger.error("rate_limit.decider_store_error", ip=ip, path=path, error=str(exc))
            return self._record(RateLimitVerdict.allow(), ip, path)

        return self._record(RateLimitVerdict.allow(remaining=self._max - count), ip, path)

    @staticmethod
    def _record(verdict: RateLimitVerdict, ip: str, path: str) -> RateLimitVerdict:
        outcome = "allowed" if verdict.allowed else verdict.reason.value
        rate_limit_verdicts_total.labels(side="decider", outcome=outcome).inc()
        logger.info(
            "rate_limit.decided",
            ip=ip,
            path=path,
            allowed=verdict.allowed,
            reason=verdict.reason.value,
            retry_after=verdict.retry_after_seconds,
            remaining=verdict.remaining,
        )
        return verdict
