"""Async HTTP client for the rate-limit decision endpoint.

No retries: a failed call is reported as RateLimitCheckError and the gate
fails open. A 429 is a normal "blocked" answer, not an error.
"""

from __future__ import annotations

from collections.abc import Mapping

import httpx
import structlog
from pydantic import ValidationError

from src.dealdesk.ratelimit.schemas import RateLimitVerdict

logger = structlog.get_logger(__name__)


class RateLimitCheckError(Exception):
    """The decision endpoint could not be reached or returned garbage."""


class RateLimitClient:
    """Calls ``POST {url}`` with ``{"path": ...}``.

    Args:
        url: Full decision endpoint URL.
        api_key: Optional key sent as ``apikey`` and bearer token.
        timeout: Request timeout in seconds.
    """

    def __init__(self, url: str, api_key: str = "", timeout: float = 5.0) -> None:
        self._url = url
        self._headers = {"Content-Type": "application/json"}
        if api_key:
            self._headers["apikey"] = api_key
            self._headers["Authorization"] = f"Bearer {api_key}"
        self._timeout = timeout

    async def decide(
        self, path: str, forward_headers: Mapping[str, str] | None = None
    ) -> RateLimitVerdict:
        """Ask the endpoint whether ``path`` may be entered.

        Args:
            path: Protected path being entered.
            forward_headers: Client headers (user-agent, x-forwarded-for, ...)
                the endpoint uses for bot and IP detection.

        Raises:
            RateLimitCheckError: Transport failure, unexpected status, or an
                unparseable body.
        """
        headers = {**(forward_headers or {}), **self._headers}
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self._url, json={"path": path}, headers=headers)
            if response.status_code not in (200, 429):
                response.raise_for_status()
            verdict = RateLimitVerdict.model_validate(response.json())
        except (httpx.HTTPError, ValueError, ValidationError) as exc:
            raise RateLimitCheckError(f"Rate-limit check failed for {path}: {exc}") from exc

        logger.debug(
            "rate_limit.client_verdict",
            path=path,
            allowed=verdict.allowed,
            reason=verdict.reason.value,
            retry_after=verdict.retry_after_seconds,
        )
        return verdict
