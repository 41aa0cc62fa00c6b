"""FastAPI dependency injection for authentication and engine components.

Tokens are issued by the hosted auth service; this service only verifies
them and reads the user id from the ``sub`` claim. Protected routes run a
RateLimitGate against the configured decision endpoint before the handler.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status
from jose import JWTError, jwt

from src.dealdesk.config import get_settings
from src.dealdesk.notifications.store import ReadStateStore
from src.dealdesk.notifications.tracker import NotificationReadTracker
from src.dealdesk.ratelimit.client import RateLimitClient
from src.dealdesk.ratelimit.gate import RateLimitGate
from src.dealdesk.realtime.feed import RealtimeFeed

# Client headers the decision endpoint uses for bot and IP detection
FORWARDED_HEADERS = (
    "user-agent",
    "accept",
    "accept-language",
    "sec-ch-ua",
    "x-forwarded-for",
    "x-real-ip",
    "cf-connecting-ip",
)


async def get_current_user_id(request: Request) -> str:
    """Extract and validate the user id from a Bearer JWT.

    Raises:
        HTTPException(401): Missing, invalid, or subject-less token.
    """
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    settings = get_settings()
    try:
        payload = jwt.decode(
            auth_header[7:],
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_aud": False},
        )
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has no subject",
        )
    return str(user_id)


def get_read_state_store(request: Request) -> ReadStateStore:
    """Retrieve the process-wide ReadStateStore from app.state, 503 if absent."""
    store = getattr(request.app.state, "read_state_store", None)
    if store is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Notification read state not initialized",
        )
    return store


async def get_read_tracker(
    user_id: str = Depends(get_current_user_id),
    store: ReadStateStore = Depends(get_read_state_store),
) -> NotificationReadTracker:
    """Tracker for the current user, loading their snapshot on first use.

    A failed load is not an error here: the tracker starts from
    "nothing read" and the next request tries the load again.
    """
    tracker = NotificationReadTracker(store, user_id)
    if not store.is_loaded(user_id):
        await tracker.load()
    return tracker


def get_realtime_feed(request: Request) -> RealtimeFeed:
    """Retrieve the shared RealtimeFeed from app.state, 503 if absent."""
    feed = getattr(request.app.state, "realtime_feed", None)
    if feed is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Realtime feed not initialized",
        )
    return feed


def _forward_headers(request: Request) -> dict[str, str]:
    headers = {
        name: value
        for name, value in ((k.lower(), v) for k, v in request.headers.items())
        if name in FORWARDED_HEADERS
    }
    if "x-forwarded-for" not in headers and request.client is not None:
        headers["x-forwarded-for"] = request.client.host
    return headers


async def enforce_rate_limit(request: Request) -> None:
    """Gate the current path through the rate-limit decision endpoint.

    No endpoint configured means no gate. Decision failures are allowed
    through by the gate itself.

    Raises:
        HTTPException(429): The endpoint blocked this client for this path.
    """
    client: RateLimitClient | None = getattr(request.app.state, "rate_limit_client", None)
    if client is None:
        return

    async with RateLimitGate(
        client,
        request.url.path,
        forward_headers=_forward_headers(request),
        auto_countdown=False,
    ) as gate:
        verdict = gate.verdict

    if gate.is_allowed or verdict is None:
        return
    headers = {}
    if verdict.retry_after_seconds is not None:
        headers["Retry-After"] = str(verdict.retry_after_seconds)
    raise HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail=verdict.to_response(),
        headers=headers or None,
    )
