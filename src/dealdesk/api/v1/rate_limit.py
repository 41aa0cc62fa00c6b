"""Rate-limit decision endpoint.

Answers whether the calling client may enter a protected path. Blocked
verdicts are returned with status 429 and the same JSON body shape, so
clients read ``retryAfter`` from the body either way.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from src.dealdesk.ratelimit.decider import RateLimitDecider
from src.dealdesk.ratelimit.schemas import RateLimitRequest, RateLimitVerdict

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["rate-limit"])


@router.post("/rate-limit")
async def check_rate_limit(body: RateLimitRequest, request: Request) -> JSONResponse:
    """Decide for the caller identified by the request headers.

    Fails open when the decider is not initialized.
    """
    decider: RateLimitDecider | None = getattr(request.app.state, "rate_limit_decider", None)
    if decider is None:
        logger.warning("rate_limit.decider_unavailable", path=body.path)
        verdict = RateLimitVerdict.allow()
    else:
        headers = {k.lower(): v for k, v in request.headers.items()}
        verdict = await decider.decide(body.path, headers)

    return JSONResponse(
        status_code=status.HTTP_200_OK if verdict.allowed else status.HTTP_429_TOO_MANY_REQUESTS,
        content=verdict.to_response(),
    )
