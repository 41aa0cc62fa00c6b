"""Rate limiting -- decision endpoint logic, HTTP client, and per-mount gate.

Exports:
    RateLimitVerdict: Outcome of one decision (allowed / retry-after / reason).
    RateLimitReason: none | rate_limited | bot_detected.
    GateState: checking | allowed | blocked.
    RateLimitClient: Calls the decision endpoint; raises RateLimitCheckError.
    RateLimitGate: Fail-open gate with retry-after countdown.
    RateLimitDecider: Server-side fixed-window limiter with bot detection.
"""

from __future__ import annotations

from src.dealdesk.ratelimit.client import RateLimitCheckError, RateLimitClient
from src.dealdesk.ratelimit.decider import RateLimitDecider
from src.dealdesk.ratelimit.gate import RateLimitGate
from src.dealdesk.ratelimit.schemas import (
    GateState,
    RateLimitReason,
    RateLimitRequest,
    RateLimitVerdict,
)

__all__ = [
    "GateState",
    "RateLimitCheckError",
    "RateLimitClient",
    "RateLimitDecider",
    "RateLimitGate",
    "RateLimitReason",
    "RateLimitRequest",
    "RateLimitVerdict",
]
