"""Rate-limit verdicts and gate states.

Wire shape of the decision endpoint:
    request  {"path": str}
    response {"allowed": bool, "retryAfter"?: int, "reason"?: str, "remaining"?: int}
"""

from __future__ import annotations

import math
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RateLimitReason(str, Enum):
    NONE = "none"
    RATE_LIMITED = "rate_limited"
    BOT_DETECTED = "bot_detected"


class GateState(str, Enum):
    """RateLimitGate lifecycle: checking -> allowed | blocked."""

    CHECKING = "checking"
    ALLOWED = "allowed"
    BLOCKED = "blocked"


class RateLimitVerdict(BaseModel):
    """Outcome of one decision call. Valid only until the next check."""

    model_config = ConfigDict(populate_by_name=True)

    allowed: bool
    retry_after_seconds: int | None = Field(default=None, alias="retryAfter", ge=0)
    reason: RateLimitReason = RateLimitReason.NONE
    remaining: int | None = None

    @field_validator("retry_after_seconds", mode="before")
    @classmethod
    def _whole_seconds(cls, value: Any) -> Any:
        if isinstance(value, float):
            return math.ceil(value)
        return value

    @field_validator("reason", mode="before")
    @classmethod
    def _unknown_reason(cls, value: Any) -> Any:
        if value is None:
            return RateLimitReason.NONE
        try:
            return RateLimitReason(value)
        except ValueError:
            return RateLimitReason.NONE

    @classmethod
    def allow(cls, remaining: int | None = None) -> RateLimitVerdict:
        return cls(allowed=True, remaining=remaining)

    @classmethod
    def block(cls, reason: RateLimitReason, retry_after_seconds: int | None) -> RateLimitVerdict:
        return cls(allowed=False, reason=reason, retry_after_seconds=retry_after_seconds)

    def to_response(self) -> dict[str, Any]:
        """Serialize to the decision endpoint's camelCase wire shape."""
        body: dict[str, Any] = {"allowed": self.allowed}
        if self.retry_after_seconds is not None:
            body["retryAfter"] = self.retry_after_seconds
        if self.reason != RateLimitReason.NONE:
            body["reason"] = self.reason.value
        if self.remaining is not None:
            body["remaining"] = self.remaining
        return body


class RateLimitRequest(BaseModel):
    """Decision endpoint request body."""

    path: str = "/"
