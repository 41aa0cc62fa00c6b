"""Schemas for the realtime insert-event feed."""

from __future__ import annotations

import json
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class SubscriptionState(str, Enum):
    """Lifecycle of a RealtimeMergeChannel subscription."""

    IDLE = "idle"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    CLOSED = "closed"


class FeedFilter(BaseModel):
    """Equality filter scoping a subscription, e.g. ``deal_id=eq.<id>``."""

    column: str
    value: str

    def __str__(self) -> str:
        return f"{self.column}=eq.{self.value}"

    def matches(self, record: dict[str, Any]) -> bool:
        return str(record.get(self.column)) == self.value


class NotificationEvent(BaseModel):
    """One delivered insert event. Ephemeral: merged, then discarded.

    Attributes:
        source_table: Table the record was inserted into.
        event_type: Always ``INSERT``; other change types are not delivered.
        record: Opaque inserted row; carries at least ``id``.
    """

    source_table: str
    event_type: str = "INSERT"
    record: dict[str, Any] = Field(default_factory=dict)

    @property
    def record_id(self) -> str | None:
        value = self.record.get("id")
        return None if value is None else str(value)

    def to_message(self) -> str:
        """Serialize for the pub/sub wire."""
        return json.dumps(
            {
                "source_table": self.source_table,
                "event_type": self.event_type,
                "record": self.record,
            },
            default=str,
        )

    @classmethod
    def from_message(cls, raw: str | bytes) -> NotificationEvent:
        """Reverse of ``to_message()``."""
        return cls.model_validate(json.loads(raw))
