"""Pydantic schemas for notification read state.

ReadItem is the (source_type, source_id) pair a user acknowledges; it is
frozen so it can live in sets. ReadMarker is the persisted row.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class NotificationSource(str, Enum):
    """Notification sources that track read state independently."""

    ACTIVITY = "activity"
    STALE_ALERT = "stale_alert"
    SYNC_REQUEST = "sync_request"
    MEMO_UPDATE = "memo_update"


class ReadItem(BaseModel):
    """A single acknowledgeable notification, keyed by source and id.

    Accepts the ledger's column names (``notification_type`` /
    ``notification_id``) as aliases.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    source_type: str = Field(alias="notification_type")
    source_id: str = Field(alias="notification_id")

    @classmethod
    def of(cls, source_type: str | NotificationSource, source_id: str) -> ReadItem:
        """Build a ReadItem from a source enum or raw string."""
        if isinstance(source_type, NotificationSource):
            source_type = source_type.value
        return cls(source_type=source_type, source_id=str(source_id))


class ReadMarker(BaseModel):
    """Persisted acknowledgment. Created once, never updated.

    Dumps by alias to the ledger row shape (``notification_type``,
    ``notification_id``, ``read_at``).
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    user_id: str
    source_type: str = Field(alias="notification_type")
    source_id: str = Field(alias="notification_id")
    marked_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), alias="read_at"
    )

    @classmethod
    def for_item(cls, user_id: str, item: ReadItem) -> ReadMarker:
        return cls(user_id=user_id, source_type=item.source_type, source_id=item.source_id)
