"""Read-marker persistence model.

One row per (user_id, notification_type, notification_id), enforced by a
unique constraint so concurrent upserts collapse to a single marker.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, String, UniqueConstraint, func, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.dealdesk.core.database import Base


class NotificationReadModel(Base):
    """A user's acknowledgment of a notification item."""

    __tablename__ = "notification_reads"
    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "notification_type",
            "notification_id",
            name="uq_notification_read_key",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    notification_type: Mapped[str] = mapped_column(String(50), nullable=False)
    notification_id: Mapped[str] = mapped_column(String(200), nullable=False)
    read_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
