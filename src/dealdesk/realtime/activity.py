"""Priority and titles for external-sync activity records.

Activity rows inserted by the external deal-sync integration carry an
``activity_type`` prefixed with ``flex_`` (or ``metadata.source ==
"flex"``). Merged activity records are turned into notices so the
activity feed can surface high-priority requests prominently.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel

EXTERNAL_SOURCE = "flex"
EXTERNAL_PREFIX = "flex_"


class ActivityPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


ACTIVITY_PRIORITY: dict[str, ActivityPriority] = {
    "flex_term_sheet_requested": ActivityPriority.HIGH,
    "flex_nda_requested": ActivityPriority.HIGH,
    "flex_info_requested": ActivityPriority.HIGH,
    "flex_file_downloaded": ActivityPriority.MEDIUM,
    "flex_deal_saved": ActivityPriority.MEDIUM,
    "flex_deal_shared": ActivityPriority.MEDIUM,
    "flex_deal_viewed": ActivityPriority.LOW,
}

ACTIVITY_TITLES: dict[str, str] = {
    "flex_deal_viewed": "Deal Viewed on FLEx",
    "flex_file_downloaded": "File Downloaded from FLEx",
    "flex_info_requested": "Information Requested",
    "flex_deal_saved": "Deal Saved on FLEx",
    "flex_deal_shared": "Deal Shared on FLEx",
    "flex_nda_requested": "NDA Requested",
    "flex_term_sheet_requested": "Term Sheet Requested",
}

# Display duration per priority, in seconds
DISPLAY_SECONDS: dict[ActivityPriority, int] = {
    ActivityPriority.HIGH: 10,
    ActivityPriority.MEDIUM: 5,
    ActivityPriority.LOW: 3,
}


class ActivityNotice(BaseModel):
    """A merged external activity, ready to show in the activity feed."""

    activity_id: str
    deal_id: str | None = None
    activity_type: str
    title: str
    description: str = ""
    priority: ActivityPriority
    display_seconds: int


def is_external_activity(record: dict[str, Any]) -> bool:
    metadata = record.get("metadata") or {}
    activity_type = record.get("activity_type") or ""
    return metadata.get("source") == EXTERNAL_SOURCE or activity_type.startswith(EXTERNAL_PREFIX)


def to_notice(record: dict[str, Any]) -> ActivityNotice | None:
    """Build a notice for an external activity record; None for anything else."""
    if not is_external_activity(record):
        return None
    activity_type = record.get("activity_type") or ""
    priority = ACTIVITY_PRIORITY.get(activity_type, ActivityPriority.LOW)
    return ActivityNotice(
        activity_id=str(record.get("id")),
        deal_id=record.get("deal_id"),
        activity_type=activity_type,
        title=ACTIVITY_TITLES.get(activity_type, "FLEx Activity"),
        description=record.get("description") or "",
        priority=priority,
        display_seconds=DISPLAY_SECONDS[priority],
    )
