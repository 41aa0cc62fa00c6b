"""Pydantic schemas for deal and lender freshness tracking.

Defines:
- Enums: TrackingStatus, Freshness, AlertSeverity
- Inputs: LenderUpdate, Deal, StalenessThresholds
- Outputs: StaleDealEntry, StalenessReport, StaleDealAlert

Input models accept the hosted backend's camelCase field names
(``trackingStatus``, ``updatedAt``, ``lenderUpdateYellowDays``) as well as
the snake_case attribute names.

Lender tracking statuses are kept as plain strings: only ``active`` is
considered by the staleness scan, and any other value (including ones the
backend adds later) simply excludes the lender. Timestamps that are empty
or cannot be parsed are dropped to ``None`` so a single bad row never
rejects the whole snapshot.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

import structlog
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

logger = structlog.get_logger(__name__)


# ── Enums ───────────────────────────────────────────────────────────────────


class TrackingStatus(str, Enum):
    """Known lender tracking statuses sent by the hosted backend."""

    ACTIVE = "active"
    ON_HOLD = "on-hold"
    ON_DECK = "on-deck"
    PASSED = "passed"


class Freshness(str, Enum):
    """Classification of a lender update against the configured thresholds."""

    FRESH = "fresh"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertSeverity(str, Enum):
    """Display severity for deal-level staleness alerts."""

    WARNING = "warning"
    DESTRUCTIVE = "destructive"


_datetime_adapter = TypeAdapter(datetime)


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive timestamps as UTC so arithmetic against ``now`` is safe."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _lenient_timestamp(value: object, field: str) -> datetime | None:
    """Parse a backend timestamp, returning None for missing or malformed input."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        parsed = _datetime_adapter.validate_python(value)
    except ValidationError:
        logger.warning("staleness.timestamp_unparseable", field=field, value=str(value)[:64])
        return None
    return as_utc(parsed)


# ── Inputs ──────────────────────────────────────────────────────────────────


class LenderUpdate(BaseModel):
    """One lender relationship on a deal, as last synced from upstream."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    tracking_status: str | None = Field(
        default=TrackingStatus.ACTIVE.value, alias="trackingStatus"
    )
    updated_at: datetime | None = Field(default=None, alias="updatedAt")

    @field_validator("tracking_status", mode="before")
    @classmethod
    def _coerce_tracking_status(cls, value: object) -> object:
        if isinstance(value, TrackingStatus):
            return value.value
        return value

    @field_validator("updated_at", mode="before")
    @classmethod
    def _parse_updated_at(cls, value: object) -> datetime | None:
        return _lenient_timestamp(value, "lender.updatedAt")

    @property
    def is_active(self) -> bool:
        return self.tracking_status == TrackingStatus.ACTIVE.value


class Deal(BaseModel):
    """A deal snapshot with its lender sub-records. Read-only to the engine."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    company: str
    lenders: list[LenderUpdate] = Field(default_factory=list)
    status: str | None = None
    updated_at: datetime | None = Field(default=None, alias="updatedAt")

    @field_validator("lenders", mode="before")
    @classmethod
    def _null_lenders(cls, value: object) -> object:
        return [] if value is None else value

    @field_validator("updated_at", mode="before")
    @classmethod
    def _parse_updated_at(cls, value: object) -> datetime | None:
        return _lenient_timestamp(value, "deal.updatedAt")

    @property
    def display_name(self) -> str:
        return self.company


class StalenessThresholds(BaseModel):
    """The two user-configured cut-offs, in whole days.

    Supplied by the caller on every computation; never read from ambient
    storage. ``warning_days`` must not exceed ``critical_days``: a reversed
    pair would classify every stale lender as critical and silently hide
    the yellow alerts the user asked for.
    """

    model_config = ConfigDict(populate_by_name=True)

    warning_days: int = Field(ge=0, alias="lenderUpdateYellowDays")
    critical_days: int = Field(ge=0, alias="lenderUpdateRedDays")

    @model_validator(mode="after")
    def _validate_order(self) -> StalenessThresholds:
        if self.warning_days > self.critical_days:
            msg = (
                f"warning_days ({self.warning_days}) must not exceed "
                f"critical_days ({self.critical_days})"
            )
            raise ValueError(msg)
        return self


# ── Outputs ─────────────────────────────────────────────────────────────────


class StaleDealEntry(BaseModel):
    """One deal in a staleness bucket."""

    deal_id: str
    display_name: str
    stale_lender_count: int
    max_days_since_update: int


class StalenessReport(BaseModel):
    """Grouped result of a staleness scan. Buckets are disjoint."""

    critical: list[StaleDealEntry] = Field(default_factory=list)
    warning: list[StaleDealEntry] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.critical) + len(self.warning)


class StaleDealAlert(BaseModel):
    """Deal-level alert: the deal record itself has not been touched."""

    deal_id: str
    display_name: str
    days_since_update: int
    severity: AlertSeverity
