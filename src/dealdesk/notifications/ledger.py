"""Read-marker ledger -- the remote, upsert-capable store behind ReadStateStore.

Every ledger implements ReadMarkerLedger:
- fetch_all: full scan of one user's markers (used on session load)
- upsert: batched insert keyed by (user_id, notification_type,
  notification_id), ignoring rows that already exist

Two backends:
- SqlReadMarkerLedger: direct PostgreSQL via SQLAlchemy (ON CONFLICT DO NOTHING)
- RestReadMarkerLedger: hosted PostgREST-style backend via httpx

Neither backend retries. Any transport, connection, database or payload
failure is raised as LedgerError so callers decide how to degrade.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, Callable, Iterable

import httpx
import structlog
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.dealdesk.notifications.models import NotificationReadModel
from src.dealdesk.notifications.schemas import ReadItem, ReadMarker

logger = structlog.get_logger(__name__)

CONFLICT_KEY = ("user_id", "notification_type", "notification_id")


class LedgerError(Exception):
    """The read-marker ledger could not be reached or rejected the request."""


def marker_rows(
    user_id: str, items: Iterable[ReadItem], mode: str = "python"
) -> list[dict]:
    """Ledger rows for ``items``, stamped with the time they were marked."""
    return [
        ReadMarker.for_item(user_id, item).model_dump(by_alias=True, mode=mode)
        for item in items
    ]


class ReadMarkerLedger(ABC):
    """Abstract interface for read-marker persistence."""

    @abstractmethod
    async def fetch_all(self, user_id: str) -> set[ReadItem]:
        """Return every item the user has acknowledged."""
        ...

    @abstractmethod
    async def upsert(self, user_id: str, items: Iterable[ReadItem]) -> None:
        """Insert markers for ``items``; existing keys are left untouched."""
        ...


# ── PostgreSQL ──────────────────────────────────────────────────────────────


class SqlReadMarkerLedger(ReadMarkerLedger):
    """Ledger backed by the ``notification_reads`` table.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def fetch_all(self, user_id: str) -> set[ReadItem]:
        try:
            async for session in self._session_factory():
                stmt = select(
                    NotificationReadModel.notification_type,
                    NotificationReadModel.notification_id,
                ).where(NotificationReadModel.user_id == user_id)
                result = await session.execute(stmt)
                return {
                    ReadItem(source_type=row.notification_type, source_id=row.notification_id)
                    for row in result
                }
        except (SQLAlchemyError, OSError) as exc:
            raise LedgerError(f"Failed to load read markers: {exc}") from exc
        return set()

    async def upsert(self, user_id: str, items: Iterable[ReadItem]) -> None:
        rows = marker_rows(user_id, items)
        if not rows:
            return

        stmt = (
            pg_insert(NotificationReadModel)
            .values(rows)
            .on_conflict_do_nothing(index_elements=list(CONFLICT_KEY))
        )
        try:
            async for session in self._session_factory():
                await session.execute(stmt)
                await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            raise LedgerError(f"Failed to write read markers: {exc}") from exc


# ── Hosted REST backend ─────────────────────────────────────────────────────


class RestReadMarkerLedger(ReadMarkerLedger):
    """Ledger backed by the hosted backend's REST table API.

    Uses ``on_conflict`` with ``Prefer: resolution=ignore-duplicates`` so a
    repeated acknowledgment never creates a second row.

    Args:
        base_url: Backend root URL (``/rest/v1`` is appended).
        api_key: Service or user key sent as ``apikey`` and bearer token.
        timeout: Per-request timeout in seconds.
    """

    TABLE = "notification_reads"

    def __init__(self, base_url: str, api_key: str, timeout: float = 10.0) -> None:
        self._url = f"{base_url.rstrip('/')}/rest/v1/{self.TABLE}"
        self._headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        self._timeout = timeout

    def _client(self) -> httpx.AsyncClient:
        """Create a new httpx client with the ledger headers."""
        return httpx.AsyncClient(headers=self._headers, timeout=self._timeout)

    async def fetch_all(self, user_id: str) -> set[ReadItem]:
        try:
            async with self._client() as client:
                response = await client.get(
                    self._url,
                    params={
                        "select": "notification_type,notification_id",
                        "user_id": f"eq.{user_id}",
                    },
                )
                response.raise_for_status()
                return {ReadItem.model_validate(row) for row in response.json()}
        except httpx.HTTPError as exc:
            raise LedgerError(f"Failed to load read markers: {exc}") from exc
        except (ValueError, TypeError) as exc:
            # Body was not a JSON list of marker rows
            raise LedgerError(f"Malformed read markers response: {exc}") from exc

    async def upsert(self, user_id: str, items: Iterable[ReadItem]) -> None:
        rows = marker_rows(user_id, items, mode="json")
        if not rows:
            return

        try:
            async with self._client() as client:
                response = await client.post(
                    self._url,
                    params={"on_conflict": ",".join(CONFLICT_KEY)},
                    headers={"Prefer": "resolution=ignore-duplicates,return=minimal"},
                    json=rows,
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise LedgerError(f"Failed to write read markers: {exc}") from exc

        logger.debug("ledger.upserted", user_id=user_id, count=len(rows))
