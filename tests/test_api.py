"""Integration tests for the notification and rate-limit API endpoints.

Uses an in-memory read-marker ledger behind a real ReadStateStore on
app.state, httpx AsyncClient over ASGITransport, and dependency
overrides for authentication.
"""

from __future__ import annotations

from collections.abc import Iterable
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from jose import jwt
from pydantic import ValidationError

from src.dealdesk.api.deps import get_current_user_id
from src.dealdesk.api.middleware.logging import LoggingMiddleware
from src.dealdesk.api.v1 import health, notifications, rate_limit
from src.dealdesk.config import Settings, get_settings
from src.dealdesk.notifications import LedgerError, ReadItem, ReadMarkerLedger, ReadStateStore
from src.dealdesk.ratelimit import RateLimitCheckError, RateLimitReason, RateLimitVerdict


# ── In-Memory Test Double ────────────────────────────────────────────────────


class InMemoryReadMarkerLedger(ReadMarkerLedger):
    """Ledger keyed on (user, type, id) with optional fetch failure."""

    def __init__(self) -> None:
        self.rows: set[tuple[str, str, str]] = set()
        self.fail_fetch = False

    async def fetch_all(self, user_id: str) -> set[ReadItem]:
        if self.fail_fetch:
            raise LedgerError("ledger unavailable")
        return {ReadItem(source_type=t, source_id=i) for (u, t, i) in self.rows if u == user_id}

    async def upsert(self, user_id: str, items: Iterable[ReadItem]) -> None:
        for item in items:
            self.rows.add((user_id, item.source_type, item.source_id))


USER = "user-1"
NOW = "2026-03-01T12:00:00Z"


def _make_app() -> FastAPI:
    app = FastAPI()
    app.include_router(health.router)
    app.include_router(notifications.router, prefix="/v1")
    app.include_router(rate_limit.router, prefix="/v1")
    return app


def _deal(deal_id: str, lender_dates: list[str], updated_at: str | None = None) -> dict:
    return {
        "id": deal_id,
        "company": f"Company {deal_id}",
        "status": "active",
        "updatedAt": updated_at,
        "lenders": [{"trackingStatus": "active", "updatedAt": d} for d in lender_dates],
    }


@pytest_asyncio.fixture
async def client_and_ledger():
    """Test client with an in-memory ledger and mocked auth."""
    app = _make_app()
    ledger = InMemoryReadMarkerLedger()
    app.state.read_state_store = ReadStateStore(ledger)
    app.dependency_overrides[get_current_user_id] = lambda: USER

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client, ledger, app


# ── Stale Lender Endpoint ────────────────────────────────────────────────────


class TestStaleLenders:
    """POST /v1/notifications/stale-lenders."""

    @pytest.mark.asyncio
    async def test_buckets_with_explicit_thresholds(self, client_and_ledger):
        client, _, _ = client_and_ledger
        body = {
            "deals": [
                _deal("a", ["2026-02-19T12:00:00Z"]),
                _deal("b", ["2026-02-09T12:00:00Z", "2026-02-24T12:00:00Z"]),
                _deal("c", ["2026-02-28T12:00:00Z"]),
            ],
            "thresholds": {"lenderUpdateYellowDays": 7, "lenderUpdateRedDays": 14},
            "now": NOW,
        }

        response = await client.post("/v1/notifications/stale-lenders", json=body)

        assert response.status_code == 200
        data = response.json()
        assert [e["deal_id"] for e in data["warning"]] == ["a"]
        assert data["warning"][0]["max_days_since_update"] == 10
        assert [e["deal_id"] for e in data["critical"]] == ["b"]
        assert data["critical"][0]["max_days_since_update"] == 20
        assert data["critical"][0]["stale_lender_count"] == 1
        assert data["total"] == 2
        assert data["unread"] == 2

    @pytest.mark.asyncio
    async def test_default_thresholds_from_settings(self, client_and_ledger):
        client, _, _ = client_and_ledger
        settings = get_settings()

        response = await client.post(
            "/v1/notifications/stale-lenders",
            json={"deals": [_deal("a", ["2026-02-19T12:00:00Z"])], "now": NOW},
        )

        data = response.json()
        assert data["warning_days"] == settings.DEFAULT_LENDER_YELLOW_DAYS
        assert data["critical_days"] == settings.DEFAULT_LENDER_RED_DAYS

    @pytest.mark.asyncio
    async def test_reversed_thresholds_rejected(self, client_and_ledger):
        client, _, _ = client_and_ledger

        response = await client.post(
            "/v1/notifications/stale-lenders",
            json={
                "deals": [],
                "thresholds": {"lenderUpdateYellowDays": 20, "lenderUpdateRedDays": 10},
            },
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_backend_statuses_and_bad_timestamps_accepted(self, client_and_ledger):
        client, _, _ = client_and_ledger
        deal = _deal("a", ["2026-02-19T12:00:00Z"])
        deal["lenders"] += [
            {"trackingStatus": "passed", "updatedAt": "2026-01-01T00:00:00Z"},
            {"trackingStatus": "on-hold", "updatedAt": "2026-01-01T00:00:00Z"},
            {"trackingStatus": "active", "updatedAt": "not-a-date"},
            {"trackingStatus": "active", "updatedAt": ""},
        ]

        response = await client.post(
            "/v1/notifications/stale-lenders", json={"deals": [deal], "now": NOW}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["critical"] == []
        assert [e["deal_id"] for e in data["warning"]] == ["a"]
        assert data["warning"][0]["stale_lender_count"] == 1

    @pytest.mark.asyncio
    async def test_naive_now_is_utc(self, client_and_ledger):
        client, _, _ = client_and_ledger

        response = await client.post(
            "/v1/notifications/stale-lenders",
            json={"deals": [_deal("a", ["2026-02-19T12:00:00Z"])], "now": "2026-03-01T12:00:00"},
        )

        assert response.status_code == 200
        assert response.json()["warning"][0]["max_days_since_update"] == 10

    @pytest.mark.asyncio
    async def test_read_flag_follows_stale_alert_marker(self, client_and_ledger):
        client, ledger, _ = client_and_ledger
        body = {"deals": [_deal("a", ["2026-02-19T12:00:00Z"])], "now": NOW}

        await client.post(
            "/v1/notifications/reads",
            json={"items": [{"notification_type": "stale_alert", "notification_id": "a"}]},
        )
        response = await client.post("/v1/notifications/stale-lenders", json=body)

        data = response.json()
        assert data["warning"][0]["is_read"] is True
        assert data["unread"] == 0
        assert (USER, "stale_alert", "a") in ledger.rows


# ── Stale Deal Endpoint ──────────────────────────────────────────────────────


class TestStaleDeals:
    """POST /v1/notifications/stale-deals."""

    @pytest.mark.asyncio
    async def test_alerts_and_severity(self, client_and_ledger):
        client, _, _ = client_and_ledger
        body = {
            "deals": [
                _deal("fresh", [], updated_at="2026-02-25T12:00:00Z"),
                _deal("stale", [], updated_at="2026-02-14T12:00:00Z"),
                _deal("ancient", [], updated_at="2026-01-01T12:00:00Z"),
            ],
            "staleDealsDays": 14,
            "now": NOW,
        }

        response = await client.post("/v1/notifications/stale-deals", json=body)

        assert response.status_code == 200
        alerts = response.json()["alerts"]
        assert [a["deal_id"] for a in alerts] == ["stale", "ancient"]
        assert [a["severity"] for a in alerts] == ["warning", "destructive"]

    @pytest.mark.asyncio
    async def test_malformed_deal_timestamp_is_skipped(self, client_and_ledger):
        client, _, _ = client_and_ledger
        body = {
            "deals": [
                _deal("garbled", [], updated_at="yesterday-ish"),
                _deal("stale", [], updated_at="2026-02-14T12:00:00"),
            ],
            "staleDealsDays": 14,
            "now": "2026-03-01T12:00:00",
        }

        response = await client.post("/v1/notifications/stale-deals", json=body)

        assert response.status_code == 200
        assert [a["deal_id"] for a in response.json()["alerts"]] == ["stale"]

    @pytest.mark.asyncio
    async def test_default_days(self, client_and_ledger):
        client, _, _ = client_and_ledger

        response = await client.post("/v1/notifications/stale-deals", json={"deals": []})

        assert response.json()["stale_deal_days"] == get_settings().DEFAULT_STALE_DEAL_DAYS


# ── Read-State Endpoints ─────────────────────────────────────────────────────


class TestReadState:
    """GET/POST /v1/notifications/reads and friends."""

    @pytest.mark.asyncio
    async def test_list_reads_loads_from_ledger(self, client_and_ledger):
        client, ledger, _ = client_and_ledger
        ledger.rows.add((USER, "activity", "act-1"))
        ledger.rows.add(("someone-else", "activity", "act-2"))

        response = await client.get("/v1/notifications/reads")

        data = response.json()
        assert data["loaded"] is True
        assert data["items"] == [{"notification_type": "activity", "notification_id": "act-1"}]

    @pytest.mark.asyncio
    async def test_load_failure_degrades_to_empty(self, client_and_ledger):
        client, ledger, _ = client_and_ledger
        ledger.rows.add((USER, "activity", "act-1"))
        ledger.fail_fetch = True

        response = await client.get("/v1/notifications/reads")

        assert response.status_code == 200
        assert response.json()["loaded"] is False
        assert response.json()["items"] == []

        ledger.fail_fetch = False
        refreshed = await client.post("/v1/notifications/reads/refresh")
        assert refreshed.json()["loaded"] is True
        assert len(refreshed.json()["items"]) == 1

    @pytest.mark.asyncio
    async def test_mark_read_is_idempotent(self, client_and_ledger):
        client, ledger, _ = client_and_ledger
        item = {"notification_type": "sync_request", "notification_id": "r-1"}

        first = await client.post("/v1/notifications/reads", json={"items": [item, item]})
        second = await client.post("/v1/notifications/reads", json={"items": [item]})

        assert first.json() == {"marked": 1, "pending": 0}
        assert second.status_code == 200
        assert ledger.rows == {(USER, "sync_request", "r-1")}

    @pytest.mark.asyncio
    async def test_mark_all_read_counts_unread(self, client_and_ledger):
        client, _, _ = client_and_ledger
        items = [
            {"notification_type": "memo_update", "notification_id": "m-1"},
            {"notification_type": "memo_update", "notification_id": "m-2"},
        ]
        await client.post("/v1/notifications/reads", json={"items": items[:1]})

        response = await client.post("/v1/notifications/reads/all", json={"items": items})

        assert response.json()["marked"] == 1

    @pytest.mark.asyncio
    async def test_missing_store_returns_503(self, client_and_ledger):
        client, _, app = client_and_ledger
        app.state.read_state_store = None

        response = await client.get("/v1/notifications/reads")

        assert response.status_code == 503


# ── Authentication ───────────────────────────────────────────────────────────


class TestAuthentication:
    """Bearer token handling without the dependency override."""

    @pytest_asyncio.fixture
    async def client(self):
        app = _make_app()
        app.state.read_state_store = ReadStateStore(InMemoryReadMarkerLedger())
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac

    @pytest.mark.asyncio
    async def test_missing_token_is_401(self, client):
        response = await client.get("/v1/notifications/reads")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_invalid_token_is_401(self, client):
        response = await client.get(
            "/v1/notifications/reads", headers={"Authorization": "Bearer not-a-jwt"}
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_valid_token_uses_subject(self, client):
        settings = get_settings()
        token = jwt.encode({"sub": "user-9"}, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)

        marked = await client.post(
            "/v1/notifications/reads",
            json={"items": [{"notification_type": "activity", "notification_id": "x"}]},
            headers={"Authorization": f"Bearer {token}"},
        )

        assert marked.status_code == 200


# ── Rate-Limit Endpoint ──────────────────────────────────────────────────────


class TestRateLimitEndpoint:
    """POST /v1/rate-limit."""

    @pytest.mark.asyncio
    async def test_blocked_verdict_is_429(self, client_and_ledger):
        client, _, app = client_and_ledger
        decider = AsyncMock()
        decider.decide.return_value = RateLimitVerdict.block(RateLimitReason.RATE_LIMITED, 300)
        app.state.rate_limit_decider = decider

        response = await client.post(
            "/v1/rate-limit", json={"path": "/deals"}, headers={"User-Agent": "Mozilla/5.0"}
        )

        assert response.status_code == 429
        assert response.json() == {"allowed": False, "retryAfter": 300, "reason": "rate_limited"}
        path, headers = decider.decide.await_args.args
        assert path == "/deals"
        assert headers["user-agent"] == "Mozilla/5.0"

    @pytest.mark.asyncio
    async def test_allowed_verdict_is_200(self, client_and_ledger):
        client, _, app = client_and_ledger
        decider = AsyncMock()
        decider.decide.return_value = RateLimitVerdict.allow(remaining=12)
        app.state.rate_limit_decider = decider

        response = await client.post("/v1/rate-limit", json={})

        assert response.status_code == 200
        assert response.json() == {"allowed": True, "remaining": 12}
        assert decider.decide.await_args.args[0] == "/"

    @pytest.mark.asyncio
    async def test_missing_decider_fails_open(self, client_and_ledger):
        client, _, _ = client_and_ledger

        response = await client.post("/v1/rate-limit", json={"path": "/deals"})

        assert response.status_code == 200
        assert response.json() == {"allowed": True}


# ── Rate-Limited Routes ──────────────────────────────────────────────────────


class StubRateLimitClient:
    """Stands in for RateLimitClient; records each decide() call."""

    def __init__(self, outcome: RateLimitVerdict | Exception) -> None:
        self.outcome = outcome
        self.calls: list[tuple[str, dict]] = []

    async def decide(self, path, forward_headers=None) -> RateLimitVerdict:
        self.calls.append((path, dict(forward_headers or {})))
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


class TestRateLimitedRoutes:
    """Read-marker writes pass through the rate-limit gate."""

    BODY = {"items": [{"notification_type": "activity", "notification_id": "act-1"}]}

    @pytest.mark.asyncio
    async def test_blocked_write_is_429(self, client_and_ledger):
        client, ledger, app = client_and_ledger
        app.state.rate_limit_client = StubRateLimitClient(
            RateLimitVerdict.block(RateLimitReason.RATE_LIMITED, 120)
        )

        response = await client.post(
            "/v1/notifications/reads",
            json=self.BODY,
            headers={"User-Agent": "Mozilla/5.0", "Authorization": "Bearer secret"},
        )

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "120"
        assert response.json()["detail"] == {
            "allowed": False,
            "retryAfter": 120,
            "reason": "rate_limited",
        }
        assert ledger.rows == set()
        path, headers = app.state.rate_limit_client.calls[0]
        assert path == "/v1/notifications/reads"
        assert headers["user-agent"] == "Mozilla/5.0"
        assert "authorization" not in headers
        assert "x-forwarded-for" in headers

    @pytest.mark.asyncio
    async def test_allowed_write_goes_through(self, client_and_ledger):
        client, ledger, app = client_and_ledger
        app.state.rate_limit_client = StubRateLimitClient(RateLimitVerdict.allow())

        response = await client.post("/v1/notifications/reads/all", json=self.BODY)

        assert response.status_code == 200
        assert (USER, "activity", "act-1") in ledger.rows

    @pytest.mark.asyncio
    async def test_decision_failure_fails_open(self, client_and_ledger):
        client, ledger, app = client_and_ledger
        app.state.rate_limit_client = StubRateLimitClient(RateLimitCheckError("down"))

        response = await client.post("/v1/notifications/reads", json=self.BODY)

        assert response.status_code == 200
        assert (USER, "activity", "act-1") in ledger.rows

    @pytest.mark.asyncio
    async def test_reads_are_not_gated(self, client_and_ledger):
        client, _, app = client_and_ledger
        app.state.rate_limit_client = StubRateLimitClient(
            RateLimitVerdict.block(RateLimitReason.BOT_DETECTED, None)
        )

        response = await client.get("/v1/notifications/reads")

        assert response.status_code == 200
        assert app.state.rate_limit_client.calls == []


# ── Settings ─────────────────────────────────────────────────────────────────


class TestSettings:
    """Server-side staleness defaults are validated when settings load."""

    def test_reversed_default_thresholds_rejected(self):
        with pytest.raises(ValidationError, match="must not exceed"):
            Settings(DEFAULT_LENDER_YELLOW_DAYS=20, DEFAULT_LENDER_RED_DAYS=10)

    def test_negative_default_rejected(self):
        with pytest.raises(ValidationError):
            Settings(DEFAULT_STALE_DEAL_DAYS=-1)


# ── Health and Middleware ────────────────────────────────────────────────────


class TestHealthAndLogging:
    """Liveness endpoint and request-id middleware."""

    @pytest.mark.asyncio
    async def test_health(self, client_and_ledger):
        client, _, _ = client_and_ledger
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    @pytest.mark.asyncio
    async def test_request_id_header(self):
        app = _make_app()
        app.add_middleware(LoggingMiddleware)
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/health")

        assert response.status_code == 200
        assert len(response.headers["X-Request-ID"]) == 36


# ── Application Factory ──────────────────────────────────────────────────────


class TestCreateApp:
    """The assembled app serves infrastructure routes without lifespan."""

    @pytest.mark.asyncio
    async def test_metrics_and_health(self):
        from src.dealdesk.main import create_app

        app = create_app()
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            health_response = await client.get("/health")
            metrics_response = await client.get("/metrics")

        assert health_response.status_code == 200
        assert "X-Request-ID" in health_response.headers
        assert metrics_response.status_code == 200
        assert "http_requests_total" in metrics_response.text
        assert "read_marker_writes_total" in metrics_response.text

    @pytest.mark.asyncio
    async def test_routes_registered(self):
        from src.dealdesk.main import create_app

        paths = {route.path for route in create_app().routes}
        assert {
            "/health",
            "/health/ready",
            "/metrics",
            "/v1/notifications/stale-lenders",
            "/v1/notifications/stale-deals",
            "/v1/notifications/reads",
            "/v1/notifications/reads/all",
            "/v1/notifications/reads/refresh",
            "/v1/rate-limit",
            "/v1/realtime/{table}/stream",
        } <= paths
