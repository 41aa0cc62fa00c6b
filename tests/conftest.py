"""Shared fixtures for engine and API tests.

No database or Redis is required: ledgers, feeds and decision sources
are replaced by in-memory test doubles in each test module.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest


@pytest.fixture
def now() -> datetime:
    """Fixed reference time for freshness arithmetic."""
    return datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
