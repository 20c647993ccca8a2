"""Shared test fixtures and configuration.

Sets up fake environment variables before any src import, and provides
common fixtures: temp-file SQLite stores, a fixed clock, a mock notifier
and a failure recorder wired to them.
"""

import os
import tempfile

# Patch env vars BEFORE any src imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "fake-token-for-tests")
os.environ.setdefault("ALLOWED_USER_IDS", "12345")
os.environ.setdefault("DATABASE_PATH", os.path.join(tempfile.mkdtemp(), "obligations.db"))
os.environ.setdefault("TIMEZONE", "UTC")

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock


# Wednesday, 14:00 UTC
NOW = datetime(2026, 10, 14, 14, 0, tzinfo=timezone.utc)


class FixedClock:
    """Clock whose time only moves when a test moves it."""

    def __init__(self, now: datetime = NOW) -> None:
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_obligations.db")


@pytest.fixture
def obligation_db(tmp_db_path):
    """Return an ObligationDB instance backed by a temp file."""
    from src.data.db import ObligationDB
    return ObligationDB(db_path=tmp_db_path)


@pytest.fixture
def sla_db(tmp_path):
    """Return a SlaTaskDB instance backed by a temp file."""
    from src.data.db import SlaTaskDB
    return SlaTaskDB(db_path=str(tmp_path / "test_sla.db"))


@pytest.fixture
def failure_db(tmp_path):
    """Return a FailureDB instance backed by a temp file."""
    from src.data.db import FailureDB
    return FailureDB(db_path=str(tmp_path / "test_failures.db"))


@pytest.fixture
def recorder(failure_db, clock):
    from src.core.failures import FailureRecorder
    return FailureRecorder(failure_db, clock)


@pytest.fixture
def notifier():
    """Notifier whose deliveries and acknowledgements all succeed."""
    mock = MagicMock()
    mock.deliver = AsyncMock(return_value=True)
    mock.acknowledge = AsyncMock(return_value=True)
    return mock
