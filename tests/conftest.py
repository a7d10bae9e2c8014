"""
Shared fixtures.

Storage-backed tests run once per backend: the in-memory store and
SQLite in-memory through SQLAlchemy.
"""

from datetime import datetime, timedelta

import pytest
import pytest_asyncio

from twealth.config import DatabaseSettings, NotificationSettings, QuotaSettings
from twealth.orchestrator import create_app_components
from twealth.services.storage import (
    InMemoryAuditStorage,
    InMemoryEngineStorage,
    SqlAuditStorage,
    SqlDatabase,
    SqlEngineStorage,
)


BACKENDS = ["memory", "sql"]


class FakeClock:
    """Controllable time source."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    # A Wednesday in mid-month
    return FakeClock(datetime(2024, 5, 15, 10, 0))


@pytest.fixture
def quota_settings():
    return QuotaSettings()


@pytest.fixture
def notification_settings():
    return NotificationSettings()


def _sqlite_database() -> SqlDatabase:
    return SqlDatabase(DatabaseSettings(url="sqlite://"))


@pytest.fixture(params=BACKENDS)
def storage(request):
    if request.param == "memory":
        yield InMemoryEngineStorage()
        return

    database = _sqlite_database()
    database.create_schema()
    yield SqlEngineStorage(database)
    database.dispose()


@pytest.fixture(params=BACKENDS)
def threaded_storage(request, tmp_path):
    """Storage safe to hit from several threads at once."""
    if request.param == "memory":
        yield InMemoryEngineStorage()
        return

    # One connection per thread needs a file, not the shared in-memory one
    database = SqlDatabase(DatabaseSettings(url=f"sqlite:///{tmp_path / 'twealth.db'}"))
    database.create_schema()
    yield SqlEngineStorage(database)
    database.dispose()


@pytest.fixture(params=BACKENDS)
def audit_storage(request):
    if request.param == "memory":
        yield InMemoryAuditStorage()
        return

    database = _sqlite_database()
    database.create_schema()
    yield SqlAuditStorage(database)
    database.dispose()


@pytest_asyncio.fixture(params=BACKENDS)
async def context(request, clock):
    ctx = create_app_components(backend=request.param, clock=clock)
    await ctx.start()
    yield ctx
    ctx.close()
