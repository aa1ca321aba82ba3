"""
conftest.py — Shared Test Fixtures for StockSync

Provides a throwaway SQLite database, a controllable clock, an in-memory
remote source and an orchestrator factory wired to all three.

Business Rules:
- All tests run against an isolated temp-file DB (tables rebuilt per test)
- No test talks to the real remote API or Redis (TESTING disables Redis)
- Time only moves when a test advances the clock

Called by: all test files via pytest autodiscovery
Depends on: stocksync.models (Base), stocksync.sync
"""

import os
os.environ["TESTING"] = "1"  # Must be set before importing stocksync modules
os.environ["DATABASE_URL"] = "sqlite://"

import asyncio
import shutil
import tempfile
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from stocksync.models import Base
from stocksync.sync.errors import AuthError
from stocksync.sync.records import ITEM, VENDOR, Page, RemoteRecord

# ── Test SQLite engine ───────────────────────────────────────────────

# File-backed so batch writes running in worker threads each get their own
# connection; a shared in-memory connection cannot take concurrent writers.
_DB_DIR = tempfile.mkdtemp(prefix="stocksync-tests-")
engine = create_engine(
    f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}",
    connect_args={"check_same_thread": False, "timeout": 30},
)
TestSessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@event.listens_for(engine, "connect")
def _enable_fk(dbapi_conn, _):
    """SQLite ignores FKs by default — turn them on."""
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


T0 = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock returning a fixed aware UTC time until advanced."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


async def no_sleep(seconds):
    """Stand-in for asyncio.sleep in retry backoff; yields control only."""
    await asyncio.sleep(0)


class FakeRemote:
    """In-memory remote source, paged by sorted key.

    `data[kind]` maps natural key → canonical field dict. Failures are
    scripted per (kind, cursor) in `fail_pages` as a list of exceptions
    raised one per call.
    """

    def __init__(self, items: dict | None = None, vendors: dict | None = None,
                 page_size: int = 10, delay: float = 0.0):
        self.data = {ITEM: dict(items or {}), VENDOR: dict(vendors or {})}
        self.modified: dict = {}
        self.page_size = page_size
        self.delay = delay
        self.fail_pages: dict = {}
        self.auth_error = False
        self.page_calls: list = []
        self.key_calls: list = []

    def report_url(self, kind):
        return None

    def skip_cursor(self, cursor):
        return (cursor or 0) + self.page_size

    def _record(self, kind, key, fields):
        values = dict(self.data[kind][key])
        if fields is not None:
            values = {k: v for k, v in values.items() if k in fields}
        return RemoteRecord(kind, key, values, modified_at=self.modified.get((kind, key)))

    async def fetch_page(self, kind, cursor, sync_filter):
        self.page_calls.append((kind, cursor))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.auth_error:
            raise AuthError("Remote rejected credentials (401)", status_code=401)
        scripted = self.fail_pages.get((kind, cursor or 0))
        if scripted:
            raise scripted.pop(0)
        keys = sorted(self.data[kind])
        start = cursor or 0
        chunk = keys[start:start + self.page_size]
        records = [self._record(kind, k, sync_filter.fields) for k in chunk]
        next_cursor = start + self.page_size if start + self.page_size < len(keys) else None
        return Page([r for r in records if sync_filter.admits(r)], next_cursor)

    async def fetch_by_keys(self, kind, keys, sync_filter):
        self.key_calls.append((kind, list(keys)))
        if self.auth_error:
            raise AuthError("Remote rejected credentials (401)", status_code=401)
        return [
            self._record(kind, k, sync_filter.fields)
            for k in keys if k in self.data[kind]
        ]

    async def fetch_full_dump(self, kind, sync_filter, report_url=None):
        for key in sorted(self.data[kind]):
            yield self._record(kind, key, sync_filter.fields)

    async def test_connection(self):
        return not self.auth_error


def item(stock=10, cost=2.5, name=None, reorder_point=3, vendor="Acme", status="active", **extra):
    """Canonical item fields as the remote would return them."""
    fields = {
        "name": name or "Widget",
        "stock": stock,
        "cost": cost,
        "reorder_point": reorder_point,
        "vendor": vendor,
        "status": status,
    }
    fields.update(extra)
    return fields


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture(scope="session", autouse=True)
def _test_db_dir():
    """Remove the database file once the session is over."""
    yield
    engine.dispose()
    shutil.rmtree(_DB_DIR, ignore_errors=True)


@pytest.fixture(autouse=True)
def db_session():
    """Create all tables, yield a session, then tear down."""
    Base.metadata.create_all(bind=engine)
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def session_factory():
    return TestSessionLocal


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def test_settings():
    """Settings with production defaults, independent of any .env file."""
    from stocksync.config import Settings

    return Settings(_env_file=None, sync_api_key="", cache_backend="none")


@pytest.fixture()
def make_orchestrator(session_factory, clock, test_settings):
    """Factory: orchestrator over a FakeRemote with no real sleeping."""
    from stocksync.sync.batch_processor import RetryPolicy
    from stocksync.sync.orchestrator import SyncOrchestrator

    def _make(remote, **kwargs):
        kwargs.setdefault("settings", test_settings)
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("sleep", no_sleep)
        kwargs.setdefault("policy", RetryPolicy(max_attempts=3, base_delay=0.01, jitter=0))
        kwargs.setdefault("lock_poll_seconds", 0.01)
        kwargs.setdefault("heartbeat_seconds", 3600)
        return SyncOrchestrator(remote, session_factory, **kwargs)

    return _make
