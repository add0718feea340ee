"""Shared test fixtures for the umami-sync test suite."""

from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy import Column, DateTime, MetaData, String, Table, insert
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from umami_sync.core.database import Base
from umami_sync.models.database import User
from umami_sync.services.sync import SyncService
from umami_sync.services.umami_api import AnalyticsRecord, UmamiApiError, UmamiAuthError
from umami_sync.services.users import UserCorrelator
from umami_sync.services.watermark import WatermarkStore
# Import all models so their metadata is registered on Base
import umami_sync.models  # noqa: F401


# Minimal copy of Umami's session table
umami_metadata = MetaData()
umami_session_table = Table(
    "session",
    umami_metadata,
    Column("session_id", String, primary_key=True),
    Column("website_id", String, nullable=False),
    Column("created_at", DateTime, nullable=False),
    Column("distinct_id", String, nullable=True),
)


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """
    Provide a file-backed SQLite store for tests.

    A file (rather than :memory:) lets every store operation open its own
    connection and still see the same data. Each test gets a clean database.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'store.db'}",
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    await engine.dispose()


@pytest_asyncio.fixture
async def async_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def umami_db_url(tmp_path):
    """URL of a SQLite database holding an Umami-like ``session`` table."""
    url = f"sqlite+aiosqlite:///{tmp_path / 'umami.db'}"
    engine = create_async_engine(url)
    async with engine.begin() as conn:
        await conn.run_sync(umami_metadata.create_all)
    await engine.dispose()
    return url


async def insert_umami_sessions(url: str, rows: list[dict]) -> None:
    engine = create_async_engine(url)
    async with engine.begin() as conn:
        await conn.execute(insert(umami_session_table), rows)
    await engine.dispose()


@pytest.fixture
def add_users(session_factory):
    """Insert users; returns an async callable taking emails or dicts."""
    async def _add(*users):
        async with session_factory() as session:
            for user in users:
                if isinstance(user, str):
                    user = {"email": user}
                session.add(User(**user))
            await session.commit()
    return _add


def make_analytics(session_id: str, website_id: str = "site-a", **overrides) -> AnalyticsRecord:
    fields = dict(
        session_id=session_id,
        website_id=website_id,
        browser="chrome",
        os="Mac OS",
        device="desktop",
        screen="1920x1080",
        language="en-GB",
        country="GB",
        region="GB-LND",
        city="London",
        first_at=datetime(2025, 3, 1, 9, 0),
        last_at=datetime(2025, 3, 1, 9, 30),
        visits=2,
        views="7",
        created_at=datetime(2025, 3, 1, 9, 0),
    )
    fields.update(overrides)
    return AnalyticsRecord(**fields)


class FakeSessionSource:
    """Stands in for UmamiSessionSource."""

    def __init__(self, sessions=None, error: Exception | None = None):
        self.sessions = list(sessions or [])
        self.error = error
        self.calls: list[datetime] = []

    async def fetch_sessions_since(self, start):
        self.calls.append(start)
        if self.error is not None:
            raise self.error
        return [s for s in self.sessions if s.created_at >= start]

    async def test_connection(self):
        return self.error is None

    async def close(self):
        pass


class FakeUmamiApi:
    """Stands in for UmamiApiClient; records per website, some websites fail."""

    def __init__(self, sessions_by_website=None, failing=(), fail_auth: bool = False):
        self.sessions_by_website = dict(sessions_by_website or {})
        self.failing = set(failing)
        self.fail_auth = fail_auth
        self.token = None
        self.auth_calls = 0
        self.clear_calls = 0
        self.fetch_calls: list[tuple] = []

    async def authenticate(self):
        self.auth_calls += 1
        if self.fail_auth:
            raise UmamiAuthError("Failed to authenticate with Umami API: HTTP 401")
        self.token = "test-token"
        return self.token

    def clear_token(self):
        self.clear_calls += 1
        self.token = None

    async def fetch_all_sessions(self, website_id, start, end):
        assert self.token is not None, "fetch without token"
        self.fetch_calls.append((website_id, start, end))
        if website_id in self.failing:
            raise UmamiApiError(f"Failed to fetch sessions for website {website_id} page 1: HTTP 500")
        return list(self.sessions_by_website.get(website_id, []))

    async def close(self):
        pass


class FixedClock:
    """Returns ``start`` and advances by ``step`` on each call."""

    def __init__(self, start: datetime, step: timedelta = timedelta(seconds=1)):
        self.now = start
        self.step = step
        self.first = start

    def __call__(self) -> datetime:
        value = self.now
        self.now += self.step
        return value


@pytest.fixture
def make_service(session_factory):
    """Build a SyncService over the test store with fake Umami adapters."""
    def _make(source=None, api=None, website_ids=("site-a",), clock=None, **kwargs):
        return SyncService(
            source or FakeSessionSource(),
            api or FakeUmamiApi(),
            UserCorrelator(session_factory),
            WatermarkStore(session_factory),
            list(website_ids),
            clock=clock or FixedClock(datetime(2025, 3, 2, 12, 0)),
            **kwargs,
        )
    return _make
