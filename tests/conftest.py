"""Shared test fixtures."""

import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from main import app  # noqa: E402
from shared.cache import CollectionCache, MemoryCacheBackend, get_cache_backend  # noqa: E402
from shared.clock import FrozenClock, get_clock  # noqa: E402
from shared.database import build_engine, get_session  # noqa: E402
from sleep.domain.orm import Base, UserModel  # noqa: E402
from sleep.repository import CollectionFreshness  # noqa: E402

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=UTC)


def hours_ago(hours: float) -> datetime:
    return NOW - timedelta(hours=hours)


def iso(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
async def engine(tmp_path):
    """File-backed SQLite so every session sees the same schema and rows."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'good_night.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def cache_backend():
    return MemoryCacheBackend()


@pytest.fixture
def cache(db_session, cache_backend, clock):
    return CollectionCache(cache_backend, CollectionFreshness(db_session), clock)


@pytest.fixture
def make_user(db_session):
    async def _make(name: str) -> UserModel:
        user = UserModel(name=name)
        db_session.add(user)
        await db_session.commit()
        return user

    return _make


@pytest.fixture
async def api_client(session_factory, clock, cache_backend):
    """HTTP client bound to the app with SQLite, a frozen clock and an in-memory cache."""

    async def override_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_cache_backend] = lambda: cache_backend
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
