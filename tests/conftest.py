"""
Pytest configuration and shared fixtures.

Tests run against a throwaway SQLite database per test unless
TEST_DATABASE_URL points somewhere else.
"""

import os
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta
from pathlib import Path
from uuid import uuid4

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

# Settings are read once and cached, so configure them before any imports
# that might call get_settings()
os.environ["API_SECRET_KEY"] = "test-secret-key"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["LOG_FORMAT"] = "console"

from taskqueue.api.auth import create_access_token  # noqa: E402
from taskqueue.api.main import create_app  # noqa: E402
from taskqueue.api.rate_limit import get_rate_limiter  # noqa: E402
from taskqueue.config import get_settings  # noqa: E402
from taskqueue.constants import ADMIN_ROLE  # noqa: E402
from taskqueue.db.connection import (  # noqa: E402
    create_engine_for_url,
    create_session_factory,
    create_tables,
)
from taskqueue.db.models import Base  # noqa: E402
from taskqueue.queue import CacheService, DeadLetterQueue, JobQueue  # noqa: E402
from taskqueue.services import QueueServices, build_services  # noqa: E402
from taskqueue.worker.collaborators import Collaborators  # noqa: E402

get_settings.cache_clear()

CRON_SECRET = "test-cron-secret"


class FakeClock:
    """Controllable naive-UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 15, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs: float) -> None:
        self.now += timedelta(seconds=seconds, **kwargs)


class FakeMonotonic:
    """Controllable monotonic clock for tick budgets."""

    def __init__(self) -> None:
        self.value = 0.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """Get the test database URL."""
    return os.getenv("TEST_DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'taskqueue.db'}")


@pytest_asyncio.fixture
async def async_engine(database_url: str) -> AsyncGenerator[AsyncEngine, None]:
    """Create an async engine with a fresh schema."""
    engine = create_engine_for_url(database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await create_tables(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(async_engine)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Session for inspecting or seeding rows directly."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def job_queue(session_factory, clock: FakeClock) -> JobQueue:
    return JobQueue(
        session_factory,
        clock=clock,
        lease_duration_seconds=300,
        backoff_base_seconds=60,
        backoff_max_seconds=3600,
        default_max_attempts=3,
    )


@pytest.fixture
def dead_letter_queue(session_factory, clock: FakeClock) -> DeadLetterQueue:
    return DeadLetterQueue(session_factory, clock=clock, retry_priority=10)


@pytest.fixture
def cache(session_factory, clock: FakeClock) -> CacheService:
    return CacheService(session_factory, clock=clock)


@pytest.fixture
def collaborators() -> Collaborators:
    return Collaborators()


@pytest.fixture
def services(
    session_factory,
    clock: FakeClock,
    job_queue: JobQueue,
    dead_letter_queue: DeadLetterQueue,
    cache: CacheService,
    collaborators: Collaborators,
) -> QueueServices:
    """Services sharing the fake clock."""
    built = build_services(session_factory, collaborators=collaborators, clock=clock)
    built.job_queue = job_queue
    built.dead_letter_queue = dead_letter_queue
    built.cache = cache
    return built


@pytest.fixture
def app(services: QueueServices) -> FastAPI:
    """Create a FastAPI app bound to the test services."""
    get_rate_limiter().reset()
    return create_app(services=services)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def test_user_id() -> str:
    return f"user-{uuid4().hex[:8]}"


@pytest.fixture
def auth_headers(test_user_id: str) -> dict[str, str]:
    """Bearer headers for a regular user."""
    token = create_access_token(user_id=test_user_id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers() -> dict[str, str]:
    """Bearer headers for an operator."""
    token = create_access_token(user_id="admin-1", role=ADMIN_ROLE)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def cron_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {CRON_SECRET}"}

