"""
Pytest configuration and shared fixtures.

Tests run against a fresh SQLite file per test. Set TEST_DATABASE_URL to run
them against PostgreSQL instead.
"""

import os
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

import sample_jobs
from delayed.api.auth import create_access_token
from delayed.api.main import create_app
from delayed.config import QueueConfig
from delayed.db import Base, create_session_factory, get_async_session
from delayed.db.connection import get_test_engine
from delayed.db.repository import JobRepository
from delayed.identity import WorkerIdentity, local_hostname
from delayed.worker.runner import JobRunner

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


@pytest.fixture
def database_url(tmp_path) -> str:
    """Get the test database URL."""
    return TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'delayed.db'}"


@pytest_asyncio.fixture
async def async_engine(database_url: str) -> AsyncGenerator[AsyncEngine]:
    """Create an async engine with a freshly created schema."""
    engine = get_test_engine(database_url)

    async with engine.begin() as conn:
        for metadata in (Base.metadata, sample_jobs.SampleBase.metadata):
            await conn.run_sync(metadata.drop_all)
            await conn.run_sync(metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return create_session_factory(async_engine)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Create a database session for tests."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def repo(db_session: AsyncSession) -> JobRepository:
    """Repository bound to the test session."""
    return JobRepository(db_session)


@pytest.fixture(autouse=True)
def reset_sample_jobs():
    """Reset class level counters of the sample payloads."""
    sample_jobs.reset()
    yield
    sample_jobs.reset()


@pytest.fixture
def worker() -> WorkerIdentity:
    """Identity of the test process."""
    return WorkerIdentity.current()


@pytest.fixture
def other_host_worker() -> WorkerIdentity:
    """A worker on another host."""
    return WorkerIdentity(host="otherhost", pid=123)


@pytest.fixture
def same_host_worker() -> WorkerIdentity:
    """Another worker process on this host."""
    return WorkerIdentity(host=local_hostname(), pid=4242)


@pytest.fixture
def queue_config() -> QueueConfig:
    """Queue configuration used by runner tests."""
    return QueueConfig(max_attempts=3, destroy_failed_jobs=True)


@pytest.fixture
def runner(
    session_factory: async_sessionmaker[AsyncSession],
    queue_config: QueueConfig,
    worker: WorkerIdentity,
) -> JobRunner:
    """Runner for the test process identity."""
    return JobRunner(session_factory, config=queue_config, worker=worker)


@pytest_asyncio.fixture
async def app(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[FastAPI]:
    """Create a FastAPI app bound to the test database."""
    app = create_app()

    async def override_session() -> AsyncGenerator[AsyncSession]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_async_session] = override_session
    yield app
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Create an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def auth_headers() -> dict[str, str]:
    """Create authentication headers for testing."""
    token = create_access_token()
    return {
        "Authorization": f"Bearer {token}",
    }
