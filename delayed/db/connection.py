"""
Database connection management.
Handles async SQLAlchemy engine and session creation.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from delayed.config import get_settings

logger = logging.getLogger(__name__)

# Global engine instance
_engine: AsyncEngine | None = None
AsyncSessionLocal: async_sessionmaker[AsyncSession] | None = None


def create_engine_for_url(database_url: str, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine for an arbitrary database URL.

    Pool sizing from settings only applies to server databases; SQLite
    uses its dialect defaults.

    Args:
        database_url: The SQLAlchemy database URL.
        echo: Whether to log emitted SQL.

    Returns:
        AsyncEngine: A new SQLAlchemy async engine.
    """
    settings = get_settings()
    if make_url(database_url).get_backend_name() == "sqlite":
        return create_async_engine(database_url, echo=echo)
    return create_async_engine(
        database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        echo=echo,
        pool_pre_ping=True,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Create a session factory bound to an engine.

    Args:
        engine: The engine sessions should use.

    Returns:
        async_sessionmaker: Factory producing AsyncSession instances.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_engine() -> AsyncEngine:
    """
    Get or create the async database engine.

    Returns:
        AsyncEngine: The SQLAlchemy async engine instance.
    """
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine_for_url(
            settings.database_url,
            echo=settings.log_level == "DEBUG",
        )
    return _engine


def get_test_engine(database_url: str) -> AsyncEngine:
    """
    Create a test database engine with NullPool.

    Args:
        database_url: The database URL for testing.

    Returns:
        AsyncEngine: The test SQLAlchemy async engine instance.
    """
    return create_async_engine(
        database_url,
        poolclass=NullPool,
        echo=False,
    )


async def init_db() -> None:
    """
    Initialize the database connection and session factory.
    Should be called on application startup.
    """
    global AsyncSessionLocal
    AsyncSessionLocal = create_session_factory(get_engine())
    logger.info("Database connection initialized")


async def close_db() -> None:
    """
    Close the database connection.
    Should be called on application shutdown.
    """
    global _engine, AsyncSessionLocal
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        AsyncSessionLocal = None
        logger.info("Database connection closed")


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    Get the initialized session factory.

    Raises:
        RuntimeError: If the database is not initialized.
    """
    if AsyncSessionLocal is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return AsyncSessionLocal


async def get_async_session() -> AsyncGenerator[AsyncSession]:
    """
    Dependency for getting async database sessions.

    Yields:
        AsyncSession: An async database session.

    Raises:
        RuntimeError: If the database is not initialized.
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def get_session_context() -> AsyncGenerator[AsyncSession]:
    """
    Context manager for getting async database sessions.
    Useful for non-FastAPI contexts like the worker and the reaper.

    Yields:
        AsyncSession: An async database session.
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
