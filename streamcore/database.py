"""Async database engine and session management.

This module provides the async SQLAlchemy 2.0 engine configuration and the
session factory the State Sync layer opens one short transaction from per
read or write.

Usage:
    from streamcore.database import get_session_factory

    session_factory = get_session_factory()
    async with session_factory() as session:
        channel = await session.get(Channel, channel_id)
"""

import os

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from streamcore.config import get_database_url

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """Create (once) and return the production async engine.

    Raises:
        ValueError: If DATABASE_URL is not set.
    """
    global _engine
    if _engine is None:
        _engine = create_async_engine(
            get_database_url(),
            pool_size=5,
            max_overflow=5,
            pool_pre_ping=True,
            echo=os.getenv("DATABASE_ECHO", "").lower() == "true",
        )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the process-wide session factory bound to the production engine."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,  # CRITICAL: prevents attribute expiration after commit
        )
    return _session_factory


async def dispose_engine() -> None:
    """Dispose the engine's connection pool (called on shutdown)."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


def create_test_engine(
    database_url: str = "sqlite+aiosqlite:///:memory:",
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Create an async engine for testing.

    Args:
        database_url: Test database URL (defaults to in-memory SQLite).

    Returns:
        Tuple of (engine, async_session_factory) for testing.
    """
    test_engine = create_async_engine(database_url, echo=False)
    test_session_factory = async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return test_engine, test_session_factory
