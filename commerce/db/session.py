"""
Database Session Management - Async SQLAlchemy session factory.

One primary engine serves reads and writes; services receive an
AsyncSession and own their commits.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from commerce.config import settings
from commerce.db.models import Base

# Global engine instance
_engine: AsyncEngine | None = None

# Session factory
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _engine_kwargs(database_url: str) -> dict[str, Any]:
    """Engine options for the configured backend."""
    if database_url.startswith("sqlite"):
        # Writers wait on the file lock instead of failing with "database is locked"
        return {
            "connect_args": {"timeout": settings.database_pool_timeout},
            "echo": settings.log_level == "DEBUG",
        }
    return {
        "pool_size": settings.database_pool_size,
        "max_overflow": settings.database_max_overflow,
        "pool_timeout": settings.database_pool_timeout,
        "pool_recycle": settings.database_pool_recycle,
        "echo": settings.log_level == "DEBUG",
    }


def build_engine(database_url: str | None = None) -> AsyncEngine:
    """Create a new engine for the given URL (defaults to DATABASE_URL)."""
    url = database_url or settings.database_url
    return create_async_engine(url, **_engine_kwargs(url))


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to an engine. Objects stay readable after commit."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def get_engine() -> AsyncEngine:
    """Get or create the database engine."""
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory."""
    global _session_factory
    if _session_factory is None:
        _session_factory = build_session_factory(get_engine())
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    """
    Get an async database session.

    Usage:
        async with get_session() as session:
            ledger = BalanceLedger(session)
            await ledger.charge(user_id, 10_000)
    """
    factory = get_session_factory()
    async with factory() as session:
        try:
            yield session
        finally:
            await session.close()


async def create_schema(engine: AsyncEngine | None = None) -> None:
    """Create all tables and indexes that do not exist yet."""
    target = engine or get_engine()
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_engines() -> None:
    """Close the database engine (for graceful shutdown)."""
    global _engine, _session_factory

    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
