"""Database connection and session management.

The engine is created lazily so it binds to the running event loop.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from caregate.config import settings
from caregate.core import permission_cache
from caregate.core.errors import AccessControlError, AuditWriteError


class CaregateSession(AsyncSession):
    """AsyncSession that invalidates queued permission snapshots on commit."""

    async def commit(self) -> None:
        await super().commit()
        await permission_cache.flush_committed(self)

    async def rollback(self) -> None:
        permission_cache.discard_pending(self)
        await super().rollback()


_engine: Optional[AsyncEngine] = None
_async_session_maker: Optional[async_sessionmaker[AsyncSession]] = None


def get_engine() -> AsyncEngine:
    """Get or create the database engine.

    Under testing the engine uses NullPool so connections never outlive the
    event loop of the test that opened them.
    """
    global _engine
    if _engine is None:
        if settings.testing:
            _engine = create_async_engine(
                settings.database_url,
                poolclass=NullPool,
            )
        else:
            _engine = create_async_engine(
                settings.database_url,
                echo=settings.log_format == "text" and settings.log_level == "DEBUG",
                pool_size=10,
                max_overflow=20,
                pool_pre_ping=True,
            )
    return _engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Get or create the session maker."""
    global _async_session_maker
    if _async_session_maker is None:
        _async_session_maker = async_sessionmaker(
            get_engine(),
            class_=CaregateSession,
            expire_on_commit=False,
        )
    return _async_session_maker


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a database session.

    Routers commit explicitly once a decision and its audit entry are
    complete; anything left uncommitted is rolled back on close.
    """
    session_maker = get_session_maker()
    async with session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Context manager for database sessions outside request handling."""
    session_maker = get_session_maker()
    async with session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


async def check_database_connection() -> bool:
    """Return True if the database answers a trivial query."""
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
            return True
    except Exception:
        return False


async def close_database() -> None:
    """Dispose the engine and drop the cached session maker."""
    global _engine, _async_session_maker
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_maker = None


@asynccontextmanager
async def keep_denials(db: AsyncSession) -> AsyncGenerator[None, None]:
    """Commit the audit trail of an access-control denial before it propagates.

    A failed audit write leaves nothing worth committing, so AuditWriteError
    passes through untouched and the request's transaction is rolled back.
    """
    try:
        yield
    except AuditWriteError:
        raise
    except AccessControlError:
        await db.commit()
        raise
