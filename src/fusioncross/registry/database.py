"""Database connection and session management."""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncGenerator, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from fusioncross.config import get_settings
from fusioncross.registry.models import Base

SessionScope = Callable[[], AsyncContextManager[AsyncSession]]

# Global engine and session factory
_engine = None
_session_factory = None
_session_lock: Optional[asyncio.Lock] = None


def get_engine():
    """Get or create the database engine."""
    global _engine
    if _engine is None:
        settings = get_settings()
        # Convert sqlite:/// to sqlite+aiosqlite:/// if needed
        db_url = settings.database_url
        if db_url.startswith("sqlite:///") and "aiosqlite" not in db_url:
            db_url = db_url.replace("sqlite:///", "sqlite+aiosqlite:///")

        _engine = create_async_engine(
            db_url,
            echo=settings.debug and not settings.is_production,
            future=True,
        )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_factory


@asynccontextmanager
async def _transaction(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def session_scope(
    factory: async_sessionmaker[AsyncSession], serialize: bool = True
) -> SessionScope:
    """Build a session context manager bound to a session factory.

    SQLite allows a single writer, so by default sessions opened through the
    returned scope are serialized. Scopes are not reentrant: never open a
    session while holding another from the same scope.

    Args:
        factory: Session factory to open sessions from
        serialize: Run at most one session at a time

    Returns:
        Zero-argument callable returning an async context manager that
        yields a session and commits (or rolls back) on exit
    """
    lock = asyncio.Lock() if serialize else None

    @asynccontextmanager
    async def scope() -> AsyncGenerator[AsyncSession, None]:
        if lock is None:
            async with _transaction(factory) as session:
                yield session
            return
        async with lock:
            async with _transaction(factory) as session:
                yield session

    return scope


@asynccontextmanager
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Get a database session context manager."""
    global _session_lock
    if _session_lock is None:
        _session_lock = asyncio.Lock()
    async with _session_lock:
        async with _transaction(get_session_factory()) as session:
            yield session


async def init_db() -> None:
    """Initialize the database by creating all tables."""
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Close database connections."""
    global _engine, _session_factory, _session_lock
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
    _session_lock = None
