"""
Async engine and session factory with an explicit lifecycle.
init_engine() runs at app startup (or in test fixtures), close_engine() at shutdown.
"""
from __future__ import annotations

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from rentdesk.db.base import Base

_engine: AsyncEngine | None = None
_session_maker: async_sessionmaker[AsyncSession] | None = None


def init_engine(database_url: str, echo: bool = False) -> async_sessionmaker[AsyncSession]:
    """Create the engine and session factory. Idempotent."""
    global _engine, _session_maker
    if _session_maker is not None:
        return _session_maker
    _engine = create_async_engine(database_url, echo=echo)
    _session_maker = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)
    return _session_maker


def get_engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError("Database engine not initialized; ensure app lifespan has run init_engine().")
    return _engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Return the session factory. Must be initialized via init_engine() first."""
    if _session_maker is None:
        raise RuntimeError("Database engine not initialized; ensure app lifespan has run init_engine().")
    return _session_maker


async def close_engine() -> None:
    """Dispose the engine. Call from app lifespan shutdown."""
    global _engine, _session_maker
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_maker = None


async def init_db() -> None:
    import rentdesk.models  # noqa: F401 - register all tables on Base.metadata

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with get_session_maker()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
