"""SQLAlchemy 2.x async database setup.

The engine is created lazily on first use and cached, so importing this module
never opens a connection. Pipelines receive a session; they never own the
engine.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import settings

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_engine() -> AsyncEngine:
    """Return the process-wide engine, creating it on the first call."""
    kwargs = {"echo": settings.db.echo, "pool_pre_ping": True}
    if not settings.db.url.startswith("sqlite"):
        kwargs.update(pool_size=settings.db.pool_size, max_overflow=settings.db.max_overflow)
    return create_async_engine(settings.db.url, **kwargs)


@lru_cache(maxsize=1)
def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=get_engine(), expire_on_commit=False, class_=AsyncSession)


async def get_session() -> AsyncIterator[AsyncSession]:
    """FastAPI-friendly async session dependency.

    Usage:
        async def endpoint(session: AsyncSession = Depends(get_session)):
            ...
    """

    async with get_sessionmaker()() as session:
        yield session


async def ping(session: AsyncSession) -> bool:
    """Run ``SELECT 1``; False when the database is unreachable."""
    try:
        await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Database ping failed: {e}")
        return False
    return True


async def dispose_engine() -> None:
    if get_engine.cache_info().currsize:
        await get_engine().dispose()
        get_engine.cache_clear()
        get_sessionmaker.cache_clear()
