"""Async SQLAlchemy engines and session factories.

Two pools are kept apart: the shared engine serves unauthenticated lookups and the
system path, the request engine hands out one exclusive connection per
authenticated request for row-scoped transactions.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from functools import lru_cache

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.config import get_settings


@lru_cache
def get_engine() -> AsyncEngine:
    """Build and cache the shared async SQLAlchemy engine."""
    settings = get_settings()
    return create_async_engine(
        settings.database.url,
        pool_pre_ping=True,
        pool_size=settings.database.system_pool_size,
    )


@lru_cache
def get_request_engine() -> AsyncEngine:
    """Build and cache the engine reserved for row-scoped request transactions."""
    settings = get_settings()
    return create_async_engine(
        settings.database.url,
        pool_pre_ping=True,
        pool_size=settings.database.request_pool_size,
    )


@lru_cache
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Build and cache the async session factory on the shared engine."""
    return async_sessionmaker(bind=get_engine(), autoflush=False, expire_on_commit=False)


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an unscoped async database session from the shared pool."""
    session_factory = get_session_factory()
    async with session_factory() as session:
        yield session


async def dispose_engine() -> None:
    """Dispose both SQLAlchemy engines and close pooled connections."""
    if get_request_engine.cache_info().currsize:
        await get_request_engine().dispose()
    await get_engine().dispose()
