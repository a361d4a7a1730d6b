"""Shared FastAPI dependency helpers."""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import get_db_session


async def get_database_session() -> AsyncGenerator[AsyncSession, None]:
    """Unscoped session for routes that run before a principal exists.

    Only the users table is reachable here; every row-secured table needs the
    row-scoped session from ``app.core.row_scope``.
    """
    async for session in get_db_session():
        yield session
