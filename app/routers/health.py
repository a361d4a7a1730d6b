"""Liveness and readiness checks."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, HTTPException
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from app.db.session import get_engine, get_request_engine
from app.middleware.rate_limit import get_rate_limit_redis_client

router = APIRouter(prefix="/health", tags=["health"])
logger = structlog.get_logger(__name__)


async def _database_reachable(engine: AsyncEngine) -> bool:
    """True when the pool can hand out a connection that answers a query."""
    try:
        async with engine.connect() as connection:
            await connection.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError):
        return False
    return True


async def _redis_reachable() -> bool:
    """True when Redis answers PING."""
    try:
        return bool(await get_rate_limit_redis_client().ping())
    except (RedisError, OSError):
        return False


@router.get("/live")
async def live() -> dict[str, str]:
    """Liveness endpoint."""
    return {"status": "live"}


@router.get("/ready")
async def ready() -> dict[str, str]:
    """Readiness requires both database pools and Redis."""
    checks = {
        "database": await _database_reachable(get_engine()),
        "request_pool": await _database_reachable(get_request_engine()),
        "redis": await _redis_reachable(),
    }
    failing = sorted(name for name, healthy in checks.items() if not healthy)
    if failing:
        logger.warning("readiness_check_failed", failing=failing)
        raise HTTPException(
            status_code=503,
            detail={"detail": "Service not ready.", "code": "internal_error"},
        )
    return {"status": "ready"}
