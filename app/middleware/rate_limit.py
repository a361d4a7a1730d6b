"""Redis-backed sliding-window rate limiting middleware."""

from __future__ import annotations

import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Protocol
from uuid import uuid4

import structlog
from fastapi import Request
from redis import asyncio as redis_async
from redis.asyncio.client import Redis
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

from app.config import get_settings
from app.services.audit_service import extract_client_ip

logger = structlog.get_logger(__name__)

WINDOW_SECONDS = 60
AUTH_LIMITED_PATHS = frozenset({"/api/auth/login", "/api/auth/register", "/api/auth/refresh"})
_EXEMPT_PREFIXES = ("/health",)


class SlidingWindowRedis(Protocol):
    """Protocol for Redis operations used by the rate limiter."""

    async def zremrangebyscore(self, key: str, min: str | int, max: int) -> int:
        """Delete members with score inside an inclusive range."""

    async def zcard(self, key: str) -> int:
        """Return sorted-set cardinality."""

    async def zadd(self, key: str, mapping: dict[str, int]) -> int:
        """Add one or more scored members to sorted set."""

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        """Apply TTL to key."""


@dataclass(frozen=True)
class _Bucket:
    """Limit group a request is counted against."""

    action: str
    limit: int


@lru_cache
def get_rate_limit_redis_client() -> Redis:
    """Create and cache Redis client used by rate limiter middleware."""
    settings = get_settings()
    return redis_async.from_url(settings.redis.url, decode_responses=True)


def _too_many_requests() -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={"detail": "Too many requests, please try again later.", "code": "rate_limited"},
        headers={"Retry-After": str(WINDOW_SECONDS)},
    )


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Count requests per client in an auth group and a general API group."""

    def __init__(
        self,
        app,
        redis_client: SlidingWindowRedis | None = None,
        default_requests_per_minute: int | None = None,
        auth_requests_per_minute: int | None = None,
    ) -> None:
        """Explicit limits and client override settings, for tests."""
        super().__init__(app)
        if (
            redis_client is None
            or default_requests_per_minute is None
            or auth_requests_per_minute is None
        ):
            limits = get_settings().rate_limit
            default_requests_per_minute = (
                default_requests_per_minute or limits.default_requests_per_minute
            )
            auth_requests_per_minute = auth_requests_per_minute or limits.auth_requests_per_minute

        self._redis = redis_client or get_rate_limit_redis_client()
        self._api_bucket = _Bucket(action="api", limit=default_requests_per_minute)
        self._auth_bucket = _Bucket(action="auth", limit=auth_requests_per_minute)

    async def dispatch(self, request: Request, call_next) -> Response:
        """Reject requests over their group's per-minute threshold."""
        path = request.url.path
        if path.startswith(_EXEMPT_PREFIXES):
            return await call_next(request)

        bucket = self._auth_bucket if path in AUTH_LIMITED_PATHS else self._api_bucket
        client_id = extract_client_ip(request) or "unknown"
        try:
            used = await self._count(f"rate_limit:{bucket.action}:{client_id}", bucket.limit)
        except RedisError:
            # Redis outages fail open.
            logger.warning("rate_limit_backend_unavailable", path=path, action=bucket.action)
            return await call_next(request)

        if used is None:
            logger.warning(
                "rate_limit_exceeded",
                path=path,
                method=request.method,
                action=bucket.action,
                limit=bucket.limit,
            )
            return _too_many_requests()

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(bucket.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, bucket.limit - used))
        return response

    async def _count(self, key: str, limit: int) -> int | None:
        """Record one hit and return the window's count, or None when over the limit."""
        now_ms = int(time.time() * 1000)
        await self._redis.zremrangebyscore(key, "-inf", now_ms - WINDOW_SECONDS * 1000)
        if await self._redis.zcard(key) >= limit:
            return None
        await self._redis.zadd(key, {f"{now_ms}:{uuid4()}": now_ms})
        await self._redis.expire(key, WINDOW_SECONDS + 1)
        return await self._redis.zcard(key)
