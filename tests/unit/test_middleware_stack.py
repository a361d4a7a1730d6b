"""Unit tests for the outer middleware stack wired in production order."""

from __future__ import annotations

import pytest
from fastapi import FastAPI, HTTPException
from httpx import ASGITransport, AsyncClient

from app.error_handlers import register_exception_handlers
from app.middleware.correlation_id import CorrelationIdMiddleware, resolve_correlation_id
from app.middleware.logging import LoggingMiddleware
from app.middleware.rate_limit import RateLimitMiddleware
from app.middleware.security_headers import SecurityHeadersMiddleware

_HARDENING_HEADERS = (
    "content-security-policy",
    "x-frame-options",
    "x-content-type-options",
    "referrer-policy",
    "cache-control",
)


class _SaturatedRedis:
    """Limiter backend whose buckets are always full."""

    async def zremrangebyscore(self, key: str, min: str | int, max: int) -> int:
        return 0

    async def zcard(self, key: str) -> int:
        return 10_000

    async def zadd(self, key: str, mapping: dict[str, int]) -> int:
        raise AssertionError("full buckets are never extended")

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return True


def _build_test_app(hsts: bool = True, redis_client=None) -> FastAPI:
    """Build test app with the outer middleware layers in production order."""
    app = FastAPI()
    if redis_client is not None:
        app.add_middleware(
            RateLimitMiddleware,
            redis_client=redis_client,
            default_requests_per_minute=5,
            auth_requests_per_minute=5,
        )
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, hsts=hsts)
    app.add_middleware(CorrelationIdMiddleware)
    register_exception_handlers(app, environment="production")

    @app.get("/ok")
    async def ok() -> dict[str, bool]:
        return {"ok": True}

    @app.get("/client-error")
    async def client_error() -> None:
        raise HTTPException(status_code=401, detail="unauthorized")

    @app.get("/server-error")
    async def server_error() -> None:
        raise HTTPException(status_code=503, detail="unavailable")

    return app


@pytest.mark.asyncio
async def test_headers_present_on_success_and_error_responses() -> None:
    """Correlation ID and hardening headers are present on 2xx/4xx/5xx."""
    async with AsyncClient(
        transport=ASGITransport(app=_build_test_app()), base_url="http://testserver"
    ) as client:
        responses = [
            await client.get("/ok", headers={"x-correlation-id": "cid-test"}),
            await client.get("/client-error"),
            await client.get("/server-error"),
        ]

    assert [response.status_code for response in responses] == [200, 401, 503]
    assert responses[0].headers["x-correlation-id"] == "cid-test"
    assert responses[1].json() == {"detail": "unauthorized", "code": "invalid_token"}
    for response in responses:
        assert response.headers.get("x-correlation-id")
        assert all(response.headers.get(name) for name in _HARDENING_HEADERS)
        assert response.headers["strict-transport-security"].startswith("max-age=")


@pytest.mark.asyncio
async def test_hsts_can_be_disabled_for_local_development() -> None:
    """Plain-HTTP development servers do not pin HTTPS."""
    async with AsyncClient(
        transport=ASGITransport(app=_build_test_app(hsts=False)), base_url="http://testserver"
    ) as client:
        response = await client.get("/ok")

    assert "strict-transport-security" not in response.headers
    assert response.headers["x-frame-options"] == "DENY"


@pytest.mark.asyncio
async def test_rate_limited_response_keeps_outer_headers() -> None:
    """429 responses from the limiter still pass through the outer layers."""
    app = _build_test_app(redis_client=_SaturatedRedis())
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://testserver"
    ) as client:
        response = await client.get("/ok")

    assert response.status_code == 429
    assert response.json()["code"] == "rate_limited"
    assert response.headers.get("x-correlation-id")
    assert response.headers["x-content-type-options"] == "nosniff"


@pytest.mark.parametrize(
    "raw_value",
    [None, "", "   ", "has spaces", "x" * 129, "bad\nheader", "<script>"],
)
def test_unusable_correlation_ids_are_replaced(raw_value: str | None) -> None:
    """Client ids that could pollute logs are swapped for generated ones."""
    resolved = resolve_correlation_id(raw_value)

    assert resolved != raw_value
    assert len(resolved) == 36


def test_well_formed_correlation_id_is_kept() -> None:
    """Ordinary ids pass through unchanged."""
    assert resolve_correlation_id(" req-42.a_b ") == "req-42.a_b"
