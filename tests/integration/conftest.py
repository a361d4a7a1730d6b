"""Shared integration-test fixtures using Postgres and Redis testcontainers."""

from __future__ import annotations

import asyncio
import os
from collections.abc import AsyncIterator, Callable, Iterator
from typing import Any

import pytest
from alembic import command
from alembic.config import Config
from httpx import ASGITransport, AsyncClient
from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from testcontainers.postgres import PostgresContainer
from testcontainers.redis import RedisContainer

from docker.errors import DockerException

APP_ROLE = "notes_app"
APP_ROLE_PASSWORD = "notes_app_password"
TEST_PASSWORD = "Password123!"

_TABLES = (
    "security_events",
    "audit_logs",
    "notifications",
    "note_shares",
    "notes",
    "friendships",
    "refresh_tokens",
    "users",
)


def _clear_dependency_caches() -> None:
    """Clear all relevant singleton/lru-cache dependencies between test phases."""
    from app.config import get_settings
    from app.core.cipher import get_note_cipher
    from app.core.jwt import get_jwt_service
    from app.db.session import get_engine, get_request_engine, get_session_factory
    from app.middleware.rate_limit import get_rate_limit_redis_client
    from app.services.audit_service import get_audit_service
    from app.services.friends_service import get_friends_service
    from app.services.notes_service import get_notes_service
    from app.services.notification_service import get_notification_service
    from app.services.security_events import get_security_event_service
    from app.services.sharing_service import get_sharing_service
    from app.services.token_service import get_token_service
    from app.services.user_service import get_user_service

    get_settings.cache_clear()
    get_engine.cache_clear()
    get_request_engine.cache_clear()
    get_session_factory.cache_clear()
    get_jwt_service.cache_clear()
    get_note_cipher.cache_clear()
    get_rate_limit_redis_client.cache_clear()
    get_audit_service.cache_clear()
    get_security_event_service.cache_clear()
    get_token_service.cache_clear()
    get_user_service.cache_clear()
    get_notes_service.cache_clear()
    get_notification_service.cache_clear()
    get_friends_service.cache_clear()
    get_sharing_service.cache_clear()


async def _dispose_async_singletons() -> None:
    """Dispose loop-bound async resources before changing event loops."""
    from app.db.session import dispose_engine, get_engine
    from app.middleware.rate_limit import get_rate_limit_redis_client

    if get_rate_limit_redis_client.cache_info().currsize:
        await get_rate_limit_redis_client().aclose()
    if get_engine.cache_info().currsize:
        await dispose_engine()


def _redis_url(redis: RedisContainer) -> str:
    host = redis.get_container_host_ip()
    port = redis.get_exposed_port(6379)
    return f"redis://{host}:{port}/0"


def _app_role_url(owner_url: str) -> str:
    """Same database, connecting as the unprivileged application role."""
    url = make_url(owner_url).set(username=APP_ROLE, password=APP_ROLE_PASSWORD)
    return url.render_as_string(hide_password=False)


async def _provision_app_role(owner_url: str) -> None:
    """Create a login role that is subject to row-level security."""
    statements = (
        f"CREATE ROLE {APP_ROLE} LOGIN PASSWORD '{APP_ROLE_PASSWORD}' NOSUPERUSER NOBYPASSRLS",
        f"GRANT USAGE ON SCHEMA public TO {APP_ROLE}",
        f"GRANT SELECT, INSERT, UPDATE, DELETE ON ALL TABLES IN SCHEMA public TO {APP_ROLE}",
        f"GRANT EXECUTE ON FUNCTION app_current_user_id() TO {APP_ROLE}",
    )
    engine = create_async_engine(owner_url)
    try:
        async with engine.begin() as connection:
            for statement in statements:
                await connection.execute(text(statement))
    finally:
        await engine.dispose()


def _integration_settings(database_url: str, redis_url: str) -> dict[str, str]:
    return {
        "APP__ENVIRONMENT": "development",
        "APP__SERVICE": "notes-service",
        "APP__LOG_LEVEL": "INFO",
        "DATABASE__URL": database_url,
        "REDIS__URL": redis_url,
        "JWT__ACCESS_SECRET": "integration-access-secret-0123456789abcdef",
        "JWT__REFRESH_SECRET": "integration-refresh-secret-0123456789abcdef",
        "ENCRYPTION__KEY": "11" * 32,
        "ENCRYPTION__HMAC_KEY": "22" * 32,
        # Suites share one client address; keep the limiter out of the way.
        "RATE_LIMIT__DEFAULT_REQUESTS_PER_MINUTE": "10000",
        "RATE_LIMIT__AUTH_REQUESTS_PER_MINUTE": "10000",
    }


@pytest.fixture(scope="session")
def integration_env() -> Iterator[dict[str, str]]:
    """Run migrations against fresh containers and point settings at them."""
    postgres = PostgresContainer("postgres:16", driver="asyncpg")
    redis = RedisContainer("redis:7")
    try:
        postgres.start()
        redis.start()
    except DockerException as exc:
        if os.environ.get("CI", "").lower() in {"1", "true", "yes"}:
            pytest.fail(f"Docker is required for integration tests in CI: {exc}")
        pytest.skip(f"Docker unavailable, skipping integration tests: {exc}")

    owner_url = postgres.get_connection_url()
    database_url = _app_role_url(owner_url)
    redis_url = _redis_url(redis)

    with pytest.MonkeyPatch.context() as patcher:
        for name, value in _integration_settings(database_url, redis_url).items():
            patcher.setenv(name, value)
        _clear_dependency_caches()

        alembic_cfg = Config("alembic.ini")
        alembic_cfg.set_main_option("sqlalchemy.url", owner_url)
        command.upgrade(alembic_cfg, "head")
        asyncio.run(_provision_app_role(owner_url))

        try:
            yield {"database_url": database_url, "owner_url": owner_url, "redis_url": redis_url}
        finally:
            _clear_dependency_caches()
            postgres.stop()
            redis.stop()


@pytest.fixture(scope="function")
async def owner_engine(integration_env: dict[str, str]) -> AsyncIterator[AsyncEngine]:
    """Engine connecting as the table owner, for seeding and raw assertions."""
    engine = create_async_engine(integration_env["owner_url"])
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture(scope="function", autouse=True)
async def reset_state(
    integration_env: dict[str, str],
) -> AsyncIterator[None]:
    """Clear DB tables and flush Redis; isolate async singletons per event loop."""
    from app.middleware.rate_limit import get_rate_limit_redis_client

    await _dispose_async_singletons()
    _clear_dependency_caches()

    engine = create_async_engine(integration_env["owner_url"])
    try:
        async with engine.begin() as connection:
            await connection.execute(text(f"TRUNCATE {', '.join(_TABLES)} CASCADE"))
    finally:
        await engine.dispose()

    redis_client = get_rate_limit_redis_client()
    await redis_client.flushdb()
    try:
        yield
    finally:
        await _dispose_async_singletons()
        _clear_dependency_caches()


@pytest.fixture(scope="function")
def app_factory(integration_env: dict[str, str]) -> Callable[[], Any]:
    """Build isolated FastAPI app instances for integration tests."""
    del integration_env
    from app.main import create_app

    def _factory() -> Any:
        return create_app()

    return _factory


@pytest.fixture(scope="function")
async def client_factory(
    app_factory: Callable[[], Any],
) -> AsyncIterator[Callable[[], AsyncClient]]:
    """Hand out clients with independent cookie jars against one app instance."""
    app = app_factory()
    clients: list[AsyncClient] = []

    def _create() -> AsyncClient:
        client = AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver")
        clients.append(client)
        return client

    try:
        yield _create
    finally:
        for client in clients:
            await client.aclose()


@pytest.fixture(scope="function")
def signed_in_user(
    client_factory: Callable[[], AsyncClient],
) -> Callable[[str], Any]:
    """Register a user through the API and return its signed-in client and profile."""

    async def _create(username: str) -> tuple[AsyncClient, dict[str, Any]]:
        client = client_factory()
        response = await client.post(
            "/api/auth/register",
            json={
                "username": username,
                "email": f"{username}@example.com",
                "password": TEST_PASSWORD,
            },
        )
        assert response.status_code == 201, response.text
        return client, response.json()["user"]

    return _create


@pytest.fixture(scope="function")
def befriend() -> Callable[[AsyncClient, AsyncClient, str], Any]:
    """Make two signed-in users accepted friends."""

    async def _connect(requester: AsyncClient, addressee: AsyncClient, username: str) -> None:
        sent = await requester.post("/api/friends/request", json={"username": username})
        assert sent.status_code == 201, sent.text
        pending = await addressee.get("/api/friends/requests")
        request_id = pending.json()["requests"][0]["id"]
        accepted = await addressee.post(f"/api/friends/requests/{request_id}/accept")
        assert accepted.status_code == 200, accepted.text

    return _connect
