"""Unit tests for refresh token records and access token refresh."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

import pytest

from app.core.jwt import JWTService, TokenValidationError
from app.core.system_hatch import SystemOperation, SystemResult
from app.services.errors import ServiceError
from app.services.token_service import TokenService


class _RunnerStub:
    """System runner returning canned results per operation."""

    def __init__(self, results: Mapping[SystemOperation, SystemResult] | None = None) -> None:
        self.results = dict(results or {})
        self.calls: list[tuple[SystemOperation, dict[str, Any]]] = []

    async def __call__(
        self, operation: SystemOperation, params: dict[str, Any]
    ) -> SystemResult:
        self.calls.append((operation, dict(params)))
        return self.results.get(operation, SystemResult(rowcount=0))


def _jwt_service() -> JWTService:
    return JWTService(
        access_secret="a" * 48,
        refresh_secret="r" * 48,
        access_token_ttl_seconds=900,
        refresh_token_ttl_seconds=604800,
    )


def _record(user_id: str, revoked: bool = False, expires_in: int = 3600) -> SystemResult:
    return SystemResult(
        rowcount=1,
        rows=(
            {
                "id": uuid4(),
                "user_id": user_id,
                "expires_at": datetime.now(UTC) + timedelta(seconds=expires_in),
                "revoked": revoked,
                "revoked_at": None,
                "revoked_reason": None,
            },
        ),
    )


async def test_start_session_revokes_before_storing_hash() -> None:
    """A new session revokes earlier refresh tokens and stores only a hash."""
    runner = _RunnerStub({SystemOperation.REVOKE_USER_REFRESH_TOKENS: SystemResult(rowcount=2)})
    service = TokenService(jwt_service=_jwt_service(), runner=runner)
    user_id = uuid4()

    pair = await service.start_session(
        user_id=user_id,
        username="alice",
        role="user",
        revoke_reason="new_login",
        ip_address="203.0.113.9",
    )

    operations = [operation for operation, _ in runner.calls]
    assert operations == [
        SystemOperation.REVOKE_USER_REFRESH_TOKENS,
        SystemOperation.INSERT_REFRESH_TOKEN,
    ]
    assert runner.calls[0][1] == {"user_id": user_id, "reason": "new_login"}
    stored = runner.calls[1][1]
    assert stored["token_hash"] == TokenService.hash_token(pair.refresh_token)
    assert stored["token_hash"] != pair.refresh_token
    assert stored["ip_address"] == "203.0.113.9"
    assert pair.access_token != pair.refresh_token


async def test_refresh_access_token_issues_access_token_for_live_record() -> None:
    """A live record yields a verifiable access token for the same principal."""
    jwt_service = _jwt_service()
    user_id = str(uuid4())
    refresh_token = jwt_service.issue_token(user_id, "alice", "user", "refresh")
    runner = _RunnerStub({SystemOperation.FIND_REFRESH_TOKEN: _record(user_id)})
    service = TokenService(jwt_service=jwt_service, runner=runner)

    claims, access_token = await service.refresh_access_token(refresh_token)

    assert claims.principal_id == user_id
    assert jwt_service.verify_token(access_token, "access").principal_id == user_id
    assert runner.calls[0][1] == {"token_hash": TokenService.hash_token(refresh_token)}


@pytest.mark.parametrize(
    "found",
    [
        None,
        "revoked",
        "expired",
        "other_user",
    ],
)
async def test_refresh_access_token_rejects_unusable_records(found: str | None) -> None:
    """Missing, revoked, expired or mismatched records end the session."""
    jwt_service = _jwt_service()
    user_id = str(uuid4())
    refresh_token = jwt_service.issue_token(user_id, "alice", "user", "refresh")
    results: dict[SystemOperation, SystemResult] = {}
    if found == "revoked":
        results[SystemOperation.FIND_REFRESH_TOKEN] = _record(user_id, revoked=True)
    elif found == "expired":
        results[SystemOperation.FIND_REFRESH_TOKEN] = _record(user_id, expires_in=-60)
    elif found == "other_user":
        results[SystemOperation.FIND_REFRESH_TOKEN] = _record(str(uuid4()))
    service = TokenService(jwt_service=jwt_service, runner=_RunnerStub(results))

    with pytest.raises(ServiceError) as exc_info:
        await service.refresh_access_token(refresh_token)

    assert exc_info.value.code == "session_expired"
    assert exc_info.value.status_code == 401


async def test_refresh_access_token_rejects_access_token_before_lookup() -> None:
    """An access token presented as a refresh token never reaches the store."""
    jwt_service = _jwt_service()
    access_token = jwt_service.issue_token(str(uuid4()), "alice", "user", "access")
    runner = _RunnerStub()
    service = TokenService(jwt_service=jwt_service, runner=runner)

    with pytest.raises(TokenValidationError):
        await service.refresh_access_token(access_token)

    assert runner.calls == []


async def test_revoke_reports_whether_a_record_changed() -> None:
    """revoke() is True only when a live record was revoked."""
    runner = _RunnerStub({SystemOperation.REVOKE_REFRESH_TOKEN: SystemResult(rowcount=1)})
    service = TokenService(jwt_service=_jwt_service(), runner=runner)

    assert await service.revoke("raw", reason="user_logout") is True
    assert runner.calls[0][1] == {
        "token_hash": TokenService.hash_token("raw"),
        "reason": "user_logout",
    }
    assert await TokenService(_jwt_service(), _RunnerStub()).revoke("raw", "user_logout") is False
