"""Access/refresh token issuance and server-side refresh token records."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from typing import Any
from uuid import UUID, uuid4

import structlog

from app.core.jwt import JWTService, TokenClaims, get_jwt_service
from app.core.system_hatch import SystemOperation, run_as_system
from app.services.audit_service import SystemRunner
from app.services.errors import ServiceError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class TokenPair:
    """Returned access and refresh JWT pair."""

    access_token: str
    refresh_token: str


class TokenService:
    """Issue tokens and keep at most one live refresh token per user."""

    def __init__(self, jwt_service: JWTService, runner: SystemRunner | None = None) -> None:
        self._jwt_service = jwt_service
        self._run = runner or run_as_system

    @property
    def access_ttl_seconds(self) -> int:
        """Lifetime of issued access tokens."""
        return self._jwt_service.ttl_seconds("access")

    @property
    def refresh_ttl_seconds(self) -> int:
        """Lifetime of issued refresh tokens."""
        return self._jwt_service.ttl_seconds("refresh")

    @staticmethod
    def hash_token(raw_token: str) -> str:
        """Hash a refresh token for storage and lookup."""
        return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()

    async def start_session(
        self,
        user_id: UUID,
        username: str,
        role: str,
        revoke_reason: str,
        ip_address: str | None = None,
    ) -> TokenPair:
        """Revoke prior refresh tokens, then issue and persist a fresh pair."""
        await self.revoke_all(user_id=user_id, reason=revoke_reason)
        now = datetime.now(UTC)
        access_token = self._jwt_service.issue_token(
            principal_id=str(user_id),
            display_name=username,
            role=role,
            kind="access",
            now=now,
        )
        refresh_token = self._jwt_service.issue_token(
            principal_id=str(user_id),
            display_name=username,
            role=role,
            kind="refresh",
            now=now,
        )
        await self._run(
            SystemOperation.INSERT_REFRESH_TOKEN,
            {
                "id": uuid4(),
                "user_id": user_id,
                "token_hash": self.hash_token(refresh_token),
                "expires_at": now + timedelta(seconds=self.refresh_ttl_seconds),
                "ip_address": ip_address,
            },
        )
        return TokenPair(access_token=access_token, refresh_token=refresh_token)

    async def revoke_all(self, user_id: UUID, reason: str) -> int:
        """Revoke every live refresh token belonging to a user."""
        result = await self._run(
            SystemOperation.REVOKE_USER_REFRESH_TOKENS,
            {"user_id": user_id, "reason": reason},
        )
        if result.rowcount:
            logger.info("refresh_tokens_revoked", user_id=str(user_id), count=result.rowcount)
        return result.rowcount

    async def revoke(self, raw_token: str, reason: str) -> bool:
        """Revoke one refresh token by value."""
        result = await self._run(
            SystemOperation.REVOKE_REFRESH_TOKEN,
            {"token_hash": self.hash_token(raw_token), "reason": reason},
        )
        return result.rowcount > 0

    async def find_record(self, raw_token: str) -> dict[str, Any] | None:
        """Load the server-side record for a refresh token."""
        result = await self._run(
            SystemOperation.FIND_REFRESH_TOKEN,
            {"token_hash": self.hash_token(raw_token)},
        )
        row = result.first()
        return dict(row) if row is not None else None

    async def refresh_access_token(self, raw_refresh_token: str) -> tuple[TokenClaims, str]:
        """Validate a refresh token against its record and mint a new access token.

        Token verification errors propagate as ``TokenValidationError``.
        """
        claims = self._jwt_service.verify_token(raw_refresh_token, "refresh")
        record = await self.find_record(raw_refresh_token)
        if record is None or record["revoked"]:
            raise ServiceError("Invalid refresh token.", "session_expired", 401)
        if str(record["user_id"]) != claims.principal_id:
            raise ServiceError("Invalid refresh token.", "session_expired", 401)
        expires_at: datetime = record["expires_at"]
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        if expires_at <= datetime.now(UTC):
            raise ServiceError("Refresh token expired.", "session_expired", 401)

        access_token = self._jwt_service.issue_token(
            principal_id=claims.principal_id,
            display_name=claims.display_name,
            role=claims.role,
            kind="access",
        )
        return claims, access_token


@lru_cache
def get_token_service() -> TokenService:
    """Build and cache token service based on application settings."""
    return TokenService(jwt_service=get_jwt_service())
