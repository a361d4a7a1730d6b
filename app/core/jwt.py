"""JWT issuance and verification for access and refresh credentials."""

from __future__ import annotations

import hmac
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from typing import Any, Literal
from uuid import uuid4

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTClaimsError, JWTError

from app.config import get_settings

TokenKind = Literal["access", "refresh"]
JWT_ALGORITHM = "HS256"
_REQUIRED_CLAIMS = ("sub", "name", "role", "iat", "exp", "type", "jti")


class TokenValidationError(Exception):
    """Raised when JWT validation fails."""

    def __init__(self, detail: str, code: str) -> None:
        super().__init__(detail)
        self.detail = detail
        self.code = code

    @property
    def is_tampering_signal(self) -> bool:
        """Malformed or forged tokens are evidence of tampering, expiry is not."""
        return self.code in {"malformed_token", "bad_signature"}


@dataclass(frozen=True)
class TokenClaims:
    """Verified claim set carried by an access or refresh token."""

    principal_id: str
    display_name: str
    role: str
    issued_at: datetime
    expires_at: datetime
    kind: TokenKind
    token_id: str


class JWTService:
    """Service for issuing and verifying HS256 tokens with one secret per kind."""

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        access_token_ttl_seconds: int,
        refresh_token_ttl_seconds: int,
    ) -> None:
        if hmac.compare_digest(access_secret, refresh_secret):
            raise ValueError("Access and refresh secrets must differ.")
        self._secrets: dict[str, str] = {"access": access_secret, "refresh": refresh_secret}
        self._ttls: dict[str, int] = {
            "access": access_token_ttl_seconds,
            "refresh": refresh_token_ttl_seconds,
        }

    def ttl_seconds(self, kind: TokenKind) -> int:
        """Return configured lifetime for a token kind."""
        return self._ttls[kind]

    def issue_token(
        self,
        principal_id: str,
        display_name: str,
        role: str,
        kind: TokenKind,
        now: datetime | None = None,
    ) -> str:
        """Issue a signed token for the principal with the kind-specific lifetime."""
        issued_at = now or datetime.now(UTC)
        expires_at = issued_at + timedelta(seconds=self._ttls[kind])
        payload = {
            "jti": str(uuid4()),
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "sub": principal_id,
            "name": display_name,
            "role": role,
            "type": kind,
        }
        return jwt.encode(payload, self._secrets[kind], algorithm=JWT_ALGORITHM)

    def verify_token(self, token: str, kind: TokenKind) -> TokenClaims:
        """Verify signature, expiry and claim shape for the expected kind."""
        if not isinstance(token, str) or not token.strip():
            raise TokenValidationError("Invalid token.", "malformed_token")
        try:
            header = jwt.get_unverified_header(token)
            jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise TokenValidationError("Invalid token.", "malformed_token") from exc

        algorithm = str(header.get("alg", ""))
        if not hmac.compare_digest(algorithm, JWT_ALGORITHM):
            raise TokenValidationError("Invalid token.", "bad_signature")

        try:
            payload = jwt.decode(
                token,
                self._secrets[kind],
                algorithms=[JWT_ALGORITHM],
                options={
                    "verify_aud": False,
                    "require_jti": True,
                    "require_iat": True,
                    "require_exp": True,
                    "require_sub": True,
                },
            )
        except ExpiredSignatureError as exc:
            raise TokenValidationError("Token has expired.", "token_expired") from exc
        except JWTClaimsError as exc:
            raise TokenValidationError("Invalid token.", "malformed_token") from exc
        except JWTError as exc:
            raise TokenValidationError("Invalid token.", "bad_signature") from exc

        return self._claims_from_payload(payload, kind)

    @staticmethod
    def _claims_from_payload(payload: dict[str, Any], kind: TokenKind) -> TokenClaims:
        """Validate decoded claims and convert them to a typed claim set."""
        if any(claim not in payload for claim in _REQUIRED_CLAIMS):
            raise TokenValidationError("Invalid token.", "malformed_token")
        token_type = str(payload["type"])
        if not hmac.compare_digest(token_type, kind):
            raise TokenValidationError("Invalid token type.", "malformed_token")
        try:
            issued_at = datetime.fromtimestamp(int(payload["iat"]), UTC)
            expires_at = datetime.fromtimestamp(int(payload["exp"]), UTC)
        except (TypeError, ValueError) as exc:
            raise TokenValidationError("Invalid token.", "malformed_token") from exc
        return TokenClaims(
            principal_id=str(payload["sub"]),
            display_name=str(payload["name"]),
            role=str(payload["role"]),
            issued_at=issued_at,
            expires_at=expires_at,
            kind=kind,
            token_id=str(payload["jti"]),
        )


@lru_cache
def get_jwt_service() -> JWTService:
    """Build and cache the JWT service from application settings."""
    settings = get_settings()
    return JWTService(
        access_secret=settings.jwt.access_secret.get_secret_value(),
        refresh_secret=settings.jwt.refresh_secret.get_secret_value(),
        access_token_ttl_seconds=settings.jwt.access_token_ttl_seconds,
        refresh_token_ttl_seconds=settings.jwt.refresh_token_ttl_seconds,
    )
