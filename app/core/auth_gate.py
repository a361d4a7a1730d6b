"""Authentication gate resolving the access cookie into a live principal."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Annotated
from uuid import UUID

import structlog
from fastapi import Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cookies import ACCESS_COOKIE
from app.core.jwt import JWTService, TokenValidationError, get_jwt_service
from app.dependencies import get_database_session
from app.models.security_event import SecuritySeverity
from app.models.user import User
from app.services.security_events import (
    SecurityEventService,
    SecurityEventType,
    get_security_event_service,
)

logger = structlog.get_logger(__name__)

PRINCIPAL_STATE_KEY = "principal"


@dataclass(frozen=True)
class Principal:
    """Authenticated identity for one request, re-read from the users table."""

    id: UUID
    display_name: str
    email: str
    role: str


def _reject(detail: str, code: str) -> HTTPException:
    """Build the 401 rejection raised for every gate failure."""
    return HTTPException(status_code=401, detail={"detail": detail, "code": code})


async def require_principal(
    request: Request,
    db_session: Annotated[AsyncSession, Depends(get_database_session)],
    jwt_service: Annotated[JWTService, Depends(get_jwt_service)],
    security_events: Annotated[SecurityEventService, Depends(get_security_event_service)],
) -> Principal:
    """Verify the access cookie and resolve it to an existing user."""
    cached = getattr(request.state, PRINCIPAL_STATE_KEY, None)
    if isinstance(cached, Principal):
        return cached

    token = request.cookies.get(ACCESS_COOKIE)
    if not token:
        raise _reject("Access denied. No token provided.", "invalid_token")

    try:
        claims = jwt_service.verify_token(token, "access")
        principal_id = UUID(claims.principal_id)
    except TokenValidationError as exc:
        if exc.is_tampering_signal:
            await security_events.record(
                event_type=SecurityEventType.INVALID_TOKEN,
                severity=SecuritySeverity.MEDIUM,
                request=request,
                details={"reason": exc.code, "kind": "access"},
            )
            raise _reject("Invalid token.", "invalid_token") from exc
        raise _reject("Token expired.", "token_expired") from exc
    except ValueError as exc:
        await security_events.record(
            event_type=SecurityEventType.INVALID_TOKEN,
            severity=SecuritySeverity.MEDIUM,
            request=request,
            details={"reason": "malformed_subject", "kind": "access"},
        )
        raise _reject("Invalid token.", "invalid_token") from exc

    try:
        result = await db_session.execute(
            select(User.id, User.username, User.email, User.role).where(User.id == principal_id)
        )
        row = result.one_or_none()
    finally:
        # Hand the shared-pool connection back; the system path draws from the same pool.
        await db_session.rollback()
    if row is None:
        logger.info("principal_not_found", user_id=str(principal_id))
        raise _reject("User no longer exists.", "invalid_token")

    principal = Principal(id=row.id, display_name=row.username, email=row.email, role=row.role)
    setattr(request.state, PRINCIPAL_STATE_KEY, principal)
    structlog.contextvars.bind_contextvars(user_id=str(principal.id))
    return principal


CurrentPrincipal = Annotated[Principal, Depends(require_principal)]


def require_role(*roles: str) -> Callable[[Principal], Awaitable[Principal]]:
    """Require that the authenticated principal holds one of the allowed roles."""

    async def checker(principal: CurrentPrincipal) -> Principal:
        if principal.role not in roles:
            logger.info(
                "principal_role_refused", user_id=str(principal.id), role=principal.role
            )
            raise HTTPException(
                status_code=403, detail={"detail": "Insufficient role.", "code": "forbidden"}
            )
        return principal

    return checker
