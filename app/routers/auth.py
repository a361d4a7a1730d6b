"""Authentication routes."""

from __future__ import annotations

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth_gate import CurrentPrincipal
from app.core.cookies import (
    REFRESH_COOKIE,
    clear_auth_cookies,
    set_access_cookie,
    set_refresh_cookie,
)
from app.core.jwt import TokenValidationError
from app.core.row_scope import CurrentRowScope
from app.dependencies import get_database_session
from app.models.security_event import SecuritySeverity
from app.models.user import User
from app.schemas.user import (
    AuthResponse,
    ChangePasswordRequest,
    LoginRequest,
    MessageResponse,
    RegisterRequest,
    UserSummary,
)
from app.services.audit_service import AuditService, extract_client_ip, get_audit_service
from app.services.errors import ServiceError
from app.services.security_events import (
    SecurityEventService,
    SecurityEventType,
    get_security_event_service,
)
from app.services.token_service import TokenService, get_token_service
from app.services.user_service import UserService, get_user_service

router = APIRouter(prefix="/api/auth", tags=["auth"])
logger = structlog.get_logger(__name__)


def _summary(user: User) -> UserSummary:
    """Public view of a user row."""
    return UserSummary(id=user.id, username=user.username, email=user.email, role=user.role)


async def _start_session(
    response: Response,
    request: Request,
    token_service: TokenService,
    user: User,
    revoke_reason: str,
) -> None:
    """Issue a fresh token pair and attach it as cookies."""
    token_pair = await token_service.start_session(
        user_id=user.id,
        username=user.username,
        role=user.role,
        revoke_reason=revoke_reason,
        ip_address=extract_client_ip(request),
    )
    set_access_cookie(response, token_pair.access_token, token_service.access_ttl_seconds)
    set_refresh_cookie(response, token_pair.refresh_token, token_service.refresh_ttl_seconds)


@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def register(
    payload: RegisterRequest,
    request: Request,
    response: Response,
    db_session: Annotated[AsyncSession, Depends(get_database_session)],
    user_service: Annotated[UserService, Depends(get_user_service)],
    token_service: Annotated[TokenService, Depends(get_token_service)],
) -> AuthResponse:
    """Create an account and sign it in."""
    user = await user_service.register(
        db_session=db_session,
        username=payload.username,
        email=payload.email,
        password=payload.password,
        request=request,
    )
    await _start_session(response, request, token_service, user, "new_registration")
    logger.info("user_registered", user_id=str(user.id))
    return AuthResponse(message="User registered successfully.", user=_summary(user))


@router.post("/login", response_model=AuthResponse)
async def login(
    payload: LoginRequest,
    request: Request,
    response: Response,
    db_session: Annotated[AsyncSession, Depends(get_database_session)],
    user_service: Annotated[UserService, Depends(get_user_service)],
    token_service: Annotated[TokenService, Depends(get_token_service)],
) -> AuthResponse:
    """Authenticate username/password credentials and set auth cookies."""
    user = await user_service.authenticate_user(
        db_session=db_session,
        username=payload.username,
        password=payload.password,
        request=request,
    )
    await _start_session(response, request, token_service, user, "new_login")
    return AuthResponse(message="Login successful.", user=_summary(user))


@router.post("/refresh", response_model=MessageResponse)
async def refresh(
    request: Request,
    response: Response,
    token_service: Annotated[TokenService, Depends(get_token_service)],
    audit_service: Annotated[AuditService, Depends(get_audit_service)],
    security_events: Annotated[SecurityEventService, Depends(get_security_event_service)],
) -> MessageResponse:
    """Mint a new access token from the refresh cookie."""
    raw_token = request.cookies.get(REFRESH_COOKIE)
    if not raw_token:
        raise ServiceError("Refresh token required.", "session_expired", 401)

    try:
        claims, access_token = await token_service.refresh_access_token(raw_token)
    except TokenValidationError as exc:
        if exc.is_tampering_signal:
            await security_events.record(
                event_type=SecurityEventType.INVALID_TOKEN,
                severity=SecuritySeverity.MEDIUM,
                request=request,
                details={"reason": exc.code, "kind": "refresh"},
            )
        raise ServiceError("Invalid refresh token.", "session_expired", 401) from exc

    set_access_cookie(response, access_token, token_service.access_ttl_seconds)
    await audit_service.record(
        action="token.refreshed",
        request=request,
        user_id=claims.principal_id,
    )
    return MessageResponse(message="Token refreshed successfully.")


@router.post("/logout", response_model=MessageResponse)
async def logout(
    request: Request,
    response: Response,
    principal: CurrentPrincipal,
    token_service: Annotated[TokenService, Depends(get_token_service)],
    audit_service: Annotated[AuditService, Depends(get_audit_service)],
) -> MessageResponse:
    """Revoke the presented refresh token and clear auth cookies."""
    raw_token = request.cookies.get(REFRESH_COOKIE)
    if raw_token:
        await token_service.revoke(raw_token, reason="user_logout")
    clear_auth_cookies(response)
    await audit_service.record(action="user.logout", request=request, user_id=principal.id)
    logger.info("user_logged_out", user_id=str(principal.id))
    return MessageResponse(message="Logged out successfully.")


@router.get("/me", response_model=UserSummary)
async def me(principal: CurrentPrincipal) -> UserSummary:
    """Return the authenticated user."""
    return UserSummary(
        id=principal.id,
        username=principal.display_name,
        email=principal.email,
        role=principal.role,
    )


@router.post("/change-password", response_model=MessageResponse)
async def change_password(
    payload: ChangePasswordRequest,
    request: Request,
    response: Response,
    scope: CurrentRowScope,
    user_service: Annotated[UserService, Depends(get_user_service)],
    token_service: Annotated[TokenService, Depends(get_token_service)],
    audit_service: Annotated[AuditService, Depends(get_audit_service)],
) -> MessageResponse:
    """Replace the caller's password and sign out every device."""
    await user_service.change_password(
        db_session=scope.session,
        user_id=scope.principal.id,
        current_password=payload.current_password,
        new_password=payload.new_password,
    )
    await token_service.revoke_all(user_id=scope.principal.id, reason="password_changed")
    clear_auth_cookies(response)
    await audit_service.record(
        action="user.password_changed", request=request, user_id=scope.principal.id
    )
    return MessageResponse(
        message="Password changed successfully. Please login again with your new password."
    )


@router.delete("/account", response_model=MessageResponse)
async def delete_account(
    request: Request,
    response: Response,
    scope: CurrentRowScope,
    user_service: Annotated[UserService, Depends(get_user_service)],
    audit_service: Annotated[AuditService, Depends(get_audit_service)],
) -> MessageResponse:
    """Delete the caller's account and everything it owns."""
    await audit_service.record(
        action="user.account_deletion", request=request, user_id=scope.principal.id
    )
    await user_service.delete_user(db_session=scope.session, user_id=scope.principal.id)
    clear_auth_cookies(response)
    logger.warning("account_deleted", user_id=str(scope.principal.id))
    return MessageResponse(message="Account successfully deleted.")
