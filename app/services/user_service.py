"""User registration, password verification and lockout services."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from functools import lru_cache
from uuid import UUID

import structlog
from fastapi import Request
from passlib.context import CryptContext
from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.models.security_event import SecuritySeverity
from app.models.user import User
from app.services.audit_service import AuditService, get_audit_service
from app.services.errors import ServiceError
from app.services.security_events import (
    SecurityEventService,
    SecurityEventType,
    get_security_event_service,
)

logger = structlog.get_logger(__name__)

_INVALID_CREDENTIALS = "Invalid username or password."


class UserService:
    """Service responsible for user accounts and password verification."""

    def __init__(
        self,
        audit_service: AuditService,
        security_events: SecurityEventService,
        max_failed_attempts: int,
        lockout_seconds: int,
    ) -> None:
        self._password_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
        self._audit_service = audit_service
        self._security_events = security_events
        self._max_failed_attempts = max_failed_attempts
        self._lockout_seconds = lockout_seconds

    async def get_user_by_username(self, db_session: AsyncSession, username: str) -> User | None:
        """Fetch a user by exact username."""
        result = await db_session.execute(select(User).where(User.username == username))
        return result.scalar_one_or_none()

    async def register(
        self,
        db_session: AsyncSession,
        username: str,
        email: str,
        password: str,
        request: Request,
    ) -> User:
        """Create a user after a case-insensitive uniqueness check."""
        existing = await db_session.execute(
            select(User.id).where(
                or_(
                    func.lower(User.username) == username.lower(),
                    func.lower(User.email) == email.lower(),
                )
            )
        )
        if existing.first() is not None:
            await self._audit_service.record(
                action="user.register.failure",
                request=request,
                success=False,
                details={"reason": "user_exists"},
            )
            raise ServiceError("Username or email already exists.", "conflict", 400)

        user = User(
            username=username,
            email=email,
            password_hash=self.hash_password(password),
            role="user",
            failed_login_attempts=0,
        )
        db_session.add(user)
        try:
            await db_session.commit()
        except IntegrityError as exc:
            await db_session.rollback()
            raise ServiceError("Username or email already exists.", "conflict", 400) from exc
        await db_session.refresh(user)

        await self._audit_service.record(
            action="user.register.success",
            request=request,
            user_id=user.id,
            resource_type="user",
            resource_id=user.id,
        )
        return user

    async def authenticate_user(
        self,
        db_session: AsyncSession,
        username: str,
        password: str,
        request: Request,
    ) -> User:
        """Authenticate credentials, applying failed-attempt lockout."""
        user = await self.get_user_by_username(db_session=db_session, username=username)
        if user is None:
            self._password_context.dummy_verify()
            await self._audit_service.record(
                action="user.login.failure",
                request=request,
                success=False,
                details={"reason": "unknown_user"},
            )
            raise ServiceError(_INVALID_CREDENTIALS, "invalid_credentials", 401)

        now = datetime.now(UTC)
        if user.account_locked_until is not None and user.account_locked_until > now:
            await self._audit_service.record(
                action="user.login.failure",
                request=request,
                user_id=user.id,
                success=False,
                details={"reason": "account_locked"},
            )
            raise ServiceError(
                "Account is locked. Please try again later.", "account_locked", 403
            )

        if not self.verify_password(password=password, password_hash=user.password_hash):
            await self._register_failed_attempt(db_session=db_session, user=user, request=request)
            raise ServiceError(_INVALID_CREDENTIALS, "invalid_credentials", 401)

        user.failed_login_attempts = 0
        user.account_locked_until = None
        user.last_login = now
        await db_session.commit()
        await self._audit_service.record(
            action="user.login.success",
            request=request,
            user_id=user.id,
        )
        return user

    async def change_password(
        self,
        db_session: AsyncSession,
        user_id: UUID,
        current_password: str,
        new_password: str,
    ) -> User:
        """Verify the current password and store a new hash."""
        # FOR NO KEY UPDATE so system-path inserts referencing the user are not blocked.
        result = await db_session.execute(
            select(User).where(User.id == user_id).with_for_update(key_share=True)
        )
        user = result.scalar_one_or_none()
        if user is None:
            raise ServiceError("User not found.", "not_found", 404)
        if not self.verify_password(password=current_password, password_hash=user.password_hash):
            raise ServiceError("Current password is incorrect.", "invalid_credentials", 401)
        if self.verify_password(password=new_password, password_hash=user.password_hash):
            raise ServiceError(
                "New password must be different from current password.",
                "invalid_request",
                400,
            )
        user.password_hash = self.hash_password(new_password)
        user.password_changed_at = datetime.now(UTC)
        await db_session.flush()
        return user

    async def delete_user(self, db_session: AsyncSession, user_id: UUID) -> None:
        """Delete a user; owned rows are removed by cascading foreign keys."""
        result = await db_session.execute(delete(User).where(User.id == user_id))
        if result.rowcount == 0:
            raise ServiceError("User not found.", "not_found", 404)

    async def search_users(
        self, db_session: AsyncSession, query: str, exclude_user_id: UUID, limit: int = 10
    ) -> list[User]:
        """Find users whose username contains the query, excluding the caller."""
        pattern = "%" + query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "%"
        result = await db_session.execute(
            select(User)
            .where(User.username.ilike(pattern, escape="\\"), User.id != exclude_user_id)
            .order_by(User.username)
            .limit(limit)
        )
        return list(result.scalars().all())

    def hash_password(self, password: str) -> str:
        """Generate a bcrypt hash for the provided password."""
        return str(self._password_context.hash(password))

    def verify_password(self, password: str, password_hash: str) -> bool:
        """Verify a plaintext password against the stored bcrypt hash."""
        return bool(self._password_context.verify(password, password_hash))

    async def _register_failed_attempt(
        self, db_session: AsyncSession, user: User, request: Request
    ) -> None:
        """Count a failed login and lock the account once the threshold is reached."""
        now = datetime.now(UTC)
        attempts = (user.failed_login_attempts or 0) + 1
        locked_until = None
        if attempts >= self._max_failed_attempts:
            locked_until = now + timedelta(seconds=self._lockout_seconds)

        user.failed_login_attempts = min(attempts, 100)
        user.last_failed_login = now
        user.account_locked_until = locked_until
        await db_session.commit()

        if locked_until is not None:
            logger.warning("account_locked", user_id=str(user.id), attempts=attempts)
            await self._security_events.record(
                event_type=SecurityEventType.ACCOUNT_LOCKED,
                severity=SecuritySeverity.MEDIUM,
                request=request,
                user_id=user.id,
                details={
                    "reason": "excessive_failed_logins",
                    "attempts": attempts,
                    "locked_until": locked_until.isoformat(),
                },
            )
        await self._audit_service.record(
            action="user.login.failure",
            request=request,
            user_id=user.id,
            success=False,
            details={"reason": "invalid_password", "attempts": attempts},
        )


@lru_cache
def get_user_service() -> UserService:
    """Build and cache the user service from application settings."""
    settings = get_settings()
    return UserService(
        audit_service=get_audit_service(),
        security_events=get_security_event_service(),
        max_failed_attempts=settings.lockout.max_attempts,
        lockout_seconds=settings.lockout.lockout_seconds,
    )
