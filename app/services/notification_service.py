"""Inbox delivery and management."""

from __future__ import annotations

from functools import lru_cache
from uuid import UUID, uuid4

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import aliased

from app.core.row_scope import RowScope
from app.core.system_hatch import SystemOperation, run_as_system
from app.models.notification import Notification, NotificationType
from app.models.user import User
from app.schemas.social import NotificationView
from app.services.audit_service import SystemRunner
from app.services.errors import ServiceError

_INBOX_LIMIT = 50


class NotificationService:
    """Deliver notifications across users and manage the caller's inbox."""

    def __init__(self, runner: SystemRunner | None = None) -> None:
        self._run = runner or run_as_system

    async def deliver(
        self,
        recipient_id: UUID,
        notification_type: NotificationType,
        message: str,
        from_user_id: UUID | None = None,
        related_id: UUID | None = None,
        scope: RowScope | None = None,
    ) -> None:
        """Write into another user's inbox through the system path.

        With ``scope`` the write waits for that request's commit, so a rolled back
        action never leaves a notification behind.
        """
        params = {
            "id": uuid4(),
            "user_id": recipient_id,
            "type": NotificationType(notification_type).value,
            "from_user_id": from_user_id,
            "related_id": related_id,
            "message": message,
        }

        async def _insert() -> None:
            await self._run(SystemOperation.INSERT_NOTIFICATION, params)

        if scope is None:
            await _insert()
        else:
            scope.after_commit(_insert)

    async def list_notifications(self, scope: RowScope) -> tuple[list[NotificationView], int]:
        """Return the newest inbox entries, unread first, plus the unread count."""
        sender = aliased(User)
        result = await scope.session.execute(
            select(Notification, sender.username)
            .outerjoin(sender, sender.id == Notification.from_user_id)
            .where(Notification.user_id == scope.principal.id)
            .order_by(Notification.is_read.asc(), Notification.created_at.desc())
            .limit(_INBOX_LIMIT)
        )
        views = [
            NotificationView(
                id=notification.id,
                type=notification.type,
                from_user_id=notification.from_user_id,
                from_username=from_username,
                related_id=notification.related_id,
                message=notification.message,
                is_read=notification.is_read,
                created_at=notification.created_at,
            )
            for notification, from_username in result.all()
        ]
        unread = await scope.session.execute(
            select(func.count())
            .select_from(Notification)
            .where(Notification.user_id == scope.principal.id, Notification.is_read.is_(False))
        )
        return views, int(unread.scalar_one())

    async def mark_read(self, scope: RowScope, notification_id: UUID) -> None:
        """Mark one notification as read."""
        result = await scope.session.execute(
            update(Notification)
            .where(
                Notification.id == notification_id,
                Notification.user_id == scope.principal.id,
            )
            .values(is_read=True)
        )
        if result.rowcount == 0:
            raise ServiceError("Notification not found.", "not_found", 404)

    async def mark_all_read(self, scope: RowScope) -> int:
        """Mark every unread notification as read."""
        result = await scope.session.execute(
            update(Notification)
            .where(
                Notification.user_id == scope.principal.id,
                Notification.is_read.is_(False),
            )
            .values(is_read=True)
        )
        return int(result.rowcount or 0)

    async def delete_notification(self, scope: RowScope, notification_id: UUID) -> None:
        """Delete one notification."""
        result = await scope.session.execute(
            delete(Notification).where(
                Notification.id == notification_id,
                Notification.user_id == scope.principal.id,
            )
        )
        if result.rowcount == 0:
            raise ServiceError("Notification not found.", "not_found", 404)


@lru_cache
def get_notification_service() -> NotificationService:
    """Create and cache notification service dependency."""
    return NotificationService()
