"""Notification inbox routes."""

from __future__ import annotations

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends

from app.core.row_scope import CurrentRowScope
from app.schemas.social import NotificationListResponse
from app.schemas.user import MessageResponse
from app.services.notification_service import NotificationService, get_notification_service

router = APIRouter(prefix="/api/notifications", tags=["notifications"])

NotificationServiceDep = Annotated[NotificationService, Depends(get_notification_service)]


@router.get("", response_model=NotificationListResponse)
async def list_notifications(
    scope: CurrentRowScope, notification_service: NotificationServiceDep
) -> NotificationListResponse:
    """Return the caller's inbox."""
    notifications, unread_count = await notification_service.list_notifications(scope)
    return NotificationListResponse(notifications=notifications, unread_count=unread_count)


@router.put("/read-all", response_model=MessageResponse)
async def mark_all_read(
    scope: CurrentRowScope, notification_service: NotificationServiceDep
) -> MessageResponse:
    """Mark every notification as read."""
    count = await notification_service.mark_all_read(scope)
    return MessageResponse(message=f"Marked {count} notifications as read.")


@router.put("/{notification_id}/read", response_model=MessageResponse)
async def mark_read(
    notification_id: UUID, scope: CurrentRowScope, notification_service: NotificationServiceDep
) -> MessageResponse:
    """Mark one notification as read."""
    await notification_service.mark_read(scope, notification_id)
    return MessageResponse(message="Notification marked as read.")


@router.delete("/{notification_id}", response_model=MessageResponse)
async def delete_notification(
    notification_id: UUID, scope: CurrentRowScope, notification_service: NotificationServiceDep
) -> MessageResponse:
    """Delete one notification."""
    await notification_service.delete_notification(scope, notification_id)
    return MessageResponse(message="Notification deleted.")
