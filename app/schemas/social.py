"""Friendship, sharing and notification schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field

from app.schemas.user import UserSearchResult


class FriendRequestCreate(BaseModel):
    """Send a friend request by username."""

    username: str = Field(min_length=3, max_length=50)


class FriendRequestView(BaseModel):
    """Pending friend request received by the caller."""

    id: UUID
    user_id: UUID
    username: str
    requested_at: datetime


class FriendView(BaseModel):
    """Accepted friend of the caller."""

    friendship_id: UUID
    id: UUID
    username: str
    accepted_at: datetime | None


class UserSearchResponse(BaseModel):
    """Username search results."""

    users: list[UserSearchResult]


class FriendRequestListResponse(BaseModel):
    """Pending friend requests."""

    requests: list[FriendRequestView]


class FriendListResponse(BaseModel):
    """Accepted friends."""

    friends: list[FriendView]


class ShareCreateRequest(BaseModel):
    """Share a note with an accepted friend."""

    friend_id: UUID
    permission: Literal["read", "write"] = "read"


class SharePermissionUpdate(BaseModel):
    """Change the permission on an existing share."""

    permission: Literal["read", "write"]


class ShareView(BaseModel):
    """Recipient of a note share."""

    id: UUID
    shared_with_id: UUID
    username: str
    permission: str
    shared_at: datetime


class ShareListResponse(BaseModel):
    """Shares for one note."""

    shares: list[ShareView]


class SharedNoteView(BaseModel):
    """Note visible to the caller through a share."""

    id: UUID
    title: str
    content: str
    encrypted: bool
    created_at: datetime
    updated_at: datetime
    owner_id: UUID
    owner_username: str
    permission: str
    shared_at: datetime


class SharedNoteListResponse(BaseModel):
    """Notes shared with the caller."""

    notes: list[SharedNoteView]


class NotificationView(BaseModel):
    """Inbox entry."""

    id: UUID
    type: str
    from_user_id: UUID | None
    from_username: str | None
    related_id: UUID | None
    message: str
    is_read: bool
    created_at: datetime


class NotificationListResponse(BaseModel):
    """Caller's inbox, unread first."""

    notifications: list[NotificationView]
    unread_count: int
