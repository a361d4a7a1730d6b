"""Friend requests and friendships."""

from __future__ import annotations

from datetime import UTC, datetime
from functools import lru_cache
from uuid import UUID

import structlog
from fastapi import Request
from sqlalchemy import and_, case, delete, or_, select

from app.core.row_scope import RowScope
from app.models.friendship import Friendship, FriendshipStatus
from app.models.notification import NotificationType
from app.models.user import User
from app.schemas.social import FriendRequestView, FriendView
from app.schemas.user import UserSearchResult
from app.services.audit_service import AuditService, get_audit_service
from app.services.errors import ServiceError
from app.services.notification_service import NotificationService, get_notification_service
from app.services.user_service import UserService, get_user_service

logger = structlog.get_logger(__name__)


def _between(first: UUID, second: UUID):
    """Match a friendship row in either direction."""
    return or_(
        and_(Friendship.user_id == first, Friendship.friend_id == second),
        and_(Friendship.user_id == second, Friendship.friend_id == first),
    )


class FriendsService:
    """Manage friend requests within the caller's row scope."""

    def __init__(
        self,
        user_service: UserService,
        notification_service: NotificationService,
        audit_service: AuditService,
    ) -> None:
        self._user_service = user_service
        self._notifications = notification_service
        self._audit_service = audit_service

    async def search_users(self, scope: RowScope, query: str) -> list[UserSearchResult]:
        """Search other users by username fragment."""
        users = await self._user_service.search_users(
            db_session=scope.session, query=query, exclude_user_id=scope.principal.id
        )
        return [UserSearchResult(id=user.id, username=user.username) for user in users]

    async def send_request(self, scope: RowScope, username: str, request: Request) -> UUID:
        """Create a pending request to the named user and notify them."""
        principal = scope.principal
        target = await self._user_service.get_user_by_username(scope.session, username)
        if target is None:
            raise ServiceError("User not found.", "not_found", 404)
        if target.id == principal.id:
            raise ServiceError(
                "Cannot send friend request to yourself.", "invalid_request", 400
            )

        existing = await scope.session.execute(
            select(Friendship.status).where(_between(principal.id, target.id))
        )
        status = existing.scalars().first()
        if status == FriendshipStatus.ACCEPTED.value:
            raise ServiceError("Already friends.", "conflict", 400)
        if status == FriendshipStatus.PENDING.value:
            raise ServiceError("Friend request already sent.", "conflict", 400)

        friendship = Friendship(
            user_id=principal.id,
            friend_id=target.id,
            status=FriendshipStatus.PENDING.value,
        )
        scope.session.add(friendship)
        await scope.session.flush()

        await self._notifications.deliver(
            scope=scope,
            recipient_id=target.id,
            notification_type=NotificationType.FRIEND_REQUEST,
            message=f"{principal.display_name} sent you a friend request",
            from_user_id=principal.id,
            related_id=friendship.id,
        )
        await self._audit_service.record(
            scope=scope,
            action="friend.request_sent",
            request=request,
            user_id=principal.id,
            resource_type="friendship",
            resource_id=friendship.id,
            details={"friend_id": str(target.id)},
        )
        logger.info("friend_request_sent", user_id=str(principal.id), friend_id=str(target.id))
        return friendship.id

    async def pending_requests(self, scope: RowScope) -> list[FriendRequestView]:
        """Requests other users have sent to the caller."""
        result = await scope.session.execute(
            select(Friendship.id, Friendship.user_id, User.username, Friendship.requested_at)
            .join(User, User.id == Friendship.user_id)
            .where(
                Friendship.friend_id == scope.principal.id,
                Friendship.status == FriendshipStatus.PENDING.value,
            )
            .order_by(Friendship.requested_at.desc())
        )
        return [
            FriendRequestView(
                id=row.id, user_id=row.user_id, username=row.username, requested_at=row.requested_at
            )
            for row in result.all()
        ]

    async def accept_request(self, scope: RowScope, friendship_id: UUID, request: Request) -> None:
        """Accept a pending request addressed to the caller."""
        friendship = await self._load_pending(scope, friendship_id)
        friendship.status = FriendshipStatus.ACCEPTED.value
        friendship.accepted_at = datetime.now(UTC)
        await scope.session.flush()

        await self._notifications.deliver(
            scope=scope,
            recipient_id=friendship.user_id,
            notification_type=NotificationType.FRIEND_ACCEPTED,
            message=f"{scope.principal.display_name} accepted your friend request",
            from_user_id=scope.principal.id,
            related_id=friendship.id,
        )
        await self._audit_service.record(
            scope=scope,
            action="friend.request_accepted",
            request=request,
            user_id=scope.principal.id,
            resource_type="friendship",
            resource_id=friendship.id,
        )

    async def reject_request(self, scope: RowScope, friendship_id: UUID, request: Request) -> None:
        """Delete a pending request addressed to the caller."""
        friendship = await self._load_pending(scope, friendship_id)
        await scope.session.delete(friendship)
        await scope.session.flush()
        await self._audit_service.record(
            scope=scope,
            action="friend.request_rejected",
            request=request,
            user_id=scope.principal.id,
            resource_type="friendship",
            resource_id=friendship_id,
        )

    async def list_friends(self, scope: RowScope) -> list[FriendView]:
        """Accepted friendships of the caller, ordered by username."""
        me = scope.principal.id
        other_id = case((Friendship.user_id == me, Friendship.friend_id), else_=Friendship.user_id)
        result = await scope.session.execute(
            select(Friendship.id, User.id, User.username, Friendship.accepted_at)
            .join(User, User.id == other_id)
            .where(
                or_(Friendship.user_id == me, Friendship.friend_id == me),
                Friendship.status == FriendshipStatus.ACCEPTED.value,
            )
            .order_by(User.username)
        )
        return [
            FriendView(
                friendship_id=friendship_id,
                id=user_id,
                username=username,
                accepted_at=accepted_at,
            )
            for friendship_id, user_id, username, accepted_at in result.all()
        ]

    async def remove_friend(self, scope: RowScope, friend_id: UUID, request: Request) -> None:
        """Delete an accepted friendship in either direction."""
        result = await scope.session.execute(
            delete(Friendship).where(
                _between(scope.principal.id, friend_id),
                Friendship.status == FriendshipStatus.ACCEPTED.value,
            )
        )
        if result.rowcount == 0:
            raise ServiceError("Friendship not found.", "not_found", 404)
        await self._audit_service.record(
            scope=scope,
            action="friend.removed",
            request=request,
            user_id=scope.principal.id,
            resource_type="user",
            resource_id=friend_id,
        )

    async def are_friends(self, scope: RowScope, other_id: UUID) -> bool:
        """True when an accepted friendship links the caller and other_id."""
        result = await scope.session.execute(
            select(Friendship.id).where(
                _between(scope.principal.id, other_id),
                Friendship.status == FriendshipStatus.ACCEPTED.value,
            )
        )
        return result.first() is not None

    @staticmethod
    async def _load_pending(scope: RowScope, friendship_id: UUID) -> Friendship:
        """Fetch a pending request addressed to the caller."""
        result = await scope.session.execute(
            select(Friendship).where(
                Friendship.id == friendship_id,
                Friendship.friend_id == scope.principal.id,
                Friendship.status == FriendshipStatus.PENDING.value,
            )
        )
        friendship = result.scalar_one_or_none()
        if friendship is None:
            raise ServiceError("Friend request not found.", "not_found", 404)
        return friendship


@lru_cache
def get_friends_service() -> FriendsService:
    """Build and cache the friends service."""
    return FriendsService(
        user_service=get_user_service(),
        notification_service=get_notification_service(),
        audit_service=get_audit_service(),
    )
