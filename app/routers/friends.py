"""Friend request and friendship routes."""

from __future__ import annotations

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status

from app.core.row_scope import CurrentRowScope
from app.schemas.social import (
    FriendListResponse,
    FriendRequestCreate,
    FriendRequestListResponse,
    UserSearchResponse,
)
from app.schemas.user import MessageResponse
from app.services.friends_service import FriendsService, get_friends_service

router = APIRouter(prefix="/api/friends", tags=["friends"])

FriendsServiceDep = Annotated[FriendsService, Depends(get_friends_service)]


@router.get("/search", response_model=UserSearchResponse)
async def search_users(
    scope: CurrentRowScope,
    friends_service: FriendsServiceDep,
    username: Annotated[str, Query(min_length=2, max_length=50)],
) -> UserSearchResponse:
    """Search other users by username fragment."""
    return UserSearchResponse(users=await friends_service.search_users(scope, username))


@router.post("/request", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def send_request(
    payload: FriendRequestCreate,
    request: Request,
    scope: CurrentRowScope,
    friends_service: FriendsServiceDep,
) -> MessageResponse:
    """Send a friend request by username."""
    await friends_service.send_request(scope, payload.username, request)
    return MessageResponse(message="Friend request sent.")


@router.get("/requests", response_model=FriendRequestListResponse)
async def pending_requests(
    scope: CurrentRowScope, friends_service: FriendsServiceDep
) -> FriendRequestListResponse:
    """List requests waiting for the caller's answer."""
    return FriendRequestListResponse(requests=await friends_service.pending_requests(scope))


@router.post("/requests/{friendship_id}/accept", response_model=MessageResponse)
async def accept_request(
    friendship_id: UUID,
    request: Request,
    scope: CurrentRowScope,
    friends_service: FriendsServiceDep,
) -> MessageResponse:
    """Accept a pending request."""
    await friends_service.accept_request(scope, friendship_id, request)
    return MessageResponse(message="Friend request accepted.")


@router.post("/requests/{friendship_id}/reject", response_model=MessageResponse)
async def reject_request(
    friendship_id: UUID,
    request: Request,
    scope: CurrentRowScope,
    friends_service: FriendsServiceDep,
) -> MessageResponse:
    """Reject a pending request."""
    await friends_service.reject_request(scope, friendship_id, request)
    return MessageResponse(message="Friend request rejected.")


@router.get("", response_model=FriendListResponse)
async def list_friends(
    scope: CurrentRowScope, friends_service: FriendsServiceDep
) -> FriendListResponse:
    """List accepted friends."""
    return FriendListResponse(friends=await friends_service.list_friends(scope))


@router.delete("/{friend_id}", response_model=MessageResponse)
async def remove_friend(
    friend_id: UUID,
    request: Request,
    scope: CurrentRowScope,
    friends_service: FriendsServiceDep,
) -> MessageResponse:
    """Remove an accepted friend."""
    await friends_service.remove_friend(scope, friend_id, request)
    return MessageResponse(message="Friend removed.")
