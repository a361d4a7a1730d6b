"""Note sharing routes."""

from __future__ import annotations

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Request, status

from app.core.row_scope import CurrentRowScope
from app.schemas.note import SharedNoteUpdateRequest
from app.schemas.social import (
    ShareCreateRequest,
    SharedNoteListResponse,
    SharedNoteView,
    ShareListResponse,
    SharePermissionUpdate,
)
from app.schemas.user import MessageResponse
from app.services.sharing_service import SharingService, get_sharing_service

router = APIRouter(prefix="/api/sharing", tags=["sharing"])

SharingServiceDep = Annotated[SharingService, Depends(get_sharing_service)]


@router.get("/shared-with-me", response_model=SharedNoteListResponse)
async def shared_with_me(
    request: Request, scope: CurrentRowScope, sharing_service: SharingServiceDep
) -> SharedNoteListResponse:
    """List notes other users shared with the caller."""
    return SharedNoteListResponse(notes=await sharing_service.shared_with_me(scope, request))


@router.get("/shared-with-me/{note_id}", response_model=SharedNoteView)
async def get_shared_note(
    note_id: UUID, request: Request, scope: CurrentRowScope, sharing_service: SharingServiceDep
) -> SharedNoteView:
    """Fetch one note shared with the caller."""
    return await sharing_service.get_shared_note(scope, note_id, request)


@router.put("/shared-with-me/{note_id}", response_model=SharedNoteView)
async def update_shared_note(
    note_id: UUID,
    payload: SharedNoteUpdateRequest,
    request: Request,
    scope: CurrentRowScope,
    sharing_service: SharingServiceDep,
) -> SharedNoteView:
    """Edit a note shared with write permission."""
    return await sharing_service.update_shared_note(
        scope, note_id, title=payload.title, content=payload.content, request=request
    )


@router.delete("/shared-with-me/{note_id}", response_model=MessageResponse)
async def leave_shared_note(
    note_id: UUID, request: Request, scope: CurrentRowScope, sharing_service: SharingServiceDep
) -> MessageResponse:
    """Stop receiving a shared note."""
    await sharing_service.leave_shared_note(scope, note_id, request)
    return MessageResponse(message="Left shared note.")


@router.post(
    "/notes/{note_id}/shares",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def share_note(
    note_id: UUID,
    payload: ShareCreateRequest,
    request: Request,
    scope: CurrentRowScope,
    sharing_service: SharingServiceDep,
) -> MessageResponse:
    """Share an owned note with an accepted friend."""
    await sharing_service.share_note(
        scope, note_id, payload.friend_id, payload.permission, request
    )
    return MessageResponse(message="Note shared successfully.")


@router.get("/notes/{note_id}/shares", response_model=ShareListResponse)
async def list_shares(
    note_id: UUID, scope: CurrentRowScope, sharing_service: SharingServiceDep
) -> ShareListResponse:
    """List who an owned note is shared with."""
    return ShareListResponse(shares=await sharing_service.list_shares(scope, note_id))


@router.put("/notes/{note_id}/shares/{friend_id}", response_model=MessageResponse)
async def update_permission(
    note_id: UUID,
    friend_id: UUID,
    payload: SharePermissionUpdate,
    request: Request,
    scope: CurrentRowScope,
    sharing_service: SharingServiceDep,
) -> MessageResponse:
    """Change a recipient's permission."""
    await sharing_service.update_permission(
        scope, note_id, friend_id, payload.permission, request
    )
    return MessageResponse(message="Permission updated successfully.")


@router.delete("/notes/{note_id}/shares/{friend_id}", response_model=MessageResponse)
async def unshare_note(
    note_id: UUID,
    friend_id: UUID,
    request: Request,
    scope: CurrentRowScope,
    sharing_service: SharingServiceDep,
) -> MessageResponse:
    """Revoke a recipient's access."""
    await sharing_service.unshare_note(scope, note_id, friend_id, request)
    return MessageResponse(message="Note unshared successfully.")
