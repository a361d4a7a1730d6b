"""Note routes bound to the caller's row-scoped transaction."""

from __future__ import annotations

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Request, status

from app.core.row_scope import CurrentRowScope
from app.schemas.note import NoteCreateRequest, NoteListResponse, NoteResponse, NoteUpdateRequest
from app.schemas.user import MessageResponse
from app.services.notes_service import NotesService, get_notes_service

router = APIRouter(prefix="/api/notes", tags=["notes"])

NotesServiceDep = Annotated[NotesService, Depends(get_notes_service)]


@router.get("", response_model=NoteListResponse)
async def list_notes(
    request: Request, scope: CurrentRowScope, notes_service: NotesServiceDep
) -> NoteListResponse:
    """List the caller's notes."""
    return NoteListResponse(notes=await notes_service.list_notes(scope, request))


@router.post("", response_model=NoteResponse, status_code=status.HTTP_201_CREATED)
async def create_note(
    payload: NoteCreateRequest,
    request: Request,
    scope: CurrentRowScope,
    notes_service: NotesServiceDep,
) -> NoteResponse:
    """Create a note, encrypted unless the caller opts out."""
    return await notes_service.create_note(
        scope,
        title=payload.title,
        content=payload.content,
        encrypted=payload.encrypted,
        request=request,
    )


@router.get("/{note_id}", response_model=NoteResponse)
async def get_note(
    note_id: UUID, request: Request, scope: CurrentRowScope, notes_service: NotesServiceDep
) -> NoteResponse:
    """Fetch one owned note."""
    return await notes_service.get_note(scope, note_id, request)


@router.put("/{note_id}", response_model=NoteResponse)
async def update_note(
    note_id: UUID,
    payload: NoteUpdateRequest,
    request: Request,
    scope: CurrentRowScope,
    notes_service: NotesServiceDep,
) -> NoteResponse:
    """Replace an owned note."""
    return await notes_service.update_note(
        scope,
        note_id,
        title=payload.title,
        content=payload.content,
        encrypted=payload.encrypted,
        request=request,
    )


@router.delete("/{note_id}", response_model=MessageResponse)
async def delete_note(
    note_id: UUID, request: Request, scope: CurrentRowScope, notes_service: NotesServiceDep
) -> MessageResponse:
    """Delete an owned note."""
    await notes_service.delete_note(scope, note_id, request)
    return MessageResponse(message="Note deleted successfully.")
