"""Note CRUD running inside the caller's row-scoped transaction."""

from __future__ import annotations

from functools import lru_cache
from uuid import UUID

import structlog
from fastapi import Request
from sqlalchemy import select

from app.core.cipher import (
    CipherIntegrityError,
    NoteCipher,
    NoteCipherError,
    get_note_cipher,
)
from app.core.row_scope import RowScope
from app.models.note import Note
from app.models.security_event import SecuritySeverity
from app.schemas.note import NoteResponse
from app.services.audit_service import AuditService, get_audit_service
from app.services.errors import ServiceError
from app.services.security_events import (
    SecurityEventService,
    SecurityEventType,
    get_security_event_service,
)

logger = structlog.get_logger(__name__)


class NoteContentCodec:
    """Seal and reveal note content, reporting cipher failures as security events."""

    def __init__(self, cipher: NoteCipher, security_events: SecurityEventService) -> None:
        self._cipher = cipher
        self._security_events = security_events

    async def seal(
        self, content: str, encrypted: bool, request: Request, user_id: UUID
    ) -> str:
        """Return the value to persist for note content."""
        if not encrypted:
            return content
        try:
            return self._cipher.encrypt(content)
        except NoteCipherError as exc:
            logger.error("note_encryption_failed", user_id=str(user_id), error=exc.detail)
            await self._security_events.record(
                event_type=SecurityEventType.ENCRYPTION_FAILURE,
                severity=SecuritySeverity.MEDIUM,
                request=request,
                user_id=user_id,
                details={"error": exc.detail},
            )
            raise ServiceError("Failed to save note.", "internal_error", 500) from exc

    async def reveal(self, note: Note, request: Request, user_id: UUID) -> str:
        """Return plaintext content, failing the read on any cipher error."""
        if not note.encrypted:
            return note.content
        try:
            return self._cipher.decrypt(note.content)
        except CipherIntegrityError as exc:
            logger.error("note_integrity_failed", note_id=str(note.id), user_id=str(user_id))
            await self._security_events.record(
                event_type=SecurityEventType.INTEGRITY_FAILURE,
                severity=SecuritySeverity.HIGH,
                request=request,
                user_id=user_id,
                details={"note_id": str(note.id), "error": exc.detail},
            )
            raise ServiceError("Failed to decrypt note.", "decryption_failed", 500) from exc
        except NoteCipherError as exc:
            logger.error(
                "note_decryption_failed",
                note_id=str(note.id),
                user_id=str(user_id),
                error_type=type(exc).__name__,
                error=exc.detail,
            )
            raise ServiceError("Failed to decrypt note.", "decryption_failed", 500) from exc


class NotesService:
    """Create, read, update and delete the caller's own notes."""

    def __init__(self, codec: NoteContentCodec, audit_service: AuditService) -> None:
        self._codec = codec
        self._audit_service = audit_service

    @property
    def codec(self) -> NoteContentCodec:
        """Content codec shared with the sharing service."""
        return self._codec

    async def create_note(
        self,
        scope: RowScope,
        title: str,
        content: str,
        encrypted: bool,
        request: Request,
    ) -> NoteResponse:
        """Insert a note owned by the caller."""
        user_id = scope.principal.id
        stored = await self._codec.seal(content, encrypted, request, user_id)
        note = Note(user_id=user_id, title=title, content=stored, encrypted=encrypted)
        scope.session.add(note)
        await scope.session.flush()
        await scope.session.refresh(note)
        await self._audit_service.record(
            scope=scope,
            action="note.created",
            request=request,
            user_id=user_id,
            resource_type="note",
            resource_id=note.id,
            details={"encrypted": encrypted},
        )
        return self._to_response(note, content)

    async def list_notes(self, scope: RowScope, request: Request) -> list[NoteResponse]:
        """Return the caller's notes, most recently updated first."""
        result = await scope.session.execute(
            select(Note)
            .where(Note.user_id == scope.principal.id)
            .order_by(Note.updated_at.desc())
        )
        notes = list(result.scalars().all())
        return [
            self._to_response(note, await self._codec.reveal(note, request, scope.principal.id))
            for note in notes
        ]

    async def get_note(self, scope: RowScope, note_id: UUID, request: Request) -> NoteResponse:
        """Return one of the caller's notes."""
        note = await self._load_owned(scope, note_id)
        content = await self._codec.reveal(note, request, scope.principal.id)
        return self._to_response(note, content)

    async def update_note(
        self,
        scope: RowScope,
        note_id: UUID,
        title: str,
        content: str,
        encrypted: bool,
        request: Request,
    ) -> NoteResponse:
        """Replace title, content and encryption flag of an owned note."""
        note = await self._load_owned(scope, note_id)
        note.title = title
        note.content = await self._codec.seal(content, encrypted, request, scope.principal.id)
        note.encrypted = encrypted
        await scope.session.flush()
        await scope.session.refresh(note)
        await self._audit_service.record(
            scope=scope,
            action="note.updated",
            request=request,
            user_id=scope.principal.id,
            resource_type="note",
            resource_id=note.id,
        )
        return self._to_response(note, content)

    async def delete_note(self, scope: RowScope, note_id: UUID, request: Request) -> None:
        """Delete an owned note; its shares cascade."""
        note = await self._load_owned(scope, note_id)
        await scope.session.delete(note)
        await scope.session.flush()
        await self._audit_service.record(
            scope=scope,
            action="note.deleted",
            request=request,
            user_id=scope.principal.id,
            resource_type="note",
            resource_id=note_id,
        )

    @staticmethod
    async def _load_owned(scope: RowScope, note_id: UUID) -> Note:
        """Fetch an owned note; invisible and foreign notes are both not found."""
        result = await scope.session.execute(
            select(Note).where(Note.id == note_id, Note.user_id == scope.principal.id)
        )
        note = result.scalar_one_or_none()
        if note is None:
            raise ServiceError("Note not found.", "not_found", 404)
        return note

    @staticmethod
    def _to_response(note: Note, content: str) -> NoteResponse:
        """Build the API view of a note with plaintext content."""
        return NoteResponse(
            id=note.id,
            title=note.title,
            content=content,
            encrypted=note.encrypted,
            created_at=note.created_at,
            updated_at=note.updated_at,
        )


@lru_cache
def get_notes_service() -> NotesService:
    """Build and cache the notes service."""
    codec = NoteContentCodec(
        cipher=get_note_cipher(),
        security_events=get_security_event_service(),
    )
    return NotesService(codec=codec, audit_service=get_audit_service())
