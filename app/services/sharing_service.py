"""Note sharing between accepted friends."""

from __future__ import annotations

from functools import lru_cache
from uuid import UUID

import structlog
from fastapi import Request
from sqlalchemy import delete, select, update

from app.core.row_scope import RowScope
from app.models.note import Note
from app.models.note_share import NoteShare, SharePermission
from app.models.notification import NotificationType
from app.models.security_event import SecuritySeverity
from app.models.user import User
from app.schemas.social import SharedNoteView, ShareView
from app.services.audit_service import AuditService, get_audit_service
from app.services.errors import ServiceError
from app.services.friends_service import FriendsService, get_friends_service
from app.services.notes_service import NoteContentCodec, get_notes_service
from app.services.notification_service import NotificationService, get_notification_service
from app.services.security_events import (
    SecurityEventService,
    SecurityEventType,
    get_security_event_service,
)

logger = structlog.get_logger(__name__)


class SharingService:
    """Share notes, enforce share permissions and notify the other party."""

    def __init__(
        self,
        codec: NoteContentCodec,
        friends_service: FriendsService,
        notification_service: NotificationService,
        audit_service: AuditService,
        security_events: SecurityEventService,
    ) -> None:
        self._codec = codec
        self._friends = friends_service
        self._notifications = notification_service
        self._audit_service = audit_service
        self._security_events = security_events

    async def share_note(
        self,
        scope: RowScope,
        note_id: UUID,
        friend_id: UUID,
        permission: str,
        request: Request,
    ) -> None:
        """Grant an accepted friend access to an owned note."""
        principal = scope.principal
        note = await self._owned_note_or_report(scope, note_id, friend_id, request)
        if friend_id == principal.id:
            raise ServiceError("Cannot share a note with yourself.", "invalid_request", 400)
        if not await self._friends.are_friends(scope, friend_id):
            raise ServiceError("Can only share with accepted friends.", "forbidden", 403)

        existing = await scope.session.execute(
            select(NoteShare.id).where(
                NoteShare.note_id == note_id, NoteShare.shared_with_id == friend_id
            )
        )
        if existing.first() is not None:
            raise ServiceError("Note already shared with this user.", "conflict", 400)

        scope.session.add(
            NoteShare(
                note_id=note_id,
                owner_id=principal.id,
                shared_with_id=friend_id,
                permission=SharePermission(permission).value,
            )
        )
        await scope.session.flush()

        await self._notifications.deliver(
            scope=scope,
            recipient_id=friend_id,
            notification_type=NotificationType.NOTE_SHARED,
            message=f'{principal.display_name} shared a note "{note.title}" with you',
            from_user_id=principal.id,
            related_id=note_id,
        )
        await self._audit_service.record(
            scope=scope,
            action="note.shared",
            request=request,
            user_id=principal.id,
            resource_type="note",
            resource_id=note_id,
            details={"friend_id": str(friend_id), "permission": permission},
        )

    async def unshare_note(
        self, scope: RowScope, note_id: UUID, friend_id: UUID, request: Request
    ) -> None:
        """Revoke a share the caller granted."""
        principal = scope.principal
        title = await self._note_title(scope, note_id)
        result = await scope.session.execute(
            delete(NoteShare).where(
                NoteShare.note_id == note_id,
                NoteShare.owner_id == principal.id,
                NoteShare.shared_with_id == friend_id,
            )
        )
        if result.rowcount == 0:
            raise ServiceError("Share not found.", "not_found", 404)

        if title is not None:
            await self._notifications.deliver(
                scope=scope,
                recipient_id=friend_id,
                notification_type=NotificationType.NOTE_UNSHARED,
                message=f'{principal.display_name} unshared the note "{title}" with you',
                from_user_id=principal.id,
                related_id=note_id,
            )
        await self._audit_service.record(
            scope=scope,
            action="note.unshared",
            request=request,
            user_id=principal.id,
            resource_type="note",
            resource_id=note_id,
            details={"friend_id": str(friend_id)},
        )

    async def list_shares(self, scope: RowScope, note_id: UUID) -> list[ShareView]:
        """Recipients of an owned note, newest share first."""
        await self._load_owned(scope, note_id)
        result = await scope.session.execute(
            select(
                NoteShare.id,
                NoteShare.shared_with_id,
                User.username,
                NoteShare.permission,
                NoteShare.shared_at,
            )
            .join(User, User.id == NoteShare.shared_with_id)
            .where(NoteShare.note_id == note_id)
            .order_by(NoteShare.shared_at.desc())
        )
        return [
            ShareView(
                id=row.id,
                shared_with_id=row.shared_with_id,
                username=row.username,
                permission=row.permission,
                shared_at=row.shared_at,
            )
            for row in result.all()
        ]

    async def update_permission(
        self,
        scope: RowScope,
        note_id: UUID,
        friend_id: UUID,
        permission: str,
        request: Request,
    ) -> None:
        """Change the permission of a share the caller granted."""
        principal = scope.principal
        title = await self._note_title(scope, note_id)
        if title is None:
            raise ServiceError("Note not found.", "not_found", 404)
        result = await scope.session.execute(
            update(NoteShare)
            .where(
                NoteShare.note_id == note_id,
                NoteShare.owner_id == principal.id,
                NoteShare.shared_with_id == friend_id,
            )
            .values(permission=SharePermission(permission).value)
        )
        if result.rowcount == 0:
            raise ServiceError("Share not found.", "not_found", 404)

        await self._notifications.deliver(
            scope=scope,
            recipient_id=friend_id,
            notification_type=NotificationType.SHARE_PERMISSION_UPDATED,
            message=(
                f'{principal.display_name} changed your permission to "{permission}" '
                f'for note "{title}"'
            ),
            from_user_id=principal.id,
            related_id=note_id,
        )
        await self._audit_service.record(
            scope=scope,
            action="share.permission_updated",
            request=request,
            user_id=principal.id,
            resource_type="note",
            resource_id=note_id,
            details={"friend_id": str(friend_id), "permission": permission},
        )

    async def shared_with_me(self, scope: RowScope, request: Request) -> list[SharedNoteView]:
        """Notes other users shared with the caller, newest share first."""
        rows = await self._shared_rows(scope)
        return [
            await self._to_shared_view(scope, request, note, share, owner_username)
            for note, share, owner_username in rows
        ]

    async def get_shared_note(
        self, scope: RowScope, note_id: UUID, request: Request
    ) -> SharedNoteView:
        """One note shared with the caller."""
        rows = await self._shared_rows(scope, note_id=note_id)
        if not rows:
            raise ServiceError("Shared note not found.", "not_found", 404)
        note, share, owner_username = rows[0]
        return await self._to_shared_view(scope, request, note, share, owner_username)

    async def update_shared_note(
        self,
        scope: RowScope,
        note_id: UUID,
        title: str,
        content: str,
        request: Request,
    ) -> SharedNoteView:
        """Edit a shared note; read-only recipients are rejected and reported."""
        principal = scope.principal
        result = await scope.session.execute(
            select(NoteShare).where(
                NoteShare.note_id == note_id, NoteShare.shared_with_id == principal.id
            )
        )
        share = result.scalar_one_or_none()
        if share is None or share.permission != SharePermission.WRITE.value:
            if share is not None:
                await self._security_events.record(
                    event_type=SecurityEventType.PERMISSION_ESCALATION,
                    severity=SecuritySeverity.CRITICAL,
                    request=request,
                    user_id=principal.id,
                    details={
                        "note_id": str(note_id),
                        "current_permission": share.permission,
                        "attempted_action": "update_note",
                        "owner_id": str(share.owner_id),
                    },
                )
            raise ServiceError("No write permission for this note.", "forbidden", 403)

        note_result = await scope.session.execute(select(Note).where(Note.id == note_id))
        note = note_result.scalar_one_or_none()
        if note is None:
            raise ServiceError("Note not found.", "not_found", 404)

        note.title = title
        note.content = await self._codec.seal(content, note.encrypted, request, principal.id)
        await scope.session.flush()
        await scope.session.refresh(note)

        await self._audit_service.record(
            scope=scope,
            action="shared_note.updated",
            request=request,
            user_id=principal.id,
            resource_type="note",
            resource_id=note_id,
        )
        owner = await scope.session.execute(select(User.username).where(User.id == note.user_id))
        return self._build_shared_view(note, share, owner.scalar_one(), content)

    async def leave_shared_note(self, scope: RowScope, note_id: UUID, request: Request) -> None:
        """Drop a share granted to the caller and notify the owner."""
        principal = scope.principal
        result = await scope.session.execute(
            select(NoteShare.owner_id, Note.title)
            .join(Note, Note.id == NoteShare.note_id)
            .where(NoteShare.note_id == note_id, NoteShare.shared_with_id == principal.id)
        )
        row = result.one_or_none()
        if row is None:
            raise ServiceError("Shared note not found.", "not_found", 404)

        await scope.session.execute(
            delete(NoteShare).where(
                NoteShare.note_id == note_id, NoteShare.shared_with_id == principal.id
            )
        )
        await self._notifications.deliver(
            scope=scope,
            recipient_id=row.owner_id,
            notification_type=NotificationType.NOTE_LEFT,
            message=f'{principal.display_name} left the shared note "{row.title}"',
            from_user_id=principal.id,
            related_id=note_id,
        )
        await self._audit_service.record(
            scope=scope,
            action="shared_note.left",
            request=request,
            user_id=principal.id,
            resource_type="note",
            resource_id=note_id,
        )

    async def _owned_note_or_report(
        self, scope: RowScope, note_id: UUID, friend_id: UUID, request: Request
    ) -> Note:
        """Load an owned note; a visible note owned by someone else is reported."""
        result = await scope.session.execute(select(Note).where(Note.id == note_id))
        note = result.scalar_one_or_none()
        if note is not None and note.user_id == scope.principal.id:
            return note
        if note is not None:
            await self._security_events.record(
                event_type=SecurityEventType.UNAUTHORIZED_SHARE,
                severity=SecuritySeverity.HIGH,
                request=request,
                user_id=scope.principal.id,
                details={
                    "note_id": str(note_id),
                    "actual_owner_id": str(note.user_id),
                    "attempted_share_with_user_id": str(friend_id),
                },
            )
        raise ServiceError("Note not found or unauthorized.", "not_found", 404)

    @staticmethod
    async def _load_owned(scope: RowScope, note_id: UUID) -> Note:
        """Fetch an owned note or fail with not found."""
        result = await scope.session.execute(
            select(Note).where(Note.id == note_id, Note.user_id == scope.principal.id)
        )
        note = result.scalar_one_or_none()
        if note is None:
            raise ServiceError("Note not found or unauthorized.", "not_found", 404)
        return note

    @staticmethod
    async def _note_title(scope: RowScope, note_id: UUID) -> str | None:
        """Title of a visible note, or None."""
        result = await scope.session.execute(select(Note.title).where(Note.id == note_id))
        return result.scalar_one_or_none()

    @staticmethod
    async def _shared_rows(
        scope: RowScope, note_id: UUID | None = None
    ) -> list[tuple[Note, NoteShare, str]]:
        """Notes shared with the caller joined with their share and owner name."""
        statement = (
            select(Note, NoteShare, User.username)
            .join(NoteShare, NoteShare.note_id == Note.id)
            .join(User, User.id == NoteShare.owner_id)
            .where(NoteShare.shared_with_id == scope.principal.id)
            .order_by(NoteShare.shared_at.desc())
        )
        if note_id is not None:
            statement = statement.where(Note.id == note_id)
        result = await scope.session.execute(statement)
        return [(note, share, username) for note, share, username in result.all()]

    async def _to_shared_view(
        self,
        scope: RowScope,
        request: Request,
        note: Note,
        share: NoteShare,
        owner_username: str,
    ) -> SharedNoteView:
        """Decrypt a shared note into its API view."""
        content = await self._codec.reveal(note, request, scope.principal.id)
        return self._build_shared_view(note, share, owner_username, content)

    @staticmethod
    def _build_shared_view(
        note: Note, share: NoteShare, owner_username: str, content: str
    ) -> SharedNoteView:
        """Assemble the shared-note payload."""
        return SharedNoteView(
            id=note.id,
            title=note.title,
            content=content,
            encrypted=note.encrypted,
            created_at=note.created_at,
            updated_at=note.updated_at,
            owner_id=share.owner_id,
            owner_username=owner_username,
            permission=share.permission,
            shared_at=share.shared_at,
        )


@lru_cache
def get_sharing_service() -> SharingService:
    """Build and cache the sharing service."""
    return SharingService(
        codec=get_notes_service().codec,
        friends_service=get_friends_service(),
        notification_service=get_notification_service(),
        audit_service=get_audit_service(),
        security_events=get_security_event_service(),
    )
