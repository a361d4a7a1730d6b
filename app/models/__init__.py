"""ORM model exports."""

from app.models.audit_log import AuditLog
from app.models.friendship import Friendship, FriendshipStatus
from app.models.note import Note
from app.models.note_share import NoteShare, SharePermission
from app.models.notification import Notification, NotificationType
from app.models.refresh_token import RefreshToken
from app.models.security_event import SecurityEvent, SecuritySeverity
from app.models.user import User

__all__ = [
    "AuditLog",
    "Friendship",
    "FriendshipStatus",
    "Note",
    "NoteShare",
    "Notification",
    "NotificationType",
    "RefreshToken",
    "SecurityEvent",
    "SecuritySeverity",
    "SharePermission",
    "User",
]
