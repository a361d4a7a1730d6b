"""Note share ORM model."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class SharePermission(str, Enum):
    """Access level granted to the share recipient."""

    READ = "read"
    WRITE = "write"


class NoteShare(Base):
    """Grant of one note from its owner to one friend."""

    __tablename__ = "note_shares"
    __table_args__ = (
        UniqueConstraint("note_id", "shared_with_id", name="uq_note_shares_note_id_shared_with_id"),
        CheckConstraint("owner_id <> shared_with_id", name="valid_share_users"),
        CheckConstraint("permission IN ('read', 'write')", name="valid_permission"),
        Index("ix_note_shares_shared_with_id", "shared_with_id"),
    )

    id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), primary_key=True, default=uuid4)
    note_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), ForeignKey("notes.id", ondelete="CASCADE"), nullable=False
    )
    owner_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    shared_with_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    permission: Mapped[str] = mapped_column(
        String(10), nullable=False, default=SharePermission.READ.value
    )
    shared_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
