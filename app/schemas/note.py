"""Note request and response schemas."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


def _not_blank(value: str) -> str:
    """Reject content that is only whitespace."""
    if not value.strip():
        raise ValueError("Content cannot be empty.")
    return value


class NoteCreateRequest(BaseModel):
    """Payload for creating a note."""

    title: str = Field(min_length=1, max_length=255)
    content: str = Field(min_length=1, max_length=50000)
    encrypted: bool = True

    @field_validator("title")
    @classmethod
    def validate_title(cls, value: str) -> str:
        """Titles are trimmed and must not be blank."""
        value = value.strip()
        if not value:
            raise ValueError("Title cannot be empty.")
        return value

    @field_validator("content")
    @classmethod
    def validate_content(cls, value: str) -> str:
        """Content must not be blank."""
        return _not_blank(value)


class NoteUpdateRequest(NoteCreateRequest):
    """Payload for replacing a note's title, content and encryption flag."""


class SharedNoteUpdateRequest(BaseModel):
    """Payload for editing a note shared with write permission."""

    title: str = Field(min_length=1, max_length=255)
    content: str = Field(min_length=1, max_length=50000)

    @field_validator("title")
    @classmethod
    def validate_title(cls, value: str) -> str:
        """Titles are trimmed and must not be blank."""
        value = value.strip()
        if not value:
            raise ValueError("Title cannot be empty.")
        return value

    @field_validator("content")
    @classmethod
    def validate_content(cls, value: str) -> str:
        """Content must not be blank."""
        return _not_blank(value)


class NoteResponse(BaseModel):
    """Decrypted view of a note."""

    id: UUID
    title: str
    content: str
    encrypted: bool
    created_at: datetime
    updated_at: datetime


class NoteListResponse(BaseModel):
    """Collection of the caller's notes."""

    notes: list[NoteResponse]
