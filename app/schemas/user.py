"""User-facing auth request and response schemas."""

from __future__ import annotations

import re
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

_USERNAME_PATTERN = re.compile(r"[A-Za-z0-9_]+")
_EMAIL_PATTERN = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")


def _validate_password_strength(value: str) -> str:
    """Require at least one lowercase letter, one uppercase letter and one digit."""
    if not (
        any(char.islower() for char in value)
        and any(char.isupper() for char in value)
        and any(char.isdigit() for char in value)
    ):
        raise ValueError(
            "Password must contain at least one uppercase letter, one lowercase letter, "
            "and one number."
        )
    return value


class RegisterRequest(BaseModel):
    """Account registration payload."""

    username: str = Field(min_length=3, max_length=50)
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=8, max_length=256)

    @field_validator("username")
    @classmethod
    def validate_username(cls, value: str) -> str:
        """Usernames are letters, digits and underscores only."""
        value = value.strip()
        if not _USERNAME_PATTERN.fullmatch(value):
            raise ValueError("Username can only contain letters, numbers, and underscores.")
        return value

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        """Normalize and validate the email address."""
        value = value.strip().lower()
        if not _EMAIL_PATTERN.fullmatch(value):
            raise ValueError("Must be a valid email address.")
        return value

    @field_validator("password")
    @classmethod
    def validate_password(cls, value: str) -> str:
        """Enforce password complexity."""
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    """Password login request payload."""

    username: str = Field(min_length=1, max_length=50)
    password: str = Field(min_length=1, max_length=256)


class ChangePasswordRequest(BaseModel):
    """Password change payload for an authenticated user."""

    current_password: str = Field(min_length=1, max_length=256)
    new_password: str = Field(min_length=8, max_length=256)

    @field_validator("new_password")
    @classmethod
    def validate_new_password(cls, value: str) -> str:
        """Enforce password complexity."""
        return _validate_password_strength(value)


class UserSummary(BaseModel):
    """Public view of the authenticated user."""

    id: UUID
    username: str
    email: str
    role: str


class AuthResponse(BaseModel):
    """Response for register and login; credentials travel in cookies only."""

    message: str
    user: UserSummary


class MessageResponse(BaseModel):
    """Plain acknowledgement payload."""

    message: str


class UserSearchResult(BaseModel):
    """User row returned by username search."""

    id: UUID
    username: str
