"""Masking of credentials, note bodies and e-mail addresses before they are logged or stored."""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any
from uuid import UUID

REDACTED = "***REDACTED***"

_SENSITIVE_KEY_PARTS = (
    "authorization",
    "content",
    "cookie",
    "email",
    "hmac",
    "password",
    "secret",
    "token",
)
_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _is_sensitive_key(key: str) -> bool:
    """Keys naming credentials or user-authored text are never written out."""
    normalized = key.strip().lower().replace("-", "_")
    return any(part in normalized for part in _SENSITIVE_KEY_PARTS)


def _redact_value(value: Any) -> Any:
    """Reduce a value to JSON-safe primitives, masking anything e-mail shaped."""
    match value:
        case None | bool() | int() | float():
            return value
        case UUID():
            return str(value)
        case str():
            return REDACTED if _EMAIL_PATTERN.match(value.strip()) else value
        case Mapping():
            return redact_mapping(value) or {}
        case list() | tuple():
            return [_redact_value(item) for item in value]
        case _:
            return str(value)


def redact_mapping(values: Mapping[str, Any] | None) -> dict[str, Any] | None:
    """Masked copy of a mapping; empty or missing input yields None."""
    if not values:
        return None
    return {
        str(key): REDACTED if _is_sensitive_key(str(key)) else _redact_value(value)
        for key, value in values.items()
    }
