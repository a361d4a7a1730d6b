"""Unit tests for note content sealing and revealing."""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any
from uuid import uuid4

import pytest

from app.core.cipher import NoteCipher
from app.models.note import Note
from app.models.security_event import SecuritySeverity
from app.services.errors import ServiceError
from app.services.notes_service import NoteContentCodec
from app.services.security_events import SecurityEventType


class _SecurityEventsStub:
    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    async def record(self, **kwargs: Any) -> None:
        self.calls.append(kwargs)


def _request() -> Any:
    return SimpleNamespace(
        headers={},
        client=SimpleNamespace(host="127.0.0.1"),
        state=SimpleNamespace(),
        url=SimpleNamespace(path="/api/notes"),
    )


def _codec(key_byte: int = 0x11) -> tuple[NoteContentCodec, _SecurityEventsStub]:
    events = _SecurityEventsStub()
    cipher = NoteCipher(key=bytes([key_byte]) * 32, hmac_key=bytes([0x22]) * 32)
    return NoteContentCodec(cipher=cipher, security_events=events), events  # type: ignore[arg-type]


async def test_plain_notes_pass_through_unchanged() -> None:
    """Unencrypted content is stored and returned as-is."""
    codec, events = _codec()
    user_id = uuid4()

    stored = await codec.seal("hello", False, _request(), user_id)
    note = Note(id=uuid4(), user_id=user_id, title="t", content=stored, encrypted=False)

    assert stored == "hello"
    assert await codec.reveal(note, _request(), user_id) == "hello"
    assert events.calls == []


async def test_encrypted_notes_are_stored_as_envelopes() -> None:
    """Encrypted content never reaches storage in plaintext."""
    codec, _ = _codec()
    user_id = uuid4()

    stored = await codec.seal("secret body", True, _request(), user_id)
    note = Note(id=uuid4(), user_id=user_id, title="t", content=stored, encrypted=True)

    assert "secret body" not in stored
    assert stored.count(":") == 2
    assert await codec.reveal(note, _request(), user_id) == "secret body"


async def test_tampered_envelope_records_integrity_event() -> None:
    """A tag mismatch fails the read and raises a high-severity security event."""
    codec, events = _codec()
    user_id = uuid4()
    stored = await codec.seal("secret body", True, _request(), user_id)
    iv, ciphertext, tag = stored.split(":")
    flipped = ("0" if tag[0] != "0" else "1") + tag[1:]
    note = Note(
        id=uuid4(),
        user_id=user_id,
        title="t",
        content=":".join([iv, ciphertext, flipped]),
        encrypted=True,
    )

    with pytest.raises(ServiceError) as exc_info:
        await codec.reveal(note, _request(), user_id)

    assert exc_info.value.code == "decryption_failed"
    assert exc_info.value.status_code == 500
    assert events.calls[0]["event_type"] is SecurityEventType.INTEGRITY_FAILURE
    assert events.calls[0]["severity"] is SecuritySeverity.HIGH
    assert events.calls[0]["details"]["note_id"] == str(note.id)


async def test_malformed_envelope_fails_without_security_event() -> None:
    """Unparseable stored content fails the read but is not reported as tampering."""
    codec, events = _codec()
    user_id = uuid4()
    note = Note(id=uuid4(), user_id=user_id, title="t", content="not-an-envelope", encrypted=True)

    with pytest.raises(ServiceError) as exc_info:
        await codec.reveal(note, _request(), user_id)

    assert exc_info.value.code == "decryption_failed"
    assert events.calls == []


async def test_empty_encrypted_content_is_an_encryption_failure() -> None:
    """Sealing empty content with encryption requested is refused."""
    codec, events = _codec()

    with pytest.raises(ServiceError) as exc_info:
        await codec.seal("", True, _request(), uuid4())

    assert exc_info.value.code == "internal_error"
    assert events.calls[0]["event_type"] is SecurityEventType.ENCRYPTION_FAILURE
