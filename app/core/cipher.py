"""Authenticated note cipher: AES-256-CBC with an HMAC-SHA256 tag.

Envelopes are ``<hex-iv>:<hex-ciphertext>:<hex-tag>``. The tag covers the raw
IV bytes followed by the raw ciphertext bytes and is verified before any
decryption is attempted.
"""

from __future__ import annotations

import hashlib
import hmac
import os
import re
from functools import lru_cache

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from app.config import get_settings

IV_LENGTH = 16
KEY_LENGTH = 32
TAG_LENGTH = 32
_BLOCK_SIZE_BITS = 128
_HEX_SEGMENT = re.compile(r"(?:[0-9a-f]{2})+")


class NoteCipherError(Exception):
    """Base class for cipher failures."""

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class CipherFormatError(NoteCipherError):
    """Raised when input is not a well-formed envelope or plaintext."""


class CipherIntegrityError(NoteCipherError):
    """Raised when the integrity tag does not match; treat as a security event."""


class CipherKeyError(NoteCipherError):
    """Raised when an authentic envelope cannot be decrypted with the current key."""


class NoteCipher:
    """Encrypt and decrypt note content with separate cipher and MAC keys."""

    def __init__(self, key: bytes, hmac_key: bytes) -> None:
        if len(key) != KEY_LENGTH or len(hmac_key) != KEY_LENGTH:
            raise ValueError("Cipher and HMAC keys must be 32 bytes.")
        if hmac.compare_digest(key, hmac_key):
            raise ValueError("Cipher and HMAC keys must differ.")
        self._key = key
        self._hmac_key = hmac_key

    def encrypt(self, plaintext: str) -> str:
        """Encrypt non-empty text into a hex envelope with a fresh IV."""
        if not isinstance(plaintext, str) or not plaintext:
            raise CipherFormatError("Plaintext must be a non-empty string.")

        iv = os.urandom(IV_LENGTH)
        padder = padding.PKCS7(_BLOCK_SIZE_BITS).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        tag = self._tag(iv, ciphertext)
        return f"{iv.hex()}:{ciphertext.hex()}:{tag.hex()}"

    def decrypt(self, envelope: str) -> str:
        """Verify the envelope tag, then decrypt it back to text."""
        iv, ciphertext, tag = self._split(envelope)
        if len(tag) != TAG_LENGTH:
            raise CipherIntegrityError("Integrity tag has the wrong length.")
        if not hmac.compare_digest(self._tag(iv, ciphertext), tag):
            raise CipherIntegrityError("Integrity check failed.")
        if len(iv) != IV_LENGTH:
            raise CipherFormatError("IV has the wrong length.")

        try:
            decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(_BLOCK_SIZE_BITS).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return plaintext.decode("utf-8")
        except ValueError as exc:
            # Covers bad block alignment, bad padding and invalid UTF-8.
            raise CipherKeyError("Decryption failed.") from exc

    def _tag(self, iv: bytes, ciphertext: bytes) -> bytes:
        """Compute the HMAC-SHA256 tag over IV and ciphertext."""
        return hmac.new(self._hmac_key, iv + ciphertext, hashlib.sha256).digest()

    @staticmethod
    def _split(envelope: str) -> tuple[bytes, bytes, bytes]:
        """Parse an envelope into its three decoded segments."""
        if not isinstance(envelope, str):
            raise CipherFormatError("Envelope must be a string.")
        parts = envelope.split(":")
        if len(parts) != 3:
            raise CipherFormatError("Envelope must have three segments.")
        for part in parts:
            if not _HEX_SEGMENT.fullmatch(part):
                raise CipherFormatError("Envelope segments must be lowercase hex.")
        return bytes.fromhex(parts[0]), bytes.fromhex(parts[1]), bytes.fromhex(parts[2])


def looks_like_envelope(value: str) -> bool:
    """Return True when a stored value has the three-segment envelope shape."""
    parts = value.split(":")
    return len(parts) == 3 and all(_HEX_SEGMENT.fullmatch(part) for part in parts)


@lru_cache
def get_note_cipher() -> NoteCipher:
    """Build and cache the note cipher from application settings."""
    settings = get_settings()
    return NoteCipher(
        key=bytes.fromhex(settings.encryption.key.get_secret_value()),
        hmac_key=bytes.fromhex(settings.encryption.hmac_key.get_secret_value()),
    )
