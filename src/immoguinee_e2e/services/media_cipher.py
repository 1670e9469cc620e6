"""AES-256-GCM encryption for end-to-end encrypted media.

The key is generated per media item and never leaves the producing client
through the storage tier. Only the ciphertext and the non-secret
:class:`~immoguinee_e2e.schemas.media.EncryptionMetadata` are uploaded.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass, field
from typing import Any

from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from immoguinee_e2e.core.settings import settings
from immoguinee_e2e.schemas.media import EncryptionMetadata
from immoguinee_e2e.utils.encoding import base64_to_bytes, bytes_to_base64

KEY_LENGTH_BYTES = 32
IV_LENGTH_BYTES = 12
AUTH_TAG_LENGTH_BYTES = 16

logger = logging.getLogger(__name__)


class MediaCipherError(RuntimeError):
    """Base exception raised for media encryption failures."""


class CryptoUnavailableError(MediaCipherError):
    """Raised when the runtime cannot provide AES-256-GCM.

    Retrying in the same environment cannot succeed.
    """


class InvalidInputLengthError(MediaCipherError, ValueError):
    """Raised when a key, IV or tag has the wrong length."""


class DecryptionFailedError(MediaCipherError):
    """Raised when authenticated decryption fails.

    The message is identical for every cause (wrong key, wrong IV, corrupted
    ciphertext or tag, truncation) so callers cannot use it as an oracle.
    """

    def __init__(self) -> None:
        super().__init__("Decryption failed: invalid key or data has been tampered")


@dataclass(frozen=True)
class EncryptedMediaResult:
    """Full encryption output, including the secret key.

    Lives in memory only. Use :meth:`to_metadata` to obtain the form that may
    be persisted or transmitted.
    """

    ciphertext: bytes = field(repr=False)
    iv: bytes
    key: bytes = field(repr=False)
    auth_tag: bytes

    def __getstate__(self) -> Any:
        raise TypeError("EncryptedMediaResult holds key material and cannot be serialized")

    def to_metadata(
        self,
        original_size: int,
        mime_type: str,
        duration: float | None = None,
    ) -> EncryptionMetadata:
        """Return the key-free metadata that accompanies the ciphertext."""
        return EncryptionMetadata(
            iv=bytes_to_base64(self.iv),
            auth_tag=bytes_to_base64(self.auth_tag),
            original_size=original_size,
            mime_type=mime_type,
            duration=duration,
        )


def _check_length(name: str, value: bytes, expected: int) -> None:
    if len(value) != expected:
        raise InvalidInputLengthError(f"{name} must be {expected} bytes, got {len(value)}")


class MediaCipher:
    """Service handling authenticated encryption of media blobs."""

    def __init__(self, offload_threshold_bytes: int | None = None) -> None:
        if offload_threshold_bytes is None:
            offload_threshold_bytes = settings.crypto_offload_threshold_bytes
        self.offload_threshold_bytes = offload_threshold_bytes

    @staticmethod
    def generate_key() -> bytes:
        """Generate a random AES-256 key (32 bytes)."""
        return AESGCM.generate_key(bit_length=KEY_LENGTH_BYTES * 8)

    @staticmethod
    def generate_iv() -> bytes:
        """Generate a random 96-bit GCM initialization vector."""
        return secrets.token_bytes(IV_LENGTH_BYTES)

    @staticmethod
    def _aead(key: bytes) -> AESGCM:
        try:
            return AESGCM(key)
        except UnsupportedAlgorithm as err:
            raise CryptoUnavailableError(f"AES-256-GCM is not available: {err}") from err

    def encrypt(self, plaintext: bytes, key: bytes | None = None) -> EncryptedMediaResult:
        """Encrypt media data using AES-256-GCM.

        A fresh IV is generated for every call; callers cannot supply one.

        Args:
            plaintext: Raw media bytes, any length (including empty)
            key: Optional 32-byte key; generated when omitted

        Returns:
            EncryptedMediaResult with ciphertext, IV, key and auth tag

        Raises:
            InvalidInputLengthError: If a supplied key is not 32 bytes
            CryptoUnavailableError: If the backend lacks AES-GCM
        """
        if key is None:
            key = self.generate_key()
        else:
            _check_length("key", key, KEY_LENGTH_BYTES)

        iv = self.generate_iv()
        # AESGCM appends the 16-byte tag to the ciphertext
        combined = self._aead(key).encrypt(iv, bytes(plaintext), None)

        return EncryptedMediaResult(
            ciphertext=combined[:-AUTH_TAG_LENGTH_BYTES],
            iv=iv,
            key=key,
            auth_tag=combined[-AUTH_TAG_LENGTH_BYTES:],
        )

    def decrypt(self, ciphertext: bytes, iv: bytes, key: bytes, auth_tag: bytes) -> bytes:
        """Decrypt media data using AES-256-GCM.

        Args:
            ciphertext: Encrypted bytes without the tag
            iv: 12-byte IV used for encryption
            key: 32-byte key
            auth_tag: 16-byte authentication tag

        Returns:
            The original plaintext

        Raises:
            InvalidInputLengthError: If iv, auth_tag or key has the wrong length
            DecryptionFailedError: If authentication fails for any reason
            CryptoUnavailableError: If the backend lacks AES-GCM
        """
        _check_length("iv", iv, IV_LENGTH_BYTES)
        _check_length("auth_tag", auth_tag, AUTH_TAG_LENGTH_BYTES)
        _check_length("key", key, KEY_LENGTH_BYTES)

        aead = self._aead(key)
        try:
            return aead.decrypt(iv, bytes(ciphertext) + bytes(auth_tag), None)
        except InvalidTag as err:
            raise DecryptionFailedError() from err

    async def encrypt_async(self, plaintext: bytes, key: bytes | None = None) -> EncryptedMediaResult:
        """Encrypt, offloading large payloads to a worker thread."""
        if len(plaintext) >= self.offload_threshold_bytes:
            logger.debug("Offloading encryption of %d bytes to a worker thread", len(plaintext))
            return await asyncio.to_thread(self.encrypt, plaintext, key)
        return self.encrypt(plaintext, key)

    async def decrypt_async(
        self, ciphertext: bytes, iv: bytes, key: bytes, auth_tag: bytes
    ) -> bytes:
        """Decrypt, offloading large payloads to a worker thread."""
        if len(ciphertext) >= self.offload_threshold_bytes:
            logger.debug("Offloading decryption of %d bytes to a worker thread", len(ciphertext))
            return await asyncio.to_thread(self.decrypt, ciphertext, iv, key, auth_tag)
        return self.decrypt(ciphertext, iv, key, auth_tag)


def prepare_metadata(
    result: EncryptedMediaResult,
    original_size: int,
    mime_type: str,
    duration: float | None = None,
) -> EncryptionMetadata:
    """Prepare encryption metadata for transmission."""
    return result.to_metadata(original_size, mime_type, duration)


def parse_metadata(metadata: EncryptionMetadata) -> tuple[bytes, bytes]:
    """Return the raw ``(iv, auth_tag)`` pair from received metadata."""
    return base64_to_bytes(metadata.iv), base64_to_bytes(metadata.auth_tag)
