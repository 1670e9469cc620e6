"""Encrypted media Pydantic schemas."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class MediaType(str, Enum):
    """Media categories accepted by the encrypted media endpoints."""

    VOCAL = "VOCAL"
    PHOTO = "PHOTO"
    VIDEO = "VIDEO"


class EncryptionMetadata(BaseModel):
    """Non-secret encryption parameters that travel with the ciphertext.

    This is the only media representation that may cross a network or storage
    boundary. It deliberately has no key field.
    """

    iv: str = Field(..., description="Base64-encoded 12-byte initialization vector")
    auth_tag: str = Field(..., description="Base64-encoded 16-byte GCM authentication tag")
    original_size: int = Field(..., ge=0, description="Plaintext size in bytes")
    mime_type: str = Field(..., description="Original MIME type")
    duration: float | None = Field(None, ge=0, description="Duration in seconds for audio/video")

    model_config = ConfigDict(frozen=True, extra="forbid")


class SendMediaResult(BaseModel):
    """Result of uploading an encrypted media item.

    ``encryption_key`` must be delivered to the recipient through the message
    envelope, never through the storage tier that holds the ciphertext.
    """

    media_id: str
    encryption_key: str = Field(..., repr=False)
    media_type: MediaType
    original_size: int
    duration: float | None = None


class SendMediaOptions(BaseModel):
    """Parameters describing a media item about to be sent."""

    conversation_id: str
    media_type: MediaType
    mime_type: str
    original_size: int = Field(..., ge=0)
    duration: float | None = None


class ReceivedMedia(BaseModel):
    """Decrypted media downloaded from the storage tier."""

    media_id: str
    data: bytes = Field(..., repr=False)
    media_type: MediaType
    metadata: EncryptionMetadata
