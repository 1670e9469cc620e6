"""Sending and receiving end-to-end encrypted media.

Flow:

1. Sender encrypts with a fresh AES-256-GCM key, uploads the ciphertext plus
   :class:`EncryptionMetadata`, and gets back the media id and the key to put
   in the message envelope.
2. Receiver downloads the ciphertext, reads the metadata from the response
   headers, decrypts with the key from the envelope and confirms the download
   so the server can delete its copy.

The server never sees the key.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import httpx
from pydantic import ValidationError

from immoguinee_e2e.core.settings import settings
from immoguinee_e2e.schemas.media import (
    EncryptionMetadata,
    MediaType,
    ReceivedMedia,
    SendMediaOptions,
    SendMediaResult,
)
from immoguinee_e2e.services.connection_config import TokenSource
from immoguinee_e2e.services.media_cipher import MediaCipher, parse_metadata
from immoguinee_e2e.utils.encoding import base64_to_bytes, bytes_to_base64

logger = logging.getLogger(__name__)

HEADER_IV = "x-media-iv"
HEADER_AUTH_TAG = "x-media-authtag"
HEADER_MIME_TYPE = "x-original-mimetype"
HEADER_ORIGINAL_SIZE = "x-original-size"
HEADER_DURATION = "x-duration-seconds"
HEADER_MEDIA_TYPE = "x-media-type"
DEFAULT_MIME_TYPE = "application/octet-stream"


class MediaTransferError(RuntimeError):
    """Raised when uploading or downloading encrypted media fails."""


class MediaMetadataError(MediaTransferError):
    """Raised when a download lacks the metadata needed to decrypt it."""


def duration_field(duration: float | None) -> str | None:
    """Return the ``duration_seconds`` form value; the backend requires >= 1.

    Halves round up (2.5 -> "3") rather than to even.
    """
    if duration is None or duration <= 0:
        return None
    if duration < 1:
        return "1"
    return str(int(duration + 0.5))


def options_from_picked_media(
    conversation_id: str,
    kind: str,
    mime_type: str,
    file_size: int,
    duration_ms: float | None = None,
) -> SendMediaOptions:
    """Build send options for a picked image or video (duration in milliseconds)."""
    return SendMediaOptions(
        conversation_id=conversation_id,
        media_type=MediaType.VIDEO if kind == "video" else MediaType.PHOTO,
        mime_type=mime_type,
        original_size=file_size,
        duration=duration_ms / 1000 if duration_ms else None,
    )


def options_from_recording(
    conversation_id: str,
    mime_type: str,
    file_size: int,
    duration: float | None = None,
) -> SendMediaOptions:
    """Build send options for a voice recording (duration in seconds)."""
    return SendMediaOptions(
        conversation_id=conversation_id,
        media_type=MediaType.VOCAL,
        mime_type=mime_type,
        original_size=file_size,
        duration=duration,
    )


class EncryptedMediaService:
    """HTTP client for the encrypted media endpoints."""

    def __init__(
        self,
        token_source: TokenSource,
        cipher: MediaCipher | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.token_source = token_source
        self.cipher = cipher or MediaCipher()
        self._client = http_client
        self._owns_client = http_client is None
        self._client_lock = asyncio.Lock()

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    base_url=settings.api_base_url,
                    timeout=httpx.Timeout(settings.media_transfer_timeout_seconds),
                )
        return self._client

    async def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        token = await self.token_source.get_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        client = await self._ensure_client()
        try:
            response = await client.request(method, path, headers=await self._headers(), **kwargs)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise MediaTransferError(f"{method} {path} failed: {exc}") from exc
        return response

    async def send_media(self, options: SendMediaOptions, data: bytes) -> SendMediaResult:
        """Encrypt and upload a media item.

        Args:
            options: Conversation and media description
            data: Raw media bytes

        Returns:
            Server media id plus the base64 key to send through the message envelope
        """
        logger.debug(
            "Sending %s media (%s, %d bytes)",
            options.media_type.value,
            options.mime_type,
            options.original_size,
        )
        encrypted = await self.cipher.encrypt_async(data)
        metadata = encrypted.to_metadata(options.original_size, options.mime_type, options.duration)

        form = {
            "media_type": options.media_type.value,
            "iv": metadata.iv,
            "auth_tag": metadata.auth_tag,
            "original_size": str(metadata.original_size),
            "mime_type": metadata.mime_type,
        }
        duration = duration_field(options.duration)
        if duration is not None:
            form["duration_seconds"] = duration

        filename = f"encrypted_{int(time.time() * 1000)}.bin"
        response = await self._request(
            "POST",
            f"/messaging/{options.conversation_id}/encrypted-media",
            data=form,
            files={"blob": (filename, encrypted.ciphertext, DEFAULT_MIME_TYPE)},
        )

        try:
            media_id = str(response.json()["data"]["id"])
        except (ValueError, KeyError, TypeError) as exc:
            raise MediaTransferError(f"Malformed upload response: {exc}") from exc

        logger.info("Encrypted media %s uploaded", media_id)
        return SendMediaResult(
            media_id=media_id,
            encryption_key=bytes_to_base64(encrypted.key),
            media_type=options.media_type,
            original_size=options.original_size,
            duration=options.duration,
        )

    @staticmethod
    def _metadata_from_headers(headers: httpx.Headers) -> tuple[EncryptionMetadata, MediaType]:
        iv = headers.get(HEADER_IV)
        auth_tag = headers.get(HEADER_AUTH_TAG)
        if not iv or not auth_tag:
            raise MediaMetadataError("Missing encryption metadata in response headers")

        duration = headers.get(HEADER_DURATION)
        try:
            metadata = EncryptionMetadata(
                iv=iv,
                auth_tag=auth_tag,
                original_size=int(headers.get(HEADER_ORIGINAL_SIZE) or 0),
                mime_type=headers.get(HEADER_MIME_TYPE) or DEFAULT_MIME_TYPE,
                duration=float(duration) if duration else None,
            )
            media_type = MediaType(headers.get(HEADER_MEDIA_TYPE) or MediaType.PHOTO.value)
        except (ValueError, ValidationError) as exc:
            raise MediaMetadataError(f"Invalid encryption metadata: {exc}") from exc
        return metadata, media_type

    async def receive_media(self, media_id: str, encryption_key: str) -> ReceivedMedia:
        """Download, decrypt and confirm an encrypted media item.

        Raises:
            MediaTransferError: If the download fails
            MediaMetadataError: If the IV or auth tag headers are missing
            DecryptionFailedError: If the key does not match or data was tampered with
        """
        response = await self._request("GET", f"/messaging/encrypted-media/{media_id}/download")
        metadata, media_type = self._metadata_from_headers(response.headers)

        try:
            key = base64_to_bytes(encryption_key)
            iv, auth_tag = parse_metadata(metadata)
        except ValueError as exc:
            raise MediaMetadataError(f"Invalid encoded key material: {exc}") from exc

        data = await self.cipher.decrypt_async(response.content, iv, key, auth_tag)
        await self.confirm_download(media_id)

        return ReceivedMedia(media_id=media_id, data=data, media_type=media_type, metadata=metadata)

    async def confirm_download(self, media_id: str) -> bool:
        """Tell the server the recipient has the media so it can delete its copy.

        Failures are logged only; the server expires undelivered media on its own.
        """
        try:
            await self._request("POST", f"/messaging/encrypted-media/{media_id}/confirm-download")
        except MediaTransferError as exc:
            logger.warning("Failed to confirm download of %s: %s", media_id, exc)
            return False
        logger.debug("Download of %s confirmed", media_id)
        return True

    async def close(self) -> None:
        """Clean up underlying HTTP client resources."""
        async with self._client_lock:
            if self._client is not None and self._owns_client:
                await self._client.aclose()
            self._client = None
