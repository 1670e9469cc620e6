"""Pydantic schemas shared by the media and realtime services."""

from .media import (
    EncryptionMetadata,
    MediaType,
    ReceivedMedia,
    SendMediaOptions,
    SendMediaResult,
)
from .realtime import ConnectionConfig, TypingWhisper

__all__ = [
    "ConnectionConfig",
    "EncryptionMetadata",
    "MediaType",
    "ReceivedMedia",
    "SendMediaOptions",
    "SendMediaResult",
    "TypingWhisper",
]
