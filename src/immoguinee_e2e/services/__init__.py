"""Media encryption and realtime messaging services."""

from .channels import (
    ConversationCallbacks,
    ConversationChannels,
    PresenceCallbacks,
    UserChannelCallbacks,
)
from .connection_config import ConnectionConfigClient, StaticTokenSource
from .media_cipher import EncryptedMediaResult, MediaCipher
from .media_service import EncryptedMediaService
from .realtime import ConnectionManager, ConnectionState
from .transport import PusherTransport

__all__ = [
    "ConnectionConfigClient",
    "ConnectionManager",
    "ConnectionState",
    "ConversationCallbacks",
    "ConversationChannels",
    "EncryptedMediaResult",
    "EncryptedMediaService",
    "MediaCipher",
    "PresenceCallbacks",
    "PusherTransport",
    "StaticTokenSource",
    "UserChannelCallbacks",
]
