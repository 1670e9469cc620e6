"""Realtime connection Pydantic schemas."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

PUSHER_PROTOCOL_VERSION = 7
CLIENT_NAME = "immoguinee-python"


class ConnectionConfig(BaseModel):
    """Reverb endpoint description returned by the config endpoint."""

    key: str = Field(..., min_length=1, description="Reverb application key")
    host: str = Field(..., min_length=1, description="WebSocket host name")
    port: int = Field(443, gt=0, lt=65536)
    scheme: Literal["http", "https"] = "https"
    auth_path: str = Field("/api/broadcasting/auth", description="Private channel auth path")

    model_config = ConfigDict(frozen=True)

    @property
    def use_tls(self) -> bool:
        return self.scheme == "https"

    def ws_url(self, client_version: str) -> str:
        """Return the Pusher protocol WebSocket URL for this endpoint."""
        ws_scheme = "wss" if self.use_tls else "ws"
        return (
            f"{ws_scheme}://{self.host}:{self.port}/app/{self.key}"
            f"?protocol={PUSHER_PROTOCOL_VERSION}&client={CLIENT_NAME}"
            f"&version={client_version}&flash=false"
        )

    @property
    def auth_endpoint(self) -> str:
        """Return the HTTPS endpoint authorizing private channel subscriptions."""
        return f"{self.scheme}://{self.host}{self.auth_path}"


class TypingWhisper(BaseModel):
    """Payload of the ``typing`` whisper exchanged on conversation channels."""

    is_typing: bool = Field(..., alias="isTyping")
    user_id: str | None = Field(None, alias="userId")

    model_config = ConfigDict(populate_by_name=True)
