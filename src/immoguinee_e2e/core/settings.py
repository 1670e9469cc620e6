"""Application settings and configuration.

This module defines all configuration options for the ImmoGuinée E2E client
core. Settings are loaded from environment variables with sensible defaults.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Client settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="ImmoGuinée", alias="IMMO_APP_NAME")
    app_version: str = Field(default="0.1.0", alias="IMMO_APP_VERSION")
    debug: bool = Field(default=False, alias="IMMO_DEBUG")
    log_level: str = Field(default="INFO", alias="IMMO_LOG_LEVEL")

    # REST API used for media transfer and realtime configuration
    api_base_url: str = Field(default="https://immoguinee.com/api", alias="IMMO_API_BASE_URL")
    http_timeout_seconds: float = Field(default=10.0, alias="HTTP_TIMEOUT_SECONDS")
    media_transfer_timeout_seconds: float = Field(
        default=180.0,
        alias="MEDIA_TRANSFER_TIMEOUT_SECONDS",
    )

    # Reverb (Pusher protocol) WebSocket server
    reverb_key: str | None = Field(default="immoguinee-reverb-key", alias="REVERB_APP_KEY")
    reverb_host: str | None = Field(default="immoguinee.com", alias="REVERB_HOST")
    reverb_port: int = Field(default=443, alias="REVERB_PORT")
    reverb_scheme: str = Field(default="https", alias="REVERB_SCHEME")
    reverb_config_path: str | None = Field(default=None, alias="REVERB_CONFIG_PATH")
    reverb_auth_path: str = Field(default="/api/broadcasting/auth", alias="REVERB_AUTH_PATH")
    reverb_event_namespace: str = Field(default="App\\Events", alias="REVERB_EVENT_NAMESPACE")

    # Reconnection policy for the realtime channel
    reconnect_base_delay_seconds: float = Field(
        default=3.0,
        alias="REALTIME_RECONNECT_BASE_DELAY_SECONDS",
    )
    reconnect_max_attempts: int = Field(default=5, alias="REALTIME_RECONNECT_MAX_ATTEMPTS")
    activity_timeout_seconds: float = Field(
        default=120.0,
        alias="REALTIME_ACTIVITY_TIMEOUT_SECONDS",
    )

    # Payloads at or above this size are encrypted/decrypted off the event loop
    crypto_offload_threshold_bytes: int = Field(
        default=1024 * 1024,
        alias="CRYPTO_OFFLOAD_THRESHOLD_BYTES",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def reverb_configured(self) -> bool:
        """Return True when enough static Reverb settings exist to connect."""
        return bool(self.reverb_key and self.reverb_host)


settings = Settings()
