"""Realtime connection configuration and bearer token sources."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

import httpx
from pydantic import ValidationError

from immoguinee_e2e.core.settings import Settings, settings
from immoguinee_e2e.schemas.realtime import ConnectionConfig

logger = logging.getLogger(__name__)


class ConfigUnavailableError(RuntimeError):
    """Raised when the realtime endpoint configuration cannot be obtained."""


class TokenSource(Protocol):
    """Supplies the current bearer token, or ``None`` when logged out."""

    async def get_token(self) -> str | None: ...


class StaticTokenSource:
    """Token source holding a single token in memory."""

    def __init__(self, token: str | None = None) -> None:
        self._token = token

    async def get_token(self) -> str | None:
        return self._token

    def set_token(self, token: str | None) -> None:
        self._token = token

    def clear(self) -> None:
        self._token = None


class ConnectionConfigClient:
    """Fetches and caches the Reverb endpoint configuration.

    When ``reverb_config_path`` is set the configuration is fetched from the
    API; otherwise it is built from static settings. The cached value lives
    for the process and is dropped on logout via :meth:`clear`.
    """

    def __init__(
        self,
        config: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = config or settings
        self._http_client = http_client
        self._cached: ConnectionConfig | None = None
        self._lock = asyncio.Lock()

    @property
    def cached(self) -> ConnectionConfig | None:
        return self._cached

    async def get_config(self, token: str | None = None) -> ConnectionConfig:
        """Return the cached configuration, loading it on first use.

        Raises:
            ConfigUnavailableError: If neither the endpoint nor settings provide one
        """
        async with self._lock:
            if self._cached is None:
                if self.settings.reverb_config_path:
                    self._cached = await self._fetch(token)
                else:
                    self._cached = self._from_settings()
            return self._cached

    def _from_settings(self) -> ConnectionConfig:
        if not self.settings.reverb_configured:
            raise ConfigUnavailableError("Reverb key and host are not configured")
        try:
            return ConnectionConfig(
                key=self.settings.reverb_key,
                host=self.settings.reverb_host,
                port=self.settings.reverb_port,
                scheme=self.settings.reverb_scheme,
                auth_path=self.settings.reverb_auth_path,
            )
        except ValidationError as exc:
            raise ConfigUnavailableError(f"Invalid Reverb settings: {exc}") from exc

    async def _fetch(self, token: str | None) -> ConnectionConfig:
        url = f"{self.settings.api_base_url.rstrip('/')}{self.settings.reverb_config_path}"
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        client = self._http_client
        owns_client = client is None
        if client is None:
            client = httpx.AsyncClient(timeout=httpx.Timeout(self.settings.http_timeout_seconds))
        try:
            response = await client.get(url, headers=headers)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as exc:
            raise ConfigUnavailableError(f"Realtime config request failed: {exc}") from exc
        except ValueError as exc:
            raise ConfigUnavailableError(f"Realtime config is not JSON: {exc}") from exc
        finally:
            if owns_client:
                await client.aclose()

        if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
            payload = payload["data"]
        if isinstance(payload, dict):
            payload.setdefault("auth_path", self.settings.reverb_auth_path)
        try:
            config = ConnectionConfig.model_validate(payload)
        except ValidationError as exc:
            raise ConfigUnavailableError(f"Invalid realtime config: {exc}") from exc

        logger.info("Loaded realtime config for %s:%d", config.host, config.port)
        return config

    def clear(self) -> None:
        """Drop the cached configuration (called on logout)."""
        self._cached = None
