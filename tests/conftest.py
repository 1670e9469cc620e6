# tests/conftest.py
from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import pytest

from immoguinee_e2e.core.settings import Settings
from immoguinee_e2e.schemas.realtime import ConnectionConfig
from immoguinee_e2e.services.connection_config import ConnectionConfigClient, StaticTokenSource
from immoguinee_e2e.services.media_cipher import MediaCipher
from immoguinee_e2e.utils.events import EventCallback, EventListeners, Unbind

TEST_TOKEN = "test-bearer-token"


class FakeChannel:
    """In-memory stand-in for a transport channel."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.listeners = EventListeners()
        self.bound: list[tuple[str, EventCallback]] = []
        self.whispers: list[tuple[str, dict[str, Any]]] = []

    def listen(self, event: str, callback: EventCallback) -> Unbind:
        self.bound.append((event, callback))
        return self.listeners.bind(event, callback)

    def listen_for_whisper(self, event: str, callback: EventCallback) -> Unbind:
        return self.listen(f"client-{event}", callback)

    async def whisper(self, event: str, payload: Mapping[str, Any]) -> None:
        self.whispers.append((event, dict(payload)))

    def deliver(self, event: str, payload: Any) -> None:
        self.listeners.emit(event, payload)


class FakePresenceChannel(FakeChannel):
    """Presence channel whose membership events are raised by the test."""

    def here(self, callback: EventCallback) -> Unbind:
        return self.listen("here", callback)

    def joining(self, callback: EventCallback) -> Unbind:
        return self.listen("joining", callback)

    def leaving(self, callback: EventCallback) -> Unbind:
        return self.listen("leaving", callback)


class FakeTransport:
    """Transport whose lifecycle is driven explicitly by the test."""

    def __init__(self, connect_outcome: str | None = "connected") -> None:
        self.connect_outcome = connect_outcome
        self.lifecycle = EventListeners()
        self.channels: dict[str, FakeChannel] = {}
        self.presence: dict[str, FakePresenceChannel] = {}
        self.left: list[str] = []
        self.connect_calls: list[tuple[ConnectionConfig, str]] = []
        self.tokens: list[str] = []
        self.disconnect_calls = 0
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self, config: ConnectionConfig, token: str) -> None:
        self.connect_calls.append((config, token))
        if self.connect_outcome is not None:
            self.emit(self.connect_outcome)

    def emit(self, event: str, payload: Any = None) -> None:
        self._connected = event == "connected"
        self.lifecycle.emit(event, payload)

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self._connected = False

    def update_token(self, token: str) -> None:
        self.tokens.append(token)

    def bind(self, event: str, callback: EventCallback) -> Unbind:
        return self.lifecycle.bind(event, callback)

    def private(self, name: str) -> FakeChannel:
        return self.channels.setdefault(name, FakeChannel(name))

    def join(self, name: str) -> FakePresenceChannel:
        return self.presence.setdefault(name, FakePresenceChannel(name))

    async def leave(self, name: str) -> None:
        # Channel is kept so tests can simulate frames still in flight
        self.left.append(name)


@pytest.fixture()
def test_settings() -> Settings:
    return Settings(
        reverb_key="test-key",
        reverb_host="ws.immoguinee.test",
        reverb_port=443,
        reverb_scheme="https",
        reverb_config_path=None,
        api_base_url="https://api.immoguinee.test",
    )


@pytest.fixture()
def config_client(test_settings: Settings) -> ConnectionConfigClient:
    return ConnectionConfigClient(config=test_settings)


@pytest.fixture()
def token_source() -> StaticTokenSource:
    return StaticTokenSource(TEST_TOKEN)


@pytest.fixture()
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture()
def cipher() -> MediaCipher:
    return MediaCipher(offload_threshold_bytes=1024 * 1024)
