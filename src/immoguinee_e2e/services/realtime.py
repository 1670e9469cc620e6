"""Connection manager for the realtime messaging channel.

This module provides the ConnectionManager class that owns the single,
process-wide pub/sub connection. It handles:

- Initialization from an auth token and the Reverb endpoint configuration
- Tracking the observable connection state
- Reconnecting with bounded exponential backoff after transport failures
- Immediate reconnection when the application returns to the foreground
- Teardown on logout, releasing listeners, timers and cached secrets
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from immoguinee_e2e.core.settings import settings
from immoguinee_e2e.services.connection_config import (
    ConfigUnavailableError,
    ConnectionConfigClient,
    TokenSource,
)
from immoguinee_e2e.services.transport import (
    EVENT_CONNECTED,
    EVENT_CONNECTING,
    EVENT_DISCONNECTED,
    EVENT_ERROR,
    PubSubTransport,
    TransportError,
)
from immoguinee_e2e.utils.events import EventCallback, EventListeners, Unbind

logger = logging.getLogger(__name__)

APP_STATE_ACTIVE = "active"
APP_STATE_BACKGROUND = "background"


class ConnectionState(str, Enum):
    """Observable states of the realtime connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass
class ReconnectState:
    """Mutable retry bookkeeping for the backoff policy."""

    attempt_count: int = 0
    scheduled_at: float | None = None
    last_delay: float | None = None

    def reset(self) -> None:
        self.attempt_count = 0
        self.scheduled_at = None
        self.last_delay = None


class Deactivatable(Protocol):
    """A channel subscription the manager can silence on teardown."""

    def deactivate(self) -> None: ...


class ConnectionManager:
    """Owns the shared transport connection and its reconnection policy."""

    def __init__(
        self,
        transport: PubSubTransport,
        token_source: TokenSource,
        config_client: ConnectionConfigClient | None = None,
        *,
        base_delay: float | None = None,
        max_attempts: int | None = None,
    ) -> None:
        """Initialize the connection manager.

        Args:
            transport: Pub/sub transport shared by every channel subscription.
            token_source: Supplier of the bearer token, consulted before each attempt.
            config_client: Optional config client. If None, one backed by settings is used.
            base_delay: Backoff base in seconds (defaults to settings).
            max_attempts: Consecutive automatic attempts before giving up (defaults to settings).
        """
        self.transport = transport
        self.token_source = token_source
        self.config_client = config_client or ConnectionConfigClient()
        self.base_delay = (
            settings.reconnect_base_delay_seconds if base_delay is None else base_delay
        )
        self.max_attempts = (
            settings.reconnect_max_attempts if max_attempts is None else max_attempts
        )
        self.state = ConnectionState.DISCONNECTED
        self.reconnect_state = ReconnectState()
        self.last_error: Any = None
        self._started = False
        self._handles: list[Unbind] = []
        self._subscriptions: set[Deactivatable] = set()
        self._timer: asyncio.Task[None] | None = None
        self._reconnect_lock = asyncio.Lock()
        self._state_listeners = EventListeners()

    @property
    def started(self) -> bool:
        return self._started

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def reconnect_pending(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def retries_exhausted(self) -> bool:
        """True when automatic retries stopped and only a manual trigger can recover."""
        return (
            self.state is not ConnectionState.CONNECTED
            and self.reconnect_state.attempt_count >= self.max_attempts
            and not self.reconnect_pending
        )

    def add_state_listener(self, callback: EventCallback) -> Unbind:
        """Call ``callback(state)`` on every state change."""
        return self._state_listeners.bind("state", callback)

    def track(self, subscription: Deactivatable) -> None:
        self._subscriptions.add(subscription)

    def untrack(self, subscription: Deactivatable) -> None:
        self._subscriptions.discard(subscription)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self.state:
            return
        logger.debug("Realtime state %s -> %s", self.state.value, state.value)
        self.state = state
        self._state_listeners.emit("state", state)

    async def start(self) -> bool:
        """Initialize the connection.

        Returns:
            True once the manager is live (it recovers from transport failures
            on its own), False when the token or endpoint configuration is missing.
        """
        if self._started:
            return True

        token = await self.token_source.get_token()
        if not token:
            logger.info("No auth token, skipping realtime initialization")
            return False

        try:
            config = await self.config_client.get_config(token)
        except ConfigUnavailableError as exc:
            self.last_error = exc
            logger.warning("Realtime config unavailable: %s", exc)
            return False

        self._handles = [
            self.transport.bind(EVENT_CONNECTED, self._on_connected),
            self.transport.bind(EVENT_CONNECTING, self._on_connecting),
            self.transport.bind(EVENT_DISCONNECTED, self._on_disconnected),
            self.transport.bind(EVENT_ERROR, self._on_error),
        ]
        self._started = True
        self.reconnect_state.reset()
        self._set_state(ConnectionState.CONNECTING)

        async with self._reconnect_lock:
            await self.transport.connect(config, token)

        if not self._started:
            # stop() ran during the first handshake
            await self.transport.disconnect()
            return False
        return True

    def _on_connected(self, _payload: Any) -> None:
        self.reconnect_state.reset()
        self._cancel_timer()
        self._set_state(ConnectionState.CONNECTED)
        logger.info("Connected to realtime server")

    def _on_connecting(self, _payload: Any) -> None:
        self._set_state(ConnectionState.CONNECTING)

    def _on_disconnected(self, _payload: Any) -> None:
        if not self._started:
            return
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Realtime connection lost")
        self._schedule_reconnect()

    def _on_error(self, error: Any) -> None:
        if not self._started:
            return
        self.last_error = error
        self._set_state(ConnectionState.ERROR)
        logger.warning("Realtime connection error: %s", error)
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        """Schedule a reconnection attempt with exponential backoff."""
        retry = self.reconnect_state
        if retry.attempt_count >= self.max_attempts:
            logger.warning("Max reconnect attempts (%d) reached", self.max_attempts)
            return

        delay = self.base_delay * 2 ** retry.attempt_count
        retry.attempt_count += 1

        loop = asyncio.get_running_loop()
        retry.scheduled_at = loop.time() + delay
        retry.last_delay = delay
        logger.info(
            "Scheduling reconnect in %.1fs (attempt %d)", delay, retry.attempt_count
        )

        self._cancel_timer()
        self._timer = loop.create_task(self._reconnect_after(delay))

    def _cancel_timer(self) -> asyncio.Task[None] | None:
        timer = self._timer
        if timer is None or timer is asyncio.current_task():
            return None
        self._timer = None
        if not timer.done():
            timer.cancel()
            return timer
        return None

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self.state is not ConnectionState.CONNECTED:
            await self.reconnect()

    async def reconnect(self) -> bool:
        """Attempt one reconnection with a fresh token.

        Concurrent calls are coalesced: while an attempt is in flight any other
        call returns False immediately.
        """
        if not self._started:
            return False
        if self._reconnect_lock.locked():
            logger.debug("Reconnect already in progress")
            return False

        async with self._reconnect_lock:
            token = await self.token_source.get_token()
            if not token:
                logger.info("No token for reconnect")
                return False

            try:
                config = await self.config_client.get_config(token)
            except ConfigUnavailableError as exc:
                self._on_error(exc)
                return False

            self.transport.update_token(token)
            self._set_state(ConnectionState.CONNECTING)
            await self.transport.connect(config, token)

        if not self._started:
            # Torn down while the handshake was in flight
            await self.transport.disconnect()
            return False
        return True

    async def on_foreground(self) -> bool:
        """Restart the retry cycle with an immediate attempt when not connected."""
        if not self._started or self.is_connected:
            return False
        logger.info("App foregrounded, reconnecting")
        self.reconnect_state.reset()
        timer = self._cancel_timer()
        if timer is not None:
            with suppress(asyncio.CancelledError):
                await timer
        return await self.reconnect()

    async def handle_app_state(self, app_state: str) -> None:
        """React to application foreground/background transitions."""
        if app_state == APP_STATE_ACTIVE:
            await self.on_foreground()
        elif app_state == APP_STATE_BACKGROUND:
            logger.debug("App backgrounded")

    async def send_event(self, channel: str, event: str, payload: dict[str, Any]) -> bool:
        """Whisper ``event`` on a private channel.

        Returns:
            False when not connected or when the transport rejects the send.
        """
        if not self.is_connected:
            return False
        try:
            await self.transport.private(channel).whisper(event, payload)
        except TransportError as exc:
            logger.debug("Whisper %s on %s dropped: %s", event, channel, exc)
            return False
        return True

    async def stop(self) -> None:
        """Tear down the connection (logout or process shutdown)."""
        self._started = False

        timer = self._cancel_timer()
        if timer is not None:
            with suppress(asyncio.CancelledError):
                await timer

        for subscription in list(self._subscriptions):
            subscription.deactivate()
        self._subscriptions.clear()

        for unbind in self._handles:
            unbind()
        self._handles.clear()

        await self.transport.disconnect()
        self.config_client.clear()
        self.reconnect_state.reset()
        self.last_error = None
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Realtime connection closed and cleaned up")
