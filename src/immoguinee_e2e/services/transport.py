"""Pub/sub transport for the realtime messaging channel.

This module defines the transport contract consumed by
:class:`~immoguinee_e2e.services.realtime.ConnectionManager` and a concrete
implementation speaking the Pusher WebSocket protocol, as served by Laravel
Reverb. It includes:

- Connection handshake and ``socket_id`` negotiation
- Private and presence channel authorization over HTTPS with a bearer token
- Presence member tracking (``here``, ``joining``, ``leaving``)
- Laravel Echo compatible event name formatting and client whispers
- Lifecycle events (``connecting``, ``connected``, ``disconnected``, ``error``)
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from typing import Any, Protocol

import httpx
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from immoguinee_e2e.core.settings import settings
from immoguinee_e2e.schemas.realtime import ConnectionConfig
from immoguinee_e2e.utils.events import EventCallback, EventListeners, Unbind

logger = logging.getLogger(__name__)

PRIVATE_PREFIX = "private-"
PRESENCE_PREFIX = "presence-"
WHISPER_PREFIX = "client-"

EVENT_CONNECTING = "connecting"
EVENT_CONNECTED = "connected"
EVENT_DISCONNECTED = "disconnected"
EVENT_ERROR = "error"
LIFECYCLE_EVENTS = (EVENT_CONNECTING, EVENT_CONNECTED, EVENT_DISCONNECTED, EVENT_ERROR)

SUBSCRIPTION_SUCCEEDED = "pusher:subscription_succeeded"
SUBSCRIPTION_ERROR = "pusher:subscription_error"
MEMBER_ADDED = "pusher_internal:member_added"
MEMBER_REMOVED = "pusher_internal:member_removed"

# Local events raised by presence channels from member bookkeeping
PRESENCE_HERE = "presence:here"
PRESENCE_JOINING = "presence:joining"
PRESENCE_LEAVING = "presence:leaving"


class TransportError(RuntimeError):
    """Raised for transport-level failures (network loss, auth, closed socket)."""


class TransportChannel(Protocol):
    """A subscribed channel on the shared transport connection."""

    name: str

    def listen(self, event: str, callback: EventCallback) -> Unbind: ...

    def listen_for_whisper(self, event: str, callback: EventCallback) -> Unbind: ...

    async def whisper(self, event: str, payload: Mapping[str, Any]) -> None: ...


class PresenceChannel(TransportChannel, Protocol):
    """A channel that also tracks which users are subscribed to it."""

    def here(self, callback: EventCallback) -> Unbind: ...

    def joining(self, callback: EventCallback) -> Unbind: ...

    def leaving(self, callback: EventCallback) -> Unbind: ...


class PubSubTransport(Protocol):
    """Process-wide pub/sub connection multiplexing channel subscriptions."""

    @property
    def connected(self) -> bool: ...

    async def connect(self, config: ConnectionConfig, token: str) -> None: ...

    async def disconnect(self) -> None: ...

    def update_token(self, token: str) -> None: ...

    def bind(self, event: str, callback: EventCallback) -> Unbind: ...

    def private(self, name: str) -> TransportChannel: ...

    def join(self, name: str) -> PresenceChannel: ...

    async def leave(self, name: str) -> None: ...


def format_event_name(event: str, namespace: str) -> str:
    """Format an event name the way Laravel Echo does.

    A leading ``.`` or ``\\`` marks a raw event name; anything else is prefixed
    with the application's event namespace.
    """
    if event.startswith((".", "\\")):
        return event[1:]
    if namespace:
        event = f"{namespace}.{event}"
    return event.replace(".", "\\")


def _decode_data(data: Any) -> Any:
    # Pusher double-encodes event data as a JSON string
    if isinstance(data, str):
        try:
            return json.loads(data)
        except ValueError:
            return data
    return data


class PusherChannel:
    """Channel handle returned by :meth:`PusherTransport.private`."""

    def __init__(self, transport: PusherTransport, name: str) -> None:
        self.name = name
        self.subscribed = False
        self._transport = transport
        self._listeners = EventListeners()

    def listen(self, event: str, callback: EventCallback) -> Unbind:
        return self._listeners.bind(self._transport.format_event(event), callback)

    def listen_for_whisper(self, event: str, callback: EventCallback) -> Unbind:
        return self._listeners.bind(f"{WHISPER_PREFIX}{event}", callback)

    async def whisper(self, event: str, payload: Mapping[str, Any]) -> None:
        await self._transport.send_event(f"{WHISPER_PREFIX}{event}", dict(payload), channel=self.name)

    def dispatch(self, event: str, data: Any) -> None:
        self._listeners.emit(event, data)

    def close(self) -> None:
        self.subscribed = False
        self._listeners.clear()


class PusherPresenceChannel(PusherChannel):
    """Presence channel keeping the member list in sync with the server.

    ``here`` callbacks receive the list of member infos once subscribed;
    ``joining`` and ``leaving`` receive a single member info.
    """

    def __init__(self, transport: PusherTransport, name: str) -> None:
        super().__init__(transport, name)
        self.members: dict[str, Any] = {}

    def here(self, callback: EventCallback) -> Unbind:
        return self._listeners.bind(PRESENCE_HERE, callback)

    def joining(self, callback: EventCallback) -> Unbind:
        return self._listeners.bind(PRESENCE_JOINING, callback)

    def leaving(self, callback: EventCallback) -> Unbind:
        return self._listeners.bind(PRESENCE_LEAVING, callback)

    def dispatch(self, event: str, data: Any) -> None:
        if event == SUBSCRIPTION_SUCCEEDED:
            presence = data.get("presence") if isinstance(data, Mapping) else None
            members = presence.get("hash") if isinstance(presence, Mapping) else None
            if not isinstance(members, Mapping):
                members = {}
            self.members = {str(user_id): info for user_id, info in members.items()}
            super().dispatch(event, data)
            self._listeners.emit(PRESENCE_HERE, list(self.members.values()))
            return

        if event in (MEMBER_ADDED, MEMBER_REMOVED):
            if not isinstance(data, Mapping) or data.get("user_id") is None:
                logger.debug("Ignoring malformed %s on %s", event, self.name)
                return
            user_id = str(data["user_id"])
            if event == MEMBER_ADDED:
                is_new = user_id not in self.members
                self.members[user_id] = data.get("user_info")
                if is_new:
                    self._listeners.emit(PRESENCE_JOINING, self.members[user_id])
            elif user_id in self.members:
                self._listeners.emit(PRESENCE_LEAVING, self.members.pop(user_id))
            return

        super().dispatch(event, data)

    def close(self) -> None:
        super().close()
        self.members.clear()


class PusherTransport:
    """Pusher protocol client over a single WebSocket connection."""

    def __init__(
        self,
        *,
        namespace: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        open_timeout: float | None = None,
    ) -> None:
        self.namespace = settings.reverb_event_namespace if namespace is None else namespace
        self.socket_id: str | None = None
        self._open_timeout = open_timeout or settings.http_timeout_seconds
        self._config: ConnectionConfig | None = None
        self._token: str | None = None
        self._ws: ClientConnection | None = None
        self._reader: asyncio.Task[None] | None = None
        self._closing = False
        self._channels: dict[str, PusherChannel] = {}
        self._pending: set[asyncio.Task[None]] = set()
        self._lifecycle = EventListeners()
        self._http_client = http_client
        self._owns_http_client = http_client is None

    @property
    def connected(self) -> bool:
        return self._ws is not None and self.socket_id is not None

    def format_event(self, event: str) -> str:
        return format_event_name(event, self.namespace)

    def bind(self, event: str, callback: EventCallback) -> Unbind:
        """Bind a lifecycle event callback."""
        if event not in LIFECYCLE_EVENTS:
            raise ValueError(f"Unknown lifecycle event: {event}")
        return self._lifecycle.bind(event, callback)

    def update_token(self, token: str) -> None:
        self._token = token

    async def connect(self, config: ConnectionConfig, token: str) -> None:
        """Open the socket and replay channel subscriptions.

        Failures are reported through the ``error`` lifecycle event rather than
        raised, so the connection manager owns every retry decision.
        """
        self._config = config
        self._token = token
        self._closing = False

        if self.connected:
            self._lifecycle.emit(EVENT_CONNECTED)
            return

        self._lifecycle.emit(EVENT_CONNECTING)
        try:
            ws, socket_id = await self._open(config)
        except (OSError, asyncio.TimeoutError, WebSocketException, TransportError) as exc:
            logger.warning("Realtime connection to %s failed: %s", config.host, exc)
            self._lifecycle.emit(EVENT_ERROR, exc)
            return

        self._ws = ws
        self.socket_id = socket_id
        self._reader = asyncio.create_task(self._read_loop(ws))
        logger.info("Realtime connection established (socket %s)", socket_id)
        self._lifecycle.emit(EVENT_CONNECTED)

        for channel in list(self._channels.values()):
            await self._subscribe(channel)

    async def _open(self, config: ConnectionConfig) -> tuple[ClientConnection, str]:
        ws = await connect(
            config.ws_url(settings.app_version),
            open_timeout=self._open_timeout,
            ping_interval=settings.activity_timeout_seconds,
        )
        try:
            raw = await asyncio.wait_for(ws.recv(), timeout=self._open_timeout)
            message = json.loads(raw)
            if message.get("event") != "pusher:connection_established":
                raise TransportError(f"Unexpected handshake event: {message.get('event')}")
            socket_id = _decode_data(message.get("data"))["socket_id"]
        except (ValueError, KeyError, TypeError) as exc:
            await ws.close()
            raise TransportError(f"Malformed handshake: {exc}") from exc
        except BaseException:
            await ws.close()
            raise
        return ws, str(socket_id)

    async def _read_loop(self, ws: ClientConnection) -> None:
        try:
            async for raw in ws:
                await self._handle_frame(raw)
        except ConnectionClosed as exc:
            logger.info("Realtime socket closed: %s", exc)
        finally:
            if self._ws is ws:
                self._ws = None
                self.socket_id = None
                for channel in self._channels.values():
                    channel.subscribed = False
                await ws.close()
                if not self._closing:
                    self._lifecycle.emit(EVENT_DISCONNECTED)

    async def _handle_frame(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            logger.debug("Ignoring non-JSON realtime frame")
            return
        if not isinstance(message, dict):
            logger.debug("Ignoring realtime frame that is not a JSON object")
            return

        event = message.get("event")
        data = _decode_data(message.get("data"))

        if event == "pusher:ping":
            try:
                await self.send_event("pusher:pong", {})
            except TransportError as exc:
                logger.debug("Pong not sent: %s", exc)
            return
        if event == "pusher:error":
            logger.warning("Realtime server error: %s", data)
            self._lifecycle.emit(EVENT_ERROR, data)
            return

        channel_name = message.get("channel")
        channel = self._channels.get(channel_name) if isinstance(channel_name, str) else None
        if channel is None:
            return
        if event == "pusher_internal:subscription_succeeded":
            channel.subscribed = True
            channel.dispatch(SUBSCRIPTION_SUCCEEDED, data)
            return
        if event:
            channel.dispatch(event, data)

    async def send_event(
        self, event: str, data: Mapping[str, Any], *, channel: str | None = None
    ) -> None:
        """Send a raw protocol event over the socket."""
        if self._ws is None:
            raise TransportError("Realtime transport is not connected")
        message: dict[str, Any] = {"event": event, "data": dict(data)}
        if channel is not None:
            message["channel"] = channel
        try:
            await self._ws.send(json.dumps(message))
        except ConnectionClosed as exc:
            raise TransportError(f"Realtime socket closed: {exc}") from exc

    async def _http(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(settings.http_timeout_seconds)
            )
        return self._http_client

    async def _authorize(self, channel_name: str) -> dict[str, str]:
        """Return the ``auth`` signature (plus ``channel_data`` for presence)."""
        if self._config is None or self.socket_id is None:
            raise TransportError("Cannot authorize a channel before connecting")
        client = await self._http()
        try:
            response = await client.post(
                self._config.auth_endpoint,
                data={"socket_id": self.socket_id, "channel_name": channel_name},
                headers={
                    "Authorization": f"Bearer {self._token}",
                    "Accept": "application/json",
                },
            )
            response.raise_for_status()
            payload = response.json()
            result = {"auth": str(payload["auth"])}
        except httpx.HTTPError as exc:
            raise TransportError(f"Channel authorization failed: {exc}") from exc
        except (ValueError, KeyError, TypeError) as exc:
            raise TransportError(f"Malformed channel authorization response: {exc}") from exc

        channel_data = payload.get("channel_data")
        if channel_data is not None:
            result["channel_data"] = (
                channel_data if isinstance(channel_data, str) else json.dumps(channel_data)
            )
        return result

    async def _subscribe(self, channel: PusherChannel) -> None:
        if not self.connected:
            return
        data: dict[str, Any] = {"channel": channel.name}
        try:
            if channel.name.startswith((PRIVATE_PREFIX, PRESENCE_PREFIX)):
                data.update(await self._authorize(channel.name))
            await self.send_event("pusher:subscribe", data)
        except TransportError as exc:
            logger.warning("Subscription to %s failed: %s", channel.name, exc)
            channel.dispatch(SUBSCRIPTION_ERROR, {"error": str(exc)})
            return
        logger.debug("Subscribed to %s", channel.name)

    def _channel(self, full_name: str, factory: type[PusherChannel]) -> PusherChannel:
        channel = self._channels.get(full_name)
        if channel is None:
            channel = factory(self, full_name)
            self._channels[full_name] = channel
            if self.connected:
                task = asyncio.create_task(self._subscribe(channel))
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)
        return channel

    def private(self, name: str) -> PusherChannel:
        """Return the private channel ``name``, subscribing on first use."""
        return self._channel(f"{PRIVATE_PREFIX}{name}", PusherChannel)

    def join(self, name: str) -> PusherPresenceChannel:
        """Return the presence channel ``name``, subscribing on first use."""
        channel = self._channel(f"{PRESENCE_PREFIX}{name}", PusherPresenceChannel)
        if not isinstance(channel, PusherPresenceChannel):
            raise TransportError(f"{channel.name} is not a presence channel")
        return channel

    async def leave(self, name: str) -> None:
        """Unsubscribe from ``name`` and its private and presence variants."""
        for full_name in (name, f"{PRIVATE_PREFIX}{name}", f"{PRESENCE_PREFIX}{name}"):
            channel = self._channels.pop(full_name, None)
            if channel is None:
                continue
            channel.close()
            if not self.connected:
                continue
            try:
                await self.send_event("pusher:unsubscribe", {"channel": full_name})
            except TransportError as exc:
                logger.debug("Unsubscribe from %s not sent: %s", full_name, exc)

    async def disconnect(self) -> None:
        """Close the socket and drop all channels, credentials and listeners' state."""
        self._closing = True
        for task in list(self._pending):
            task.cancel()
        self._pending.clear()

        ws, reader = self._ws, self._reader
        self._ws = None
        self._reader = None
        self.socket_id = None
        if ws is not None:
            await ws.close()
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass

        for channel in self._channels.values():
            channel.close()
        self._channels.clear()
        self._token = None
        self._config = None

        if self._owns_http_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
        logger.info("Realtime transport disconnected")
