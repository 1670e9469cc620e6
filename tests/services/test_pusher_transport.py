# mypy: ignore-errors
"""Tests for the Pusher protocol transport."""

from __future__ import annotations

import asyncio
import json
from urllib.parse import parse_qs

import httpx
import pytest
from websockets.exceptions import ConnectionClosed

from immoguinee_e2e.schemas.realtime import ConnectionConfig
from immoguinee_e2e.services.transport import (
    PusherTransport,
    TransportError,
    format_event_name,
)
from tests.conftest import TEST_TOKEN

NAMESPACE = "App\\Events"
SOCKET_ID = "1234.5678"
CONFIG = ConnectionConfig(key="test-key", host="ws.immoguinee.test", port=443, scheme="https")


class FakeWebSocket:
    """Queue-backed WebSocket double; ``None`` on the queue ends iteration."""

    def __init__(self, *frames: dict) -> None:
        self.sent: list[dict] = []
        self.closed = False
        self.incoming: asyncio.Queue = asyncio.Queue()
        for frame in frames:
            self.push(frame)

    def push(self, frame: dict | None) -> None:
        self.incoming.put_nowait(None if frame is None else json.dumps(frame))

    async def recv(self) -> str:
        return await self.incoming.get()

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        frame = await self.incoming.get()
        if frame is None:
            raise StopAsyncIteration
        return frame

    async def send(self, message: str) -> None:
        self.sent.append(json.loads(message))

    async def close(self) -> None:
        self.closed = True
        self.incoming.put_nowait(None)


def _handshake() -> dict:
    return {
        "event": "pusher:connection_established",
        "data": json.dumps({"socket_id": SOCKET_ID, "activity_timeout": 30}),
    }


@pytest.fixture
def auth_requests():
    return []


@pytest.fixture
def auth_client(auth_requests):
    def handler(request: httpx.Request) -> httpx.Response:
        auth_requests.append(request)
        return httpx.Response(200, json={"auth": "test-key:signature"})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def lifecycle_events():
    return []


@pytest.fixture
def transport(auth_client, lifecycle_events):
    pusher = PusherTransport(namespace=NAMESPACE, http_client=auth_client, open_timeout=1.0)
    for event in ("connecting", "connected", "disconnected", "error"):
        pusher.bind(event, lambda payload, event=event: lifecycle_events.append(event))
    return pusher


@pytest.mark.parametrize(
    ("event", "namespace", "expected"),
    [
        ("NewMessageEvent", NAMESPACE, "App\\Events\\NewMessageEvent"),
        (".NewMessageEvent", NAMESPACE, "NewMessageEvent"),
        ("\\Custom\\Event", NAMESPACE, "Custom\\Event"),
        ("Chat.Sent", "", "Chat\\Sent"),
        ("NewMessageEvent", "", "NewMessageEvent"),
    ],
)
def test_format_event_name(event, namespace, expected) -> None:
    assert format_event_name(event, namespace) == expected


def test_bind_rejects_unknown_lifecycle_event(transport) -> None:
    with pytest.raises(ValueError):
        transport.bind("reconnected", lambda payload: None)


@pytest.mark.asyncio
async def test_connect_authorizes_and_subscribes(
    transport, mocker, auth_requests, lifecycle_events
) -> None:
    ws = FakeWebSocket(_handshake())
    connect = mocker.patch(
        "immoguinee_e2e.services.transport.connect", new=mocker.AsyncMock(return_value=ws)
    )
    transport.private("conversation.1")

    await transport.connect(CONFIG, TEST_TOKEN)

    assert lifecycle_events == ["connecting", "connected"]
    assert transport.connected
    assert transport.socket_id == SOCKET_ID
    assert connect.await_args.args[0].startswith("wss://ws.immoguinee.test:443/app/test-key?protocol=7")

    request = auth_requests[0]
    assert str(request.url) == "https://ws.immoguinee.test/api/broadcasting/auth"
    assert request.headers["Authorization"] == f"Bearer {TEST_TOKEN}"
    assert parse_qs(request.content.decode()) == {
        "socket_id": [SOCKET_ID],
        "channel_name": ["private-conversation.1"],
    }
    assert ws.sent == [
        {
            "event": "pusher:subscribe",
            "data": {"channel": "private-conversation.1", "auth": "test-key:signature"},
        }
    ]
    await transport.disconnect()


@pytest.mark.asyncio
async def test_connect_failure_emits_error(transport, mocker, lifecycle_events) -> None:
    mocker.patch(
        "immoguinee_e2e.services.transport.connect",
        new=mocker.AsyncMock(side_effect=OSError("connection refused")),
    )

    await transport.connect(CONFIG, TEST_TOKEN)

    assert lifecycle_events == ["connecting", "error"]
    assert not transport.connected


@pytest.mark.asyncio
async def test_unexpected_handshake_closes_socket(transport, mocker, lifecycle_events) -> None:
    ws = FakeWebSocket({"event": "pusher:error", "data": {"code": 4001}})
    mocker.patch("immoguinee_e2e.services.transport.connect", new=mocker.AsyncMock(return_value=ws))

    await transport.connect(CONFIG, TEST_TOKEN)

    assert lifecycle_events == ["connecting", "error"]
    assert ws.closed


@pytest.mark.asyncio
async def test_frames_are_dispatched_to_channel_listeners(transport, mocker) -> None:
    ws = FakeWebSocket(_handshake())
    mocker.patch("immoguinee_e2e.services.transport.connect", new=mocker.AsyncMock(return_value=ws))
    await transport.connect(CONFIG, TEST_TOKEN)

    channel = transport.private("conversation.7")
    await asyncio.gather(*transport._pending)
    received, whispers, confirmations = [], [], []
    channel.listen("NewMessageEvent", received.append)
    channel.listen_for_whisper("typing", whispers.append)
    channel.listen(".pusher:subscription_succeeded", confirmations.append)

    frames = [
        {
            "event": "pusher_internal:subscription_succeeded",
            "channel": "private-conversation.7",
            "data": "{}",
        },
        {
            "event": "App\\Events\\NewMessageEvent",
            "channel": "private-conversation.7",
            "data": json.dumps({"message": {"id": 1}}),
        },
        {
            "event": "client-typing",
            "channel": "private-conversation.7",
            "data": {"isTyping": True},
        },
        {"event": "App\\Events\\NewMessageEvent", "channel": "private-other", "data": "{}"},
    ]
    for frame in frames:
        await transport._handle_frame(json.dumps(frame))

    assert channel.subscribed
    assert confirmations == [{}]
    assert received == [{"message": {"id": 1}}]
    assert whispers == [{"isTyping": True}]
    await transport.disconnect()


@pytest.mark.asyncio
async def test_ping_is_answered_and_server_error_surfaced(
    transport, mocker, lifecycle_events
) -> None:
    ws = FakeWebSocket(_handshake())
    mocker.patch("immoguinee_e2e.services.transport.connect", new=mocker.AsyncMock(return_value=ws))
    await transport.connect(CONFIG, TEST_TOKEN)

    await transport._handle_frame(json.dumps({"event": "pusher:ping", "data": {}}))
    await transport._handle_frame(
        json.dumps({"event": "pusher:error", "data": {"message": "Over quota", "code": 4004}})
    )
    await transport._handle_frame("not json")

    assert ws.sent == [{"event": "pusher:pong", "data": {}}]
    assert lifecycle_events == ["connecting", "connected", "error"]
    await transport.disconnect()


@pytest.mark.asyncio
async def test_whisper_and_leave(transport, mocker) -> None:
    ws = FakeWebSocket(_handshake())
    mocker.patch("immoguinee_e2e.services.transport.connect", new=mocker.AsyncMock(return_value=ws))
    await transport.connect(CONFIG, TEST_TOKEN)
    channel = transport.private("conversation.3")
    await asyncio.gather(*transport._pending)
    ws.sent.clear()

    await channel.whisper("typing", {"isTyping": True})
    await transport.leave("conversation.3")

    assert ws.sent == [
        {"event": "client-typing", "data": {"isTyping": True}, "channel": "private-conversation.3"},
        {"event": "pusher:unsubscribe", "data": {"channel": "private-conversation.3"}},
    ]
    await transport.disconnect()


@pytest.mark.asyncio
async def test_failed_authorization_reports_subscription_error(mocker, lifecycle_events) -> None:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(403)))
    transport = PusherTransport(namespace=NAMESPACE, http_client=http_client, open_timeout=1.0)
    ws = FakeWebSocket(_handshake())
    mocker.patch("immoguinee_e2e.services.transport.connect", new=mocker.AsyncMock(return_value=ws))
    errors = []
    channel = transport.private("conversation.4")
    channel.listen(".pusher:subscription_error", errors.append)

    await transport.connect(CONFIG, TEST_TOKEN)

    assert len(errors) == 1
    assert ws.sent == []
    await transport.disconnect()
    await http_client.aclose()


@pytest.mark.asyncio
async def test_server_close_emits_disconnected(transport, mocker, lifecycle_events) -> None:
    ws = FakeWebSocket(_handshake())
    mocker.patch("immoguinee_e2e.services.transport.connect", new=mocker.AsyncMock(return_value=ws))
    await transport.connect(CONFIG, TEST_TOKEN)
    reader = transport._reader

    ws.push(None)
    await asyncio.wait_for(reader, timeout=1.0)

    assert lifecycle_events == ["connecting", "connected", "disconnected"]
    assert not transport.connected
    assert ws.closed
    with pytest.raises(TransportError):
        await transport.send_event("client-typing", {})


@pytest.mark.asyncio
async def test_disconnect_is_silent_and_clears_channels(transport, mocker, lifecycle_events) -> None:
    ws = FakeWebSocket(_handshake())
    mocker.patch("immoguinee_e2e.services.transport.connect", new=mocker.AsyncMock(return_value=ws))
    await transport.connect(CONFIG, TEST_TOKEN)
    channel = transport.private("conversation.8")
    received = []
    channel.listen("NewMessageEvent", received.append)

    await transport.disconnect()

    assert ws.closed
    assert not transport.connected
    assert lifecycle_events == ["connecting", "connected"]
    channel.dispatch("App\\Events\\NewMessageEvent", {"id": 1})
    assert received == []


@pytest.mark.asyncio
async def test_non_object_frames_do_not_kill_reader(transport, mocker, lifecycle_events) -> None:
    ws = FakeWebSocket(_handshake())
    mocker.patch("immoguinee_e2e.services.transport.connect", new=mocker.AsyncMock(return_value=ws))
    await transport.connect(CONFIG, TEST_TOKEN)
    reader = transport._reader

    ws.incoming.put_nowait(json.dumps([1, 2]))
    ws.incoming.put_nowait(json.dumps("text"))
    ws.incoming.put_nowait(json.dumps({"event": "App\\Events\\X", "channel": ["bad"]}))
    ws.push({"event": "pusher:ping", "data": {}})
    for _ in range(50):
        if ws.sent:
            break
        await asyncio.sleep(0)

    assert ws.sent == [{"event": "pusher:pong", "data": {}}]
    assert not reader.done()
    assert transport.connected
    assert lifecycle_events == ["connecting", "connected"]
    await transport.disconnect()


class ClosingSendWebSocket(FakeWebSocket):
    async def send(self, message: str) -> None:
        raise ConnectionClosed(None, None)


@pytest.mark.asyncio
async def test_pong_on_closing_socket_is_dropped(transport, mocker) -> None:
    ws = ClosingSendWebSocket(_handshake())
    mocker.patch("immoguinee_e2e.services.transport.connect", new=mocker.AsyncMock(return_value=ws))
    await transport.connect(CONFIG, TEST_TOKEN)

    await transport._handle_frame(json.dumps({"event": "pusher:ping", "data": {}}))

    assert transport.connected
    await transport.disconnect()


@pytest.mark.asyncio
async def test_presence_channel_tracks_members(mocker) -> None:
    auth_requests = []
    channel_data = {"user_id": 7, "user_info": {"name": "Fatoumata"}}

    def handler(request: httpx.Request) -> httpx.Response:
        auth_requests.append(parse_qs(request.content.decode()))
        return httpx.Response(
            200, json={"auth": "test-key:presence-sig", "channel_data": json.dumps(channel_data)}
        )

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    transport = PusherTransport(namespace=NAMESPACE, http_client=http_client, open_timeout=1.0)
    ws = FakeWebSocket(_handshake())
    mocker.patch("immoguinee_e2e.services.transport.connect", new=mocker.AsyncMock(return_value=ws))
    await transport.connect(CONFIG, TEST_TOKEN)

    channel = transport.join("users")
    await asyncio.gather(*transport._pending)
    here, joining, leaving = [], [], []
    channel.here(here.append)
    channel.joining(joining.append)
    channel.leaving(leaving.append)

    assert auth_requests[0]["channel_name"] == ["presence-users"]
    assert ws.sent == [
        {
            "event": "pusher:subscribe",
            "data": {
                "channel": "presence-users",
                "auth": "test-key:presence-sig",
                "channel_data": json.dumps(channel_data),
            },
        }
    ]

    members = {"presence": {"ids": ["7"], "hash": {"7": {"name": "Fatoumata"}}, "count": 1}}
    frames = [
        {
            "event": "pusher_internal:subscription_succeeded",
            "channel": "presence-users",
            "data": json.dumps(members),
        },
        {
            "event": "pusher_internal:member_added",
            "channel": "presence-users",
            "data": json.dumps({"user_id": 9, "user_info": {"name": "Ibrahima"}}),
        },
        {
            "event": "pusher_internal:member_removed",
            "channel": "presence-users",
            "data": json.dumps({"user_id": 7}),
        },
        {
            "event": "pusher_internal:member_removed",
            "channel": "presence-users",
            "data": json.dumps({"user_id": 404}),
        },
    ]
    for frame in frames:
        await transport._handle_frame(json.dumps(frame))

    assert channel.subscribed
    assert here == [[{"name": "Fatoumata"}]]
    assert joining == [{"name": "Ibrahima"}]
    assert leaving == [{"name": "Fatoumata"}]
    assert channel.members == {"9": {"name": "Ibrahima"}}

    ws.sent.clear()
    await transport.leave("users")
    assert ws.sent == [{"event": "pusher:unsubscribe", "data": {"channel": "presence-users"}}]
    await transport.disconnect()
    await http_client.aclose()
