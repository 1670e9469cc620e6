"""Conversation, user and presence channel subscriptions over the shared connection."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, cast

from immoguinee_e2e.schemas.realtime import TypingWhisper
from immoguinee_e2e.services.realtime import ConnectionManager
from immoguinee_e2e.services.transport import PresenceChannel, TransportChannel
from immoguinee_e2e.utils.events import EventCallback, Unbind

logger = logging.getLogger(__name__)

NEW_MESSAGE_EVENT = "NewMessageEvent"
MESSAGE_READ_EVENT = "MessageReadEvent"
MESSAGE_DELIVERED_EVENT = "MessageDeliveredEvent"
NOTIFICATION_EVENT = "NotificationEvent"
ONLINE_STATUS_EVENT = "UserOnlineStatusEvent"
TYPING_WHISPER = "typing"
ONLINE_USERS_CHANNEL = "users"


def conversation_channel(conversation_id: str) -> str:
    return f"conversation.{conversation_id}"


def user_channel(user_id: str) -> str:
    return f"user.{user_id}"


def _unwrap_message(payload: Any) -> Any:
    if isinstance(payload, Mapping) and payload.get("message") is not None:
        return payload["message"]
    return payload


@dataclass
class ConversationCallbacks:
    """Handlers for the events of a conversation channel."""

    on_message: EventCallback | None = None
    on_typing: EventCallback | None = None
    on_read: EventCallback | None = None
    on_delivered: EventCallback | None = None


@dataclass
class UserChannelCallbacks:
    """Handlers for a user's personal notification channel."""

    on_notification: EventCallback | None = None
    on_online_status_change: EventCallback | None = None


@dataclass
class PresenceCallbacks:
    """Handlers for membership changes on a presence channel."""

    on_here: EventCallback | None = None
    on_joining: EventCallback | None = None
    on_leaving: EventCallback | None = None


class ChannelSubscription:
    """Listeners bound to one channel; inert once deactivated.

    Every callback is wrapped so that nothing fires after :meth:`deactivate`
    returns, even if the transport still delivers frames for the channel.
    """

    def __init__(self, name: str, channel: TransportChannel) -> None:
        self.name = name
        self.channel = channel
        self.active = True
        self._handles: list[Unbind] = []

    def _guard(
        self, callback: EventCallback, transform: Callable[[Any], Any] | None = None
    ) -> EventCallback:
        def handler(payload: Any) -> None:
            if not self.active:
                return
            callback(transform(payload) if transform else payload)

        return handler

    def listen(
        self,
        event: str,
        callback: EventCallback,
        transform: Callable[[Any], Any] | None = None,
    ) -> None:
        self._handles.append(self.channel.listen(event, self._guard(callback, transform)))

    def listen_for_whisper(self, event: str, callback: EventCallback) -> None:
        self._handles.append(self.channel.listen_for_whisper(event, self._guard(callback)))

    def on(self, register: Callable[[EventCallback], Unbind], callback: EventCallback) -> None:
        """Attach a guarded callback through a channel registration method."""
        self._handles.append(register(self._guard(callback)))

    def deactivate(self) -> None:
        self.active = False
        for unbind in self._handles:
            unbind()
        self._handles.clear()


class ConversationChannels:
    """Subscribes UI views to conversation, user and presence channels."""

    def __init__(self, manager: ConnectionManager) -> None:
        self.manager = manager
        self._subscriptions: dict[str, ChannelSubscription] = {}

    def _open(
        self, name: str, open_channel: Callable[[str], TransportChannel] | None = None
    ) -> ChannelSubscription | None:
        if not self.manager.started:
            logger.warning("Cannot subscribe to %s - not connected", name)
            return None

        previous = self._subscriptions.pop(name, None)
        if previous is not None:
            previous.deactivate()
            self.manager.untrack(previous)

        logger.debug("Subscribing to channel %s", name)
        open_channel = open_channel or self.manager.transport.private
        subscription = ChannelSubscription(name, open_channel(name))
        self._subscriptions[name] = subscription
        self.manager.track(subscription)
        return subscription

    def subscribe(
        self, conversation_id: str, callbacks: ConversationCallbacks
    ) -> ChannelSubscription | None:
        """Subscribe to the private channel of a conversation.

        Returns:
            The subscription, or None when the connection was never started.
        """
        subscription = self._open(conversation_channel(conversation_id))
        if subscription is None:
            return None

        if callbacks.on_message:
            # Reverb may broadcast with or without the event namespace
            for event in (NEW_MESSAGE_EVENT, f".{NEW_MESSAGE_EVENT}"):
                subscription.listen(event, callbacks.on_message, _unwrap_message)
        if callbacks.on_typing:
            subscription.listen_for_whisper(TYPING_WHISPER, callbacks.on_typing)
        if callbacks.on_read:
            subscription.listen(MESSAGE_READ_EVENT, callbacks.on_read)
        if callbacks.on_delivered:
            subscription.listen(MESSAGE_DELIVERED_EVENT, callbacks.on_delivered)
        return subscription

    def subscribe_user_channel(
        self, user_id: str, callbacks: UserChannelCallbacks
    ) -> ChannelSubscription | None:
        """Subscribe to a user's personal notification channel."""
        subscription = self._open(user_channel(user_id))
        if subscription is None:
            return None

        if callbacks.on_notification:
            subscription.listen(NOTIFICATION_EVENT, callbacks.on_notification)
        if callbacks.on_online_status_change:
            subscription.listen(ONLINE_STATUS_EVENT, callbacks.on_online_status_change)
        return subscription

    def subscribe_presence(
        self, callbacks: PresenceCallbacks, channel: str = ONLINE_USERS_CHANNEL
    ) -> ChannelSubscription | None:
        """Join a presence channel, the online users channel by default.

        ``on_here`` receives the current member list once joined; ``on_joining``
        and ``on_leaving`` receive the member that changed.
        """
        subscription = self._open(channel, self.manager.transport.join)
        if subscription is None:
            return None

        presence = cast(PresenceChannel, subscription.channel)
        if callbacks.on_here:
            subscription.on(presence.here, callbacks.on_here)
        if callbacks.on_joining:
            subscription.on(presence.joining, callbacks.on_joining)
        if callbacks.on_leaving:
            subscription.on(presence.leaving, callbacks.on_leaving)
        return subscription

    async def _close(self, name: str) -> None:
        subscription = self._subscriptions.pop(name, None)
        if subscription is not None:
            subscription.deactivate()
            self.manager.untrack(subscription)
        if self.manager.started:
            await self.manager.transport.leave(name)

    async def unsubscribe(self, conversation_id: str) -> None:
        """Release a conversation's listeners, leaving the shared connection up.

        Safe at any time, including while a reconnect is in flight.
        """
        await self._close(conversation_channel(conversation_id))

    async def unsubscribe_user_channel(self, user_id: str) -> None:
        await self._close(user_channel(user_id))

    async def unsubscribe_presence(self, channel: str = ONLINE_USERS_CHANNEL) -> None:
        await self._close(channel)

    async def send_typing_indicator(
        self, conversation_id: str, is_typing: bool, user_id: str | None = None
    ) -> bool:
        """Whisper a best-effort typing signal; False means "not connected"."""
        payload = TypingWhisper(is_typing=is_typing, user_id=user_id).model_dump(
            by_alias=True, exclude_none=True
        )
        return await self.manager.send_event(
            conversation_channel(conversation_id), TYPING_WHISPER, payload
        )
