"""Small synchronous event dispatcher returning unbind handles."""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from contextlib import suppress
from typing import Any

EventCallback = Callable[[Any], None]
Unbind = Callable[[], None]

logger = logging.getLogger(__name__)


class EventListeners:
    """Registry of callbacks keyed by event name."""

    def __init__(self) -> None:
        self._callbacks: dict[str, list[EventCallback]] = defaultdict(list)

    def bind(self, event: str, callback: EventCallback) -> Unbind:
        """Register ``callback`` for ``event`` and return a handle removing it."""
        self._callbacks[event].append(callback)

        def unbind() -> None:
            with suppress(ValueError):
                self._callbacks[event].remove(callback)

        return unbind

    def emit(self, event: str, payload: Any = None) -> None:
        """Invoke every callback bound to ``event`` in registration order.

        A failing callback is logged and does not prevent the others from running.
        """
        for callback in list(self._callbacks.get(event, ())):
            try:
                callback(payload)
            except Exception:
                logger.exception("Listener for %r raised", event)

    def clear(self) -> None:
        self._callbacks.clear()
