"""Async pub/sub EventBus between the conversation service and the UI."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable

from deecli.types import ChatEvent, EventType

_logger = logging.getLogger(__name__)

# Subscription key that receives every event
WILDCARD = "*"

# Handlers may be plain functions or coroutines taking a ChatEvent
Handler = Callable[[ChatEvent], Any]


class EventBus:
    """Lightweight async pub/sub event bus.

    - Subscribe to one ``EventType`` (or its string value) or to ``"*"``.
    - Sync and async handlers are both accepted.
    - ``publish()`` fans an event out to matching handlers concurrently; a
      handler that raises is logged and does not affect the others.
    - The last ``max_history`` events are kept for inspection.
    """

    def __init__(self, max_history: int = 200) -> None:
        self._handlers: dict[str, list[Handler]] = {}
        self._history: list[ChatEvent] = []
        self._max_history = max_history

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def subscribe(self, event_type: EventType | str, handler: Handler) -> None:
        """Register *handler* for *event_type* (or ``"*"`` for all)."""
        self._handlers.setdefault(self._key(event_type), []).append(handler)

    def unsubscribe(self, event_type: EventType | str, handler: Handler) -> None:
        handlers = self._handlers.get(self._key(event_type), [])
        if handler in handlers:
            handlers.remove(handler)

    async def publish(self, event: ChatEvent) -> None:
        self._history.append(event)
        if len(self._history) > self._max_history:
            del self._history[:-self._max_history]

        handlers = list(self._handlers.get(self._key(event.type), []))
        handlers.extend(self._handlers.get(WILDCARD, []))
        if not handlers:
            return
        await asyncio.gather(
            *(self._call_handler(h, event) for h in handlers),
        )

    async def emit(self, event_type: EventType, **data: Any) -> ChatEvent:
        """Build a ``ChatEvent`` from keyword data and publish it."""
        event = ChatEvent(type=event_type, data=data)
        await self.publish(event)
        return event

    @property
    def history(self) -> list[ChatEvent]:
        """Return a copy of the event history."""
        return list(self._history)

    def clear(self) -> None:
        """Remove all handlers and history."""
        self._handlers.clear()
        self._history.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _key(event_type: EventType | str) -> str:
        if isinstance(event_type, EventType):
            return event_type.value
        return str(event_type)

    @staticmethod
    async def _call_handler(handler: Handler, event: ChatEvent) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            _logger.exception(
                "EventBus handler %s raised for event %s",
                getattr(handler, "__name__", handler),
                event.type.value,
            )
