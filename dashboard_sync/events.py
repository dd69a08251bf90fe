"""
Event subscription registry for the dashboard sync client.

Routes :class:`WebSocketEvent` objects to callbacks registered per event
type, or to wildcard callbacks registered under ``"*"``.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable

from dashboard_sync.types import WILDCARD, WebSocketEvent

logger = logging.getLogger(__name__)

# Type alias for event handlers
EventHandler = Callable[[WebSocketEvent], Awaitable[None] | None]


class EventBus:
    """Publish-subscribe registry keyed by event type.

    Dispatch is synchronous: :meth:`publish` calls every exact-type handler,
    then every wildcard handler, in the order they subscribed. Handlers that
    return an awaitable have it scheduled as a task on the running loop.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._pending: set[asyncio.Future[Any]] = set()

    def subscribe(self, event_type: str, handler: EventHandler) -> Callable[[], None]:
        """Register a handler for an event type (or ``"*"``).

        Returns a callable that removes exactly this registration.
        """
        self._handlers[str(event_type)].append(handler)

        def _unsubscribe() -> None:
            self.unsubscribe(event_type, handler)

        return _unsubscribe

    def subscribe_all(self, handler: EventHandler) -> Callable[[], None]:
        """Register a handler for all event types."""
        return self.subscribe(WILDCARD, handler)

    def unsubscribe(self, event_type: str, handler: EventHandler | None = None) -> None:
        """Remove a handler (or all handlers) for an event type."""
        key = str(event_type)
        if handler is None:
            self._handlers.pop(key, None)
            return
        handlers = [h for h in self._handlers.get(key, []) if h is not handler]
        if handlers:
            self._handlers[key] = handlers
        else:
            self._handlers.pop(key, None)

    def clear(self) -> None:
        self._handlers.clear()

    def handler_count(self, event_type: str | None = None) -> int:
        if event_type is None:
            return sum(len(h) for h in self._handlers.values())
        return len(self._handlers.get(str(event_type), []))

    def publish(self, event: WebSocketEvent) -> None:
        """Dispatch an event to all matching handlers."""
        handlers = list(self._handlers.get(event.event_type, []))
        if event.event_type != WILDCARD:
            handlers.extend(self._handlers.get(WILDCARD, []))

        for handler in handlers:
            try:
                result = handler(event)
                if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
                    self._schedule(result, event)
            except Exception:
                logger.exception("Error in event handler for %s", event.event_type)

    def _schedule(self, awaitable: Awaitable[None], event: WebSocketEvent) -> None:
        future = asyncio.ensure_future(awaitable)
        self._pending.add(future)

        def _done(fut: asyncio.Future[Any]) -> None:
            self._pending.discard(fut)
            if not fut.cancelled() and fut.exception() is not None:
                logger.error(
                    "Error in async event handler for %s",
                    event.event_type,
                    exc_info=fut.exception(),
                )

        future.add_done_callback(_done)

    async def drain(self) -> None:
        """Wait for handler tasks scheduled by :meth:`publish`."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
