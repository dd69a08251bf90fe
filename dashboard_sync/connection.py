"""
WebSocket connection manager for the dashboard status-updates stream.

Owns a single socket, reconnects with exponential backoff, keeps an
in-memory log of received events and fans them out through an
:class:`~dashboard_sync.events.EventBus`.

Usage::

    async with ConnectionManager("ws://localhost:3002/ws/status-updates") as conn:
        unsubscribe = conn.subscribe("story.status.changed", on_story)
        ...
        unsubscribe()
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable
from urllib.parse import urlencode

import websockets
from pydantic import ValidationError

from dashboard_sync.auth import TokenStore
from dashboard_sync.events import EventBus, EventHandler
from dashboard_sync.types import ConnectionStatus, WebSocketEvent

logger = logging.getLogger(__name__)

StatusListener = Callable[[ConnectionStatus], None]
ConnectFactory = Callable[[str], Awaitable[Any]]

BASE_RECONNECT_DELAY_MS = 1000
MAX_RECONNECT_DELAY_MS = 16000

_sleep = asyncio.sleep


def reconnect_delay_ms(
    attempt: int,
    base_delay_ms: int = BASE_RECONNECT_DELAY_MS,
    max_delay_ms: int = MAX_RECONNECT_DELAY_MS,
) -> int:
    """Backoff before reconnect attempt ``attempt`` (0-based): 1s, 2s, 4s ... capped."""
    return min(base_delay_ms * (2 ** attempt), max_delay_ms)


class ConnectionManager:
    """Maintains one live WebSocket connection and dispatches its events.

    Transport failures never propagate to callers: they move the status to
    ``error``/``disconnected`` and, when ``reconnect`` is on, schedule a retry
    until ``max_reconnect_attempts`` is reached. After that the manager stays
    ``disconnected`` until :meth:`connect` is called again.
    """

    def __init__(
        self,
        url: str,
        *,
        enabled: bool = True,
        reconnect: bool = True,
        max_reconnect_attempts: int = 10,
        token_store: TokenStore | None = None,
        project_id: str | None = None,
        connect_factory: ConnectFactory | None = None,
        max_events: int | None = None,
        base_delay_ms: int = BASE_RECONNECT_DELAY_MS,
        max_delay_ms: int = MAX_RECONNECT_DELAY_MS,
    ) -> None:
        self.url = url
        self.enabled = enabled
        self.reconnect = reconnect
        self.max_reconnect_attempts = max_reconnect_attempts
        self.project_id = project_id
        self.max_events = max_events
        self._base_delay_ms = base_delay_ms
        self._max_delay_ms = max_delay_ms
        self._token_store = token_store
        self._connect_factory: ConnectFactory = connect_factory or websockets.connect

        self._bus = EventBus()
        self._events: list[WebSocketEvent] = []
        self._status = ConnectionStatus.DISCONNECTED
        self._status_listeners: list[StatusListener] = []

        self._ws: Any | None = None
        self._listen_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._reconnect_attempts = 0
        self._closing = False
        # bumped per connect()/disconnect(); a handshake from an older
        # attempt is closed instead of adopted
        self._attempt = 0

    # ---- State ----

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def is_connected(self) -> bool:
        return self._status is ConnectionStatus.CONNECTED

    @property
    def events(self) -> list[WebSocketEvent]:
        """Snapshot of the event log, oldest first."""
        return list(self._events)

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    @property
    def bus(self) -> EventBus:
        return self._bus

    def on_status_change(self, listener: StatusListener) -> Callable[[], None]:
        """Call ``listener`` on every status transition. Returns a remover."""
        self._status_listeners.append(listener)

        def _remove() -> None:
            if listener in self._status_listeners:
                self._status_listeners.remove(listener)

        return _remove

    def _set_status(self, status: ConnectionStatus) -> None:
        if status is self._status:
            return
        self._status = status
        for listener in list(self._status_listeners):
            try:
                listener(status)
            except Exception:
                logger.exception("Error in connection status listener")

    # ---- Subscriptions ----

    def subscribe(self, event_type: str, callback: EventHandler) -> Callable[[], None]:
        """Register ``callback`` for ``event_type`` (or ``"*"``). Returns an unsubscriber."""
        return self._bus.subscribe(event_type, callback)

    def unsubscribe(self, event_type: str) -> None:
        """Drop every callback registered for ``event_type``."""
        self._bus.unsubscribe(event_type)

    def clear_events(self) -> None:
        self._events.clear()

    # ---- Lifecycle ----

    def build_url(self) -> str:
        """Connection URL with ``projectId`` and ``token`` query parameters."""
        params: dict[str, str] = {}
        if self.project_id:
            params["projectId"] = self.project_id
        token = self._token_store.get_token() if self._token_store else None
        if token:
            params["token"] = token
        if not params:
            return self.url
        separator = "&" if "?" in self.url else "?"
        return f"{self.url}{separator}{urlencode(params)}"

    async def connect(self) -> None:
        """Open the connection. No-op when disabled, open or already opening."""
        if not self.enabled or self._ws is not None:
            return
        if self._status is ConnectionStatus.CONNECTING:
            return

        # a manual connect supersedes a scheduled retry
        reconnect_task = self._reconnect_task
        if reconnect_task is not None and reconnect_task is not asyncio.current_task():
            reconnect_task.cancel()
            self._reconnect_task = None

        self._closing = False
        self._attempt += 1
        attempt = self._attempt
        self._set_status(ConnectionStatus.CONNECTING)

        try:
            ws = await self._connect_factory(self.build_url())
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("WebSocket connection to %s failed: %s", self.url, exc)
            if attempt != self._attempt:
                return
            self._set_status(ConnectionStatus.ERROR)
            self._handle_close()
            return

        if attempt != self._attempt:
            # disconnect() or a newer connect() ran during the handshake
            await self._close_socket(ws)
            return

        self._ws = ws
        self._reconnect_attempts = 0
        self._set_status(ConnectionStatus.CONNECTED)
        logger.info("WebSocket connected to %s", self.url)
        self._listen_task = asyncio.create_task(self._listen_loop(ws))

    async def disconnect(self) -> None:
        """Close the connection and cancel any pending reconnect."""
        self._closing = True
        self._attempt += 1
        current = asyncio.current_task()

        reconnect_task, self._reconnect_task = self._reconnect_task, None
        if reconnect_task is not None and reconnect_task is not current:
            reconnect_task.cancel()

        listen_task, self._listen_task = self._listen_task, None
        if listen_task is not None and listen_task is not current and not listen_task.done():
            listen_task.cancel()
            try:
                await listen_task
            except asyncio.CancelledError:
                pass

        ws, self._ws = self._ws, None
        if ws is not None:
            await self._close_socket(ws)

        self._set_status(ConnectionStatus.DISCONNECTED)

    async def __aenter__(self) -> ConnectionManager:
        if self.enabled:
            await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.disconnect()

    # ---- Internal ----

    async def _close_socket(self, ws: Any) -> None:
        try:
            await ws.close()
        except Exception:
            logger.debug("Error while closing WebSocket", exc_info=True)

    async def _listen_loop(self, ws: Any) -> None:
        """Read messages until the socket closes, then run close handling."""
        try:
            async for raw in ws:
                self._handle_message(raw)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("WebSocket error: %s", exc)
            self._set_status(ConnectionStatus.ERROR)

        if self._ws is ws:
            self._ws = None
            self._listen_task = None
        if not self._closing:
            self._handle_close()

    def _handle_message(self, raw: str | bytes) -> None:
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError) as exc:
            logger.warning("Failed to parse WebSocket message: %s", exc)
            return
        try:
            event = WebSocketEvent.model_validate(payload)
        except ValidationError:
            logger.warning("Dropping WebSocket message that is not an event")
            return

        logger.debug("Event received: %s (project %s)", event.event_type, event.project_id)
        self._events.append(event)
        if self.max_events is not None and len(self._events) > self.max_events:
            del self._events[: len(self._events) - self.max_events]
        self._bus.publish(event)

    def _handle_close(self) -> None:
        self._set_status(ConnectionStatus.DISCONNECTED)
        logger.info("WebSocket disconnected from %s", self.url)

        if not self.reconnect or self._reconnect_attempts >= self.max_reconnect_attempts:
            if self.reconnect:
                logger.warning(
                    "Giving up on %s after %d reconnect attempts",
                    self.url,
                    self._reconnect_attempts,
                )
            return

        delay = reconnect_delay_ms(
            self._reconnect_attempts, self._base_delay_ms, self._max_delay_ms
        )
        logger.info(
            "Reconnecting in %dms (attempt %d/%d)",
            delay,
            self._reconnect_attempts + 1,
            self.max_reconnect_attempts,
        )
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay_ms: int) -> None:
        await _sleep(delay_ms / 1000)
        self._reconnect_attempts += 1
        await self.connect()


class ConnectionRegistry:
    """Process-wide shared connections with reference counting.

    The first :meth:`acquire` for a URL creates and connects the manager;
    the last :meth:`release` disconnects and forgets it.
    """

    def __init__(self) -> None:
        self._managers: dict[tuple[str, str | None], ConnectionManager] = {}
        self._refs: dict[tuple[str, str | None], int] = {}

    def __len__(self) -> int:
        return len(self._managers)

    def ref_count(self, manager: ConnectionManager) -> int:
        return self._refs.get((manager.url, manager.project_id), 0)

    async def acquire(
        self,
        url: str,
        *,
        project_id: str | None = None,
        **options: Any,
    ) -> ConnectionManager:
        """Return the shared manager for ``url``, creating it on first use.

        ``options`` are passed to :class:`ConnectionManager` and only take
        effect for the acquirer that creates it.
        """
        key = (url, project_id)
        manager = self._managers.get(key)
        if manager is None:
            manager = ConnectionManager(url, project_id=project_id, **options)
            self._managers[key] = manager
            self._refs[key] = 0
        self._refs[key] += 1
        if self._refs[key] == 1:
            await manager.connect()
        return manager

    async def release(self, manager: ConnectionManager) -> None:
        key = (manager.url, manager.project_id)
        if self._managers.get(key) is not manager:
            return
        self._refs[key] -= 1
        if self._refs[key] <= 0:
            del self._managers[key]
            del self._refs[key]
            await manager.disconnect()

    async def close_all(self) -> None:
        managers = list(self._managers.values())
        self._managers.clear()
        self._refs.clear()
        for manager in managers:
            await manager.disconnect()


connections = ConnectionRegistry()
