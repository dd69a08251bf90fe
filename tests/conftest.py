"""
Shared test helpers: an in-memory stand-in for the WebSocket transport.

``FakeServer.connect`` is passed as ``connect_factory`` so no real socket
is opened. Messages pushed to a ``FakeSocket`` are yielded by its async
iterator; ``drop()`` ends the iteration like a server-side close.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

_CLOSE = object()


class FakeSocket:
    def __init__(self) -> None:
        self.queue: asyncio.Queue[Any] = asyncio.Queue()
        self.closed = False

    def push(self, message: Any) -> None:
        if not isinstance(message, (str, bytes)):
            message = json.dumps(message)
        self.queue.put_nowait(message)

    def drop(self, error: BaseException | None = None) -> None:
        """Close from the server side, optionally with a transport error."""
        self.queue.put_nowait(error if error is not None else _CLOSE)

    async def close(self) -> None:
        self.closed = True
        self.queue.put_nowait(_CLOSE)

    def __aiter__(self) -> FakeSocket:
        return self

    async def __anext__(self) -> Any:
        item = await self.queue.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


class FakeServer:
    def __init__(self, fail_times: int = 0, always_fail: bool = False) -> None:
        self.urls: list[str] = []
        self.sockets: list[FakeSocket] = []
        self.fail_times = fail_times
        self.always_fail = always_fail

    async def connect(self, url: str) -> FakeSocket:
        self.urls.append(url)
        if self.always_fail or self.fail_times > 0:
            self.fail_times -= 1
            raise OSError("connection refused")
        socket = FakeSocket()
        self.sockets.append(socket)
        return socket

    @property
    def socket(self) -> FakeSocket:
        return self.sockets[-1]


async def settle(rounds: int = 20) -> None:
    """Let scheduled tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def story_event(project_id: str = "project-1", **data: Any) -> dict[str, Any]:
    return {
        "eventType": "story.status.changed",
        "projectId": project_id,
        "data": data or {"storyId": "6-8", "oldStatus": "in-progress", "newStatus": "review"},
        "timestamp": "2025-01-01T00:00:00Z",
    }


@pytest.fixture
def server() -> FakeServer:
    return FakeServer()
