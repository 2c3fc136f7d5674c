from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

import pytest

from taskwire.config import Settings
from taskwire.errors import FetchError, TransportError
from taskwire.events import ConversationMessage
from taskwire.scheduler import ManualScheduler

_CLOSE = object()


class FakeSocket:
    def __init__(self) -> None:
        self.sent: list[str] = []
        self.closed = False
        self._incoming: asyncio.Queue[Any] = asyncio.Queue()

    async def send(self, data: str) -> None:
        if self.closed:
            raise TransportError("socket closed")
        self.sent.append(data)

    async def __aiter__(self) -> AsyncIterator[str | bytes]:
        while True:
            item = await self._incoming.get()
            if item is _CLOSE:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(_CLOSE)

    def push(self, raw: str) -> None:
        self._incoming.put_nowait(raw)

    def push_event(self, **event: Any) -> None:
        self.push(json.dumps({"event": event}))

    def drop(self) -> None:
        """Simulate the server closing the connection."""
        self._incoming.put_nowait(_CLOSE)

    def fail(self, exc: Exception) -> None:
        self._incoming.put_nowait(exc)

    @property
    def pings(self) -> int:
        return sum(1 for frame in self.sent if json.loads(frame) == {"type": "ping"})


class FakeTransport:
    def __init__(self) -> None:
        self.sockets: list[FakeSocket] = []
        self.opened_urls: list[str] = []
        self.fail_next = 0

    async def open(self, url: str) -> FakeSocket:
        self.opened_urls.append(url)
        if self.fail_next > 0:
            self.fail_next -= 1
            raise TransportError("connection refused")
        socket = FakeSocket()
        self.sockets.append(socket)
        return socket

    @property
    def last(self) -> FakeSocket:
        return self.sockets[-1]


class FakeFetcher:
    def __init__(self, conversations: dict[str, list[dict[str, Any]]] | None = None) -> None:
        self.conversations = conversations or {}
        self.calls: list[str] = []
        self.fail = False

    async def fetch_persisted_conversation(self, task_id: str) -> list[ConversationMessage]:
        self.calls.append(task_id)
        if self.fail:
            raise FetchError(task_id, "service unavailable")
        return [ConversationMessage.model_validate(item) for item in self.conversations.get(task_id, [])]


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def settings(monkeypatch: pytest.MonkeyPatch) -> Settings:
    for key in ("TASKWIRE_API_BASE_URL", "TASKWIRE_WS_URL", "TASKWIRE_CLIENT_ID"):
        monkeypatch.delenv(key, raising=False)
    return Settings(api_base_url="http://tasks.local:8080", _env_file=None)
