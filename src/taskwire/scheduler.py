"""Timer scheduling seam.

Reconnect backoff, heartbeats, completion expiry and handler deferral all go
through a :class:`Scheduler` so that tests can drive them with a virtual clock.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from collections.abc import Callable
from typing import Protocol, TypeAlias

Callback: TypeAlias = Callable[[], None]


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Minimal schedule/cancel contract."""

    def now(self) -> float: ...

    def call_soon(self, callback: Callback) -> TimerHandle: ...

    def call_later(self, delay: float, callback: Callback) -> TimerHandle: ...


class LoopScheduler:
    """Scheduler backed by the running asyncio event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return self.loop.time()

    def call_soon(self, callback: Callback) -> TimerHandle:
        return self.loop.call_soon(callback)

    def call_later(self, delay: float, callback: Callback) -> TimerHandle:
        return self.loop.call_later(delay, callback)


class _ManualHandle:
    __slots__ = ("callback", "cancelled", "when")

    def __init__(self, when: float, callback: Callback) -> None:
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Virtual-clock scheduler; callbacks only run when time is advanced."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._counter = itertools.count()
        self._queue: list[tuple[float, int, _ManualHandle]] = []

    def now(self) -> float:
        return self._now

    def call_soon(self, callback: Callback) -> TimerHandle:
        return self.call_later(0.0, callback)

    def call_later(self, delay: float, callback: Callback) -> TimerHandle:
        handle = _ManualHandle(self._now + max(delay, 0.0), callback)
        heapq.heappush(self._queue, (handle.when, next(self._counter), handle))
        return handle

    @property
    def pending(self) -> int:
        return sum(1 for _, _, handle in self._queue if not handle.cancelled)

    def advance(self, seconds: float) -> int:
        """Move the clock forward, running due callbacks in order. Returns how many ran."""
        target = self._now + seconds
        ran = 0
        while self._queue and self._queue[0][0] <= target:
            when, _, handle = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._now = when
            handle.callback()
            ran += 1
        self._now = target
        return ran

    def run_pending(self) -> int:
        return self.advance(0.0)
