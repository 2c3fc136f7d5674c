"""Subscription registry: per-event fan-out to filtered listeners."""

from __future__ import annotations

import asyncio
import inspect
import itertools
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, TypeAlias

from loguru import logger

from taskwire.events import Envelope, normalize_event_type
from taskwire.scheduler import LoopScheduler, Scheduler

SubscriptionHandler: TypeAlias = Callable[[Envelope], Any]


def _event_type_filter(values: Iterable[str | Enum] | None) -> frozenset[str] | None:
    if values is None:
        return None
    return frozenset(normalize_event_type(value) for value in values) or None


def _task_filter(values: Iterable[str] | None) -> frozenset[str] | None:
    if values is None:
        return None
    return frozenset(map(str, values)) or None


@dataclass(frozen=True)
class Subscription:
    """One listener registration with optional allow-list filters."""

    id: str
    handler: SubscriptionHandler
    event_types: frozenset[str] | None = None
    task_ids: frozenset[str] | None = None

    def matches(self, event: Envelope) -> bool:
        if self.event_types is not None and event.event_type not in self.event_types:
            return False
        return not (self.task_ids is not None and event.task_id is not None and event.task_id not in self.task_ids)


class SubscriptionRegistry:
    """In-memory table of subscriptions.

    Handlers never run inside :meth:`dispatch`; each delivery is deferred to the
    next scheduler tick so that socket callbacks never trigger consumer side
    effects synchronously. Deliveries keep arrival order.
    """

    def __init__(self, scheduler: Scheduler | None = None) -> None:
        self._scheduler = scheduler or LoopScheduler()
        self._subscriptions: dict[str, Subscription] = {}
        self._ids = itertools.count(1)
        self._tasks: set[asyncio.Future[Any]] = set()

    def __len__(self) -> int:
        return len(self._subscriptions)

    def __contains__(self, subscription_id: object) -> bool:
        return subscription_id in self._subscriptions

    def subscribe(
        self,
        handler: SubscriptionHandler,
        *,
        event_types: Iterable[str | Enum] | None = None,
        task_ids: Iterable[str] | None = None,
    ) -> str:
        subscription_id = f"sub_{next(self._ids)}"
        self._subscriptions[subscription_id] = Subscription(
            id=subscription_id,
            handler=handler,
            event_types=_event_type_filter(event_types),
            task_ids=_task_filter(task_ids),
        )
        logger.debug("registry.subscribe id={} total={}", subscription_id, len(self._subscriptions))
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        removed = self._subscriptions.pop(subscription_id, None) is not None
        if removed:
            logger.debug("registry.unsubscribe id={} total={}", subscription_id, len(self._subscriptions))
        return removed

    def clear(self) -> None:
        self._subscriptions.clear()

    def dispatch(self, event: Envelope) -> int:
        """Schedule delivery of ``event`` to every matching subscription.

        Returns the number of deliveries scheduled.
        """
        scheduled = 0
        for subscription in list(self._subscriptions.values()):
            if not subscription.matches(event):
                continue
            self._scheduler.call_soon(partial(self._deliver, subscription, event))
            scheduled += 1
        return scheduled

    async def drain(self) -> None:
        """Wait for asynchronous handlers started by earlier deliveries."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def _deliver(self, subscription: Subscription, event: Envelope) -> None:
        # Skip listeners removed between dispatch and delivery.
        if self._subscriptions.get(subscription.id) is not subscription:
            return
        try:
            result = subscription.handler(event)
        except Exception:
            logger.exception("registry.handler.error id={} event_type={}", subscription.id, event.event_type)
            return
        if inspect.isawaitable(result):
            future = asyncio.ensure_future(result)
            self._tasks.add(future)
            future.add_done_callback(partial(self._finish, subscription.id))

    def _finish(self, subscription_id: str, future: asyncio.Future[Any]) -> None:
        self._tasks.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.opt(exception=exc).error("registry.handler.error id={}", subscription_id)
