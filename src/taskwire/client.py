"""The owned real-time sync client: one socket, many subscribers."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from enum import Enum
from typing import Self

from loguru import logger

from taskwire.api import ConversationFetcher, TaskApiClient
from taskwire.config import Settings, load_settings
from taskwire.connection import ConnectionManager, ConnectionState
from taskwire.conversation import ConversationStore
from taskwire.events import EventType, UnifiedMessage
from taskwire.grouping import Turn
from taskwire.registry import SubscriptionHandler, SubscriptionRegistry
from taskwire.scheduler import LoopScheduler, Scheduler
from taskwire.streaming import StreamingAccumulator
from taskwire.transport import Transport


class SyncClient:
    """Compose connection, registry, accumulator and conversation store.

    Create one instance at application start, ``await start()`` it and hand it
    to consumers; ``await stop()`` tears down every timer, task and
    subscription it created.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: Transport | None = None,
        fetcher: ConversationFetcher | None = None,
        scheduler: Scheduler | None = None,
    ) -> None:
        self.settings = settings or load_settings()
        self.scheduler = scheduler or LoopScheduler()
        self.connection = ConnectionManager.from_settings(self.settings, transport=transport, scheduler=self.scheduler)
        self.registry = SubscriptionRegistry(self.scheduler)
        self.accumulator = StreamingAccumulator(
            on_complete=self._on_stream_complete,
            scheduler=self.scheduler,
            completion_expiry=self.settings.completion_expiry_seconds,
        )
        self._owns_fetcher = fetcher is None
        self._fetcher = fetcher or TaskApiClient.from_settings(self.settings)
        self.store = ConversationStore(self._fetcher, self.accumulator)
        self._watched: dict[str, str] = {}
        self._teardown: list[Callable[[], None]] = []
        self._store_subscription: str | None = None
        self._started = False

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    async def start(self, *, connect: bool = True) -> None:
        if self._started:
            return
        self._teardown.append(self.connection.on_event(self.registry.dispatch))
        self._store_subscription = self.registry.subscribe(self.store.handle_event)
        self._started = True
        logger.info("client.start url={}", self.connection.url)
        if connect:
            self.connect()

    async def stop(self) -> None:
        if not self._started:
            return
        for task_id in list(self._watched):
            self.unwatch(task_id)
        if self._store_subscription is not None:
            self.registry.unsubscribe(self._store_subscription)
            self._store_subscription = None
        while self._teardown:
            self._teardown.pop()()
        await self.connection.aclose()
        await self.registry.drain()
        self.accumulator.clear()
        await self.store.aclose()
        if self._owns_fetcher and isinstance(self._fetcher, TaskApiClient):
            await self._fetcher.aclose()
        self._started = False
        logger.info("client.stopped")

    @property
    def connection_state(self) -> ConnectionState:
        return self.connection.state

    def connect(self) -> None:
        self.connection.connect()

    def disconnect(self) -> None:
        self.connection.disconnect()

    def subscribe(
        self,
        handler: SubscriptionHandler,
        *,
        event_types: Iterable[str | Enum] | None = None,
        task_ids: Iterable[str] | None = None,
    ) -> str:
        return self.registry.subscribe(handler, event_types=event_types, task_ids=task_ids)

    def unsubscribe(self, subscription_id: str) -> bool:
        return self.registry.unsubscribe(subscription_id)

    def on_change(self, handler: Callable[[str], None]) -> Callable[[], None]:
        """Call ``handler(task_id)`` whenever a task's unified view may have changed."""
        return self.store.on_change(handler)

    async def watch(self, task_id: str) -> list[UnifiedMessage]:
        """Follow streaming for a task and load its persisted conversation."""
        if task_id not in self._watched:
            self._watched[task_id] = self.registry.subscribe(
                self.accumulator.handle_event,
                event_types=[EventType.MESSAGE_STREAMING],
                task_ids=[task_id],
            )
            logger.info("client.watch task_id={}", task_id)
        await self.store.refresh(task_id)
        return self.get_unified_conversation(task_id)

    def unwatch(self, task_id: str) -> None:
        subscription_id = self._watched.pop(task_id, None)
        if subscription_id is None:
            return
        self.registry.unsubscribe(subscription_id)
        self.accumulator.clear(task_id)
        logger.info("client.unwatch task_id={}", task_id)

    def get_unified_conversation(self, task_id: str) -> list[UnifiedMessage]:
        return self.store.unified(task_id)

    def get_turns(self, task_id: str) -> list[Turn]:
        return self.store.turns(task_id)

    def _on_stream_complete(self, task_id: str) -> None:
        self.store.invalidate(task_id)
