"""Persisted conversation cache kept in step with socket events."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from blinker import Signal
from loguru import logger

from taskwire.api import ConversationFetcher
from taskwire.errors import FetchError
from taskwire.events import SUBPROCESS_EVENT_PREFIX, ConversationMessage, Envelope, EventType, UnifiedMessage
from taskwire.grouping import Turn, group_turns
from taskwire.merge import merge_conversation
from taskwire.streaming import StreamingAccumulator

_REFETCH_EVENTS = frozenset({
    EventType.ITERATION_REMINDER_ADDED.value,
    EventType.USER_MESSAGE_ADDED.value,
    EventType.HELP_PROVIDED.value,
})


class ConversationStore:
    """Cache of persisted conversations plus the derived unified view.

    :meth:`invalidate` is the hook the accumulator calls on completion: it
    schedules a refetch so the finalized record arrives through the persisted
    path. A failed fetch keeps the previous snapshot.
    """

    def __init__(self, fetcher: ConversationFetcher, accumulator: StreamingAccumulator) -> None:
        self._fetcher = fetcher
        self._accumulator = accumulator
        self._persisted: dict[str, list[ConversationMessage]] = {}
        self._dirty: set[str] = set()
        self._inflight: dict[str, asyncio.Task[list[ConversationMessage]]] = {}
        self._changed = Signal("taskwire.conversation.changed")
        self._unsub_accumulator = accumulator.on_update(self._notify)

    def on_change(self, handler: Callable[[str], None]) -> Callable[[], None]:
        def _receiver(sender: Any, *, task_id: str) -> None:
            handler(task_id)

        self._changed.connect(_receiver, weak=False)
        return lambda: self._changed.disconnect(_receiver)

    def is_loaded(self, task_id: str) -> bool:
        return task_id in self._persisted

    def persisted(self, task_id: str) -> list[ConversationMessage]:
        return list(self._persisted.get(task_id, ()))

    def unified(self, task_id: str) -> list[UnifiedMessage]:
        return merge_conversation(
            self.persisted(task_id),
            self._accumulator.live_entries(task_id),
            self._accumulator.settled_entries(task_id),
        )

    def turns(self, task_id: str) -> list[Turn]:
        return group_turns(self.unified(task_id))

    async def refresh(self, task_id: str) -> list[ConversationMessage]:
        """Fetch the task's conversation now, joining a fetch already in flight."""
        self._dirty.add(task_id)
        task = self._inflight.get(task_id)
        if task is None:
            task = self._start_load(task_id)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # A drop() cancels the load itself; only our own cancellation propagates.
            current = asyncio.current_task()
            if not task.cancelled() or (current is not None and current.cancelling()):
                raise
            return self.persisted(task_id)

    def invalidate(self, task_id: str) -> None:
        """Mark a task's conversation stale and schedule a refetch."""
        self._dirty.add(task_id)
        if task_id not in self._inflight:
            self._start_load(task_id)

    def drop(self, task_id: str) -> None:
        self._dirty.discard(task_id)
        inflight = self._inflight.pop(task_id, None)
        if inflight is not None:
            inflight.cancel()
        self._persisted.pop(task_id, None)
        self._accumulator.clear(task_id)
        self._notify(task_id)

    def handle_event(self, event: Envelope) -> None:
        """Subscription handler for non-streaming conversation events."""
        event_type = event.event_type
        task_id = event.task_id
        if event_type == EventType.MESSAGE_ADDED.value and task_id is not None:
            self._append(task_id, event)
        elif event_type == EventType.TASK_DELETED.value and task_id is not None:
            self.drop(task_id)
        elif event_type == EventType.TASK_BULK_DELETED.value:
            for deleted in event.get("deleted_task_ids") or ():
                self.drop(str(deleted))
        elif (event_type in _REFETCH_EVENTS or event_type.startswith(SUBPROCESS_EVENT_PREFIX)) and task_id is not None:
            if self.is_loaded(task_id):
                self.invalidate(task_id)

    async def aclose(self) -> None:
        self._unsub_accumulator()
        tasks = list(self._inflight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()

    def _start_load(self, task_id: str) -> asyncio.Task[list[ConversationMessage]]:
        task = asyncio.get_running_loop().create_task(self._load(task_id), name=f"taskwire.fetch:{task_id}")
        self._inflight[task_id] = task
        return task

    async def _load(self, task_id: str) -> list[ConversationMessage]:
        try:
            # Loop so an invalidation that lands mid-fetch triggers one more fetch.
            while task_id in self._dirty:
                self._dirty.discard(task_id)
                try:
                    messages = await self._fetcher.fetch_persisted_conversation(task_id)
                except FetchError as exc:
                    logger.warning("conversation.fetch.failed task_id={} error={}", task_id, exc)
                    break
                self._persisted[task_id] = list(messages)
                self._accumulator.release_settled(task_id, {message.id for message in messages})
                logger.debug("conversation.loaded task_id={} count={}", task_id, len(messages))
                self._notify(task_id)
        finally:
            if self._inflight.get(task_id) is asyncio.current_task():
                del self._inflight[task_id]
        return self.persisted(task_id)

    def _append(self, task_id: str, event: Envelope) -> None:
        cached = self._persisted.get(task_id)
        if cached is None:
            return
        message_id = event.get("message_id")
        if message_id is not None and any(message.id == message_id for message in cached):
            return
        message = ConversationMessage(
            id=message_id,
            role=str(event.get("role") or ""),
            content=event.get("content") or "",
            reasoning=event.get("reasoning"),
            name=event.get("name"),
            tool_call_id=event.get("tool_call_id"),
            tool_calls=(event.get("tool_calls") or []) if event.get("has_tool_calls") else None,
            created_at=event.timestamp,
            message_index=event.get("message_index"),
        )
        self._persisted[task_id] = [*cached, message]
        self._notify(task_id)

    def _notify(self, task_id: str) -> None:
        try:
            self._changed.send(self, task_id=task_id)
        except Exception:
            logger.exception("conversation.change_handler.error task_id={}", task_id)
