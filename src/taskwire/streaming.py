"""Streaming accumulator for in-progress messages.

Each message id moves through ``absent -> streaming -> complete -> absent``.
Fragments carry cumulative state, so every update simply takes the fragment's
current values. A completed entry leaves the live map at once and the owning
task's persisted conversation is invalidated; the final accumulated value is
kept as a *settled* entry until that refetch lands.
"""

from __future__ import annotations

from collections.abc import Callable, Collection, Mapping
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from functools import partial
from types import MappingProxyType
from typing import Any, TypeAlias

from blinker import Signal
from loguru import logger
from pydantic import ValidationError

from taskwire.events import Envelope, MessageId, StreamingFragment, UnifiedMessage
from taskwire.scheduler import LoopScheduler, Scheduler, TimerHandle

COMPLETION_EXPIRY_SECONDS = 1.0

CompletionHook: TypeAlias = Callable[[str], None]


@dataclass(frozen=True)
class StreamingEntry:
    """Accumulated state of one message while it streams."""

    id: MessageId
    task_id: str
    role: str
    content: str
    reasoning: str | None
    tool_calls: list[dict[str, Any]] | None
    stream_index: int
    is_complete: bool
    tool_call_id: str | None = None
    name: str | None = None
    created_at: str | None = None
    message_index: int | None = None

    def to_message(self, *, is_streaming: bool = True) -> UnifiedMessage:
        return UnifiedMessage(
            id=self.id,
            role=self.role,
            content=self.content,
            reasoning=self.reasoning,
            tool_calls=self.tool_calls,
            tool_call_id=self.tool_call_id,
            name=self.name,
            created_at=self.created_at,
            message_index=self.message_index,
            is_streaming=is_streaming,
            stream_index=self.stream_index,
        )


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class StreamingAccumulator:
    """Per-message-id partial state built from fragment events.

    The live map is replaced on every write, never mutated, so a caller that
    holds an earlier :attr:`entries` snapshot keeps a consistent view.
    """

    def __init__(
        self,
        *,
        on_complete: CompletionHook | None = None,
        scheduler: Scheduler | None = None,
        completion_expiry: float = COMPLETION_EXPIRY_SECONDS,
    ) -> None:
        self._on_complete = on_complete
        self._scheduler = scheduler or LoopScheduler()
        self._completion_expiry = completion_expiry
        self._entries: Mapping[MessageId, StreamingEntry] = MappingProxyType({})
        self._settled: Mapping[MessageId, StreamingEntry] = MappingProxyType({})
        self._completed: dict[MessageId, tuple[str, TimerHandle]] = {}
        self._updated = Signal("taskwire.streaming.updated")

    @property
    def entries(self) -> Mapping[MessageId, StreamingEntry]:
        return self._entries

    def on_update(self, handler: Callable[[str], None]) -> Callable[[], None]:
        def _receiver(sender: Any, *, task_id: str) -> None:
            handler(task_id)

        self._updated.connect(_receiver, weak=False)
        return lambda: self._updated.disconnect(_receiver)

    def handle_event(self, event: Envelope) -> None:
        """Subscription handler for ``message_streaming`` events."""
        try:
            fragment = StreamingFragment.from_envelope(event)
        except ValidationError as exc:
            logger.warning("streaming.fragment.invalid task_id={} errors={}", event.task_id, exc.error_count())
            return
        self.feed(fragment)

    def feed(self, fragment: StreamingFragment) -> StreamingEntry | None:
        """Apply one fragment; returns the resulting entry, or None when ignored."""
        message_id = fragment.message_id
        if message_id in self._completed:
            logger.debug("streaming.fragment.ignored message_id={} reason=completed", message_id)
            return None

        existing = self._entries.get(message_id)
        if existing is not None and fragment.stream_index < existing.stream_index:
            logger.debug(
                "streaming.fragment.stale message_id={} index={} current={}",
                message_id,
                fragment.stream_index,
                existing.stream_index,
            )
            return existing

        entry = self._apply(existing, fragment)
        if entry.is_complete:
            self._complete(entry)
        else:
            self._entries = MappingProxyType({**self._entries, message_id: entry})
            self._notify(entry.task_id)
        return entry

    def is_streaming(self, message_id: MessageId) -> bool:
        return message_id in self._entries

    def is_completed(self, message_id: MessageId) -> bool:
        return message_id in self._completed

    def live_entries(self, task_id: str | None = None) -> list[StreamingEntry]:
        return [entry for entry in self._entries.values() if task_id is None or entry.task_id == task_id]

    def settled_entries(self, task_id: str | None = None) -> list[StreamingEntry]:
        return [entry for entry in self._settled.values() if task_id is None or entry.task_id == task_id]

    def release_settled(self, task_id: str, message_ids: Collection[MessageId] | None = None) -> None:
        """Forget settled values for a task once its persisted source carries them.

        With ``message_ids``, only those ids are released; a fetch that started
        before a completion leaves that completion's settled value in place.
        """

        def release(entry: StreamingEntry) -> bool:
            return entry.task_id == task_id and (message_ids is None or entry.id in message_ids)

        if not any(release(entry) for entry in self._settled.values()):
            return
        self._settled = MappingProxyType({key: entry for key, entry in self._settled.items() if not release(entry)})

    def clear(self, task_id: str | None = None) -> None:
        """Drop live, settled and completed state for one task, or for all tasks."""

        def keep(owner: str) -> bool:
            return task_id is not None and owner != task_id

        self._entries = MappingProxyType({k: e for k, e in self._entries.items() if keep(e.task_id)})
        self._settled = MappingProxyType({k: e for k, e in self._settled.items() if keep(e.task_id)})
        for message_id, (owner, handle) in list(self._completed.items()):
            if not keep(owner):
                handle.cancel()
                del self._completed[message_id]

    def _apply(self, existing: StreamingEntry | None, fragment: StreamingFragment) -> StreamingEntry:
        if existing is None:
            return StreamingEntry(
                id=fragment.message_id,
                task_id=fragment.task_id,
                role=fragment.role,
                content=fragment.content or "",
                reasoning=fragment.reasoning,
                tool_calls=fragment.tool_calls,
                tool_call_id=fragment.tool_call_id,
                name=fragment.name,
                stream_index=fragment.stream_index,
                is_complete=fragment.is_complete,
                created_at=fragment.timestamp or _now_iso(),
                message_index=fragment.message_index,
            )
        return replace(
            existing,
            content=fragment.content or "",
            reasoning=fragment.reasoning,
            tool_calls=fragment.tool_calls,
            tool_call_id=fragment.tool_call_id,
            name=fragment.name,
            stream_index=fragment.stream_index,
            is_complete=fragment.is_complete,
            message_index=fragment.message_index if fragment.message_index is not None else existing.message_index,
        )

    def _complete(self, entry: StreamingEntry) -> None:
        self._entries = MappingProxyType({k: e for k, e in self._entries.items() if k != entry.id})
        self._settled = MappingProxyType({**self._settled, entry.id: entry})
        handle = self._scheduler.call_later(self._completion_expiry, partial(self._expire, entry.id))
        self._completed[entry.id] = (entry.task_id, handle)
        logger.info("streaming.complete task_id={} message_id={}", entry.task_id, entry.id)
        self._notify(entry.task_id)
        if self._on_complete is None:
            return
        try:
            self._on_complete(entry.task_id)
        except Exception:
            logger.exception("streaming.on_complete.error task_id={}", entry.task_id)

    def _expire(self, message_id: MessageId) -> None:
        self._completed.pop(message_id, None)

    def _notify(self, task_id: str) -> None:
        try:
            self._updated.send(self, task_id=task_id)
        except Exception:
            logger.exception("streaming.update_handler.error task_id={}", task_id)
