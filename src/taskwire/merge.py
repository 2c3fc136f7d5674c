"""Reconciliation of persisted and live conversation entries."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any, TypeAlias

from taskwire.events import ConversationMessage, MessageId, UnifiedMessage
from taskwire.streaming import StreamingEntry

PersistedInput: TypeAlias = ConversationMessage | Mapping[str, Any]


def merge_conversation(
    persisted: Iterable[PersistedInput],
    live: Iterable[StreamingEntry],
    settled: Iterable[StreamingEntry] = (),
) -> list[UnifiedMessage]:
    """Combine persisted messages with live streaming entries.

    Persisted messages without an id are dropped. A live entry whose id is
    already persisted replaces that message in place; other live entries are
    appended. Settled entries fill in only ids that neither source has. The
    result is ordered by ``message_index`` when present, else by ``created_at``.
    """
    merged: list[UnifiedMessage] = []
    positions: dict[MessageId, int] = {}

    for message in persisted:
        unified = _to_unified(message)
        if unified.id is None or unified.id in positions:
            continue
        positions[unified.id] = len(merged)
        merged.append(unified)

    for entry in live:
        streaming = entry.to_message(is_streaming=True)
        index = positions.get(entry.id)
        if index is None:
            positions[entry.id] = len(merged)
            merged.append(streaming)
        else:
            merged[index] = streaming

    for entry in settled:
        if entry.id in positions:
            continue
        positions[entry.id] = len(merged)
        merged.append(entry.to_message(is_streaming=False))

    return sorted(merged, key=order_key)


def order_key(message: ConversationMessage) -> float:
    if message.message_index is not None:
        return float(message.message_index)
    return _timestamp_ms(message.created_at)


def _timestamp_ms(value: str | None) -> float:
    if not value:
        return 0.0
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return 0.0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.timestamp() * 1000


def _to_unified(message: PersistedInput) -> UnifiedMessage:
    if isinstance(message, UnifiedMessage):
        return message.model_copy(update={"is_streaming": False})
    if isinstance(message, ConversationMessage):
        return UnifiedMessage.model_validate({**message.model_dump(), "is_streaming": False})
    return UnifiedMessage.model_validate({**dict(message), "is_streaming": False})
