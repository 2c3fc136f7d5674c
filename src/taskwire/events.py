"""Event and conversation message models."""

from __future__ import annotations

from enum import Enum
from typing import Any, TypeAlias

from pydantic import BaseModel, ConfigDict

MessageId: TypeAlias = int | str


class EventType(str, Enum):
    """Event types the synchronization layer reacts to."""

    MESSAGE_STREAMING = "message_streaming"
    MESSAGE_ADDED = "message_added"
    ITERATION_REMINDER_ADDED = "iteration_reminder_added"
    USER_MESSAGE_ADDED = "user_message_added"
    HELP_PROVIDED = "help_provided"
    TASK_DELETED = "task_deleted"
    TASK_BULK_DELETED = "task_bulk_deleted"


SUBPROCESS_EVENT_PREFIX = "subprocess_"


def normalize_event_type(event_type: str | Enum) -> str:
    """Return the plain string value of an event type."""
    if isinstance(event_type, Enum):
        return str(event_type.value)
    return str(event_type)


class Envelope(BaseModel):
    """Decoded inbound event; event-specific fields are kept as extras."""

    model_config = ConfigDict(extra="allow", frozen=True)

    event_type: str
    timestamp: str | None = None
    task_id: str | None = None

    def get(self, key: str, default: Any = None) -> Any:
        if key in type(self).model_fields:
            return getattr(self, key)
        return (self.model_extra or {}).get(key, default)


class StreamingFragment(BaseModel):
    """One cumulative update for an in-progress message."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    task_id: str
    message_id: MessageId
    role: str
    content: str | None = None
    reasoning: str | None = None
    tool_calls: list[dict[str, Any]] | None = None
    tool_call_id: str | None = None
    name: str | None = None
    stream_index: int = 0
    is_complete: bool = False
    message_index: int | None = None
    timestamp: str | None = None

    @classmethod
    def from_envelope(cls, envelope: Envelope) -> StreamingFragment:
        return cls.model_validate(envelope.model_dump())


class ConversationMessage(BaseModel):
    """A finalized conversation record as returned by the request layer."""

    model_config = ConfigDict(extra="allow", frozen=True)

    id: MessageId | None = None
    role: str
    content: str | None = None
    reasoning: str | None = None
    reasoning_summary: str | None = None
    tool_calls: list[dict[str, Any]] | None = None
    tool_call_summary: str | None = None
    tool_call_id: str | None = None
    tool_output_summary: str | None = None
    name: str | None = None
    created_at: str | None = None
    message_index: int | None = None


class UnifiedMessage(ConversationMessage):
    """A merged conversation entry, tagged with where it came from."""

    is_streaming: bool = False
    stream_index: int | None = None
