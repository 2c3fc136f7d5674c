"""Wire codec for socket frames."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, TypeAlias

from pydantic import ValidationError

from taskwire.errors import MalformedFrameError
from taskwire.events import Envelope

PING_TYPE = "ping"
PONG_TYPE = "pong"


@dataclass(frozen=True)
class Heartbeat:
    """A heartbeat acknowledgement; consumed by the connection."""


@dataclass(frozen=True)
class ControlFrame:
    """A frame that carries no event, e.g. a connection greeting."""

    type: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


Frame: TypeAlias = Envelope | Heartbeat | ControlFrame


def field_of(message: Any, key: str, default: Any = None) -> Any:
    """Read a field from mapping-like or attribute-based messages."""

    if isinstance(message, Mapping):
        return message.get(key, default)
    return getattr(message, key, default)


def decode_frame(raw: str | bytes) -> Frame:
    """Decode one inbound frame.

    Accepts ``{"type": "pong"}``, ``{"event": {...}}`` and bare event objects.

    Raises:
        MalformedFrameError: If the frame is not JSON or the event lacks required fields.
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedFrameError(f"invalid json: {exc}", raw) from exc
    if not isinstance(data, dict):
        raise MalformedFrameError("frame is not an object", raw)

    if data.get("type") == PONG_TYPE:
        return Heartbeat()

    if "event" in data:
        event = data["event"]
        if event is None:
            return ControlFrame(type=data.get("type"), payload=data)
        if not isinstance(event, dict):
            raise MalformedFrameError("event is not an object", raw)
    elif "event_type" in data:
        event = data
    else:
        return ControlFrame(type=data.get("type"), payload=data)

    try:
        return Envelope.model_validate(event)
    except ValidationError as exc:
        raise MalformedFrameError(f"invalid event: {exc.error_count()} error(s)", raw) from exc


def encode_frame(message: Mapping[str, Any]) -> str:
    return json.dumps(dict(message), ensure_ascii=False)


def encode_ping() -> str:
    return encode_frame({"type": PING_TYPE})
