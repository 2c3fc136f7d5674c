"""Exception types for taskwire."""

from __future__ import annotations


class TaskwireError(Exception):
    """Base exception for taskwire."""


class ConfigurationError(TaskwireError):
    """Raised when settings fail validation at startup."""


class TransportError(TaskwireError):
    """Raised when a socket fails to open or breaks while open."""


class MalformedFrameError(TaskwireError):
    """Raised when an inbound frame cannot be decoded into an envelope."""

    def __init__(self, reason: str, raw: str | bytes | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.raw = raw


class FetchError(TaskwireError):
    """Raised when the request layer cannot return a persisted conversation."""

    def __init__(self, task_id: str, reason: str) -> None:
        super().__init__(f"Failed to fetch conversation for task '{task_id}': {reason}")
        self.task_id = task_id
