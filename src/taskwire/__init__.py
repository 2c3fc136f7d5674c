"""taskwire - real-time synchronization for task conversations."""

from .client import SyncClient
from .config import Settings, load_settings
from .connection import ConnectionManager, ConnectionState
from .grouping import AssistantTurn, MessageTurn, ToolInteraction, group_turns
from .merge import merge_conversation
from .registry import SubscriptionRegistry
from .streaming import StreamingAccumulator, StreamingEntry

__version__ = "0.1.0"

__all__ = [
    "AssistantTurn",
    "ConnectionManager",
    "ConnectionState",
    "MessageTurn",
    "Settings",
    "StreamingAccumulator",
    "StreamingEntry",
    "SubscriptionRegistry",
    "SyncClient",
    "ToolInteraction",
    "group_turns",
    "load_settings",
    "merge_conversation",
]
