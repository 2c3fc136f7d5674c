"""Group a flat conversation into display turns.

An assistant message opens a run that absorbs every following assistant and
tool message until a user, developer or system message appears. Inside the
run, each tool call becomes a :class:`ToolInteraction`; tool messages attach
to the open call they answer or are kept as orphans. Text-only assistant
messages set the run's final reply, later ones overwriting earlier ones.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Literal, TypeAlias

from taskwire.envelope import field_of

ASSISTANT_ROLE = "assistant"
TOOL_ROLE = "tool"


@dataclass
class ToolInteraction:
    """One tool call paired with its response, if it has arrived."""

    tool_call: Any
    reasoning: str | None = None
    reasoning_summary: str | None = None
    tool_call_summary: str | None = None
    content_with_tool_calls: str | None = None
    tool_response: Any | None = None
    tool_output_summary: str | None = None

    @property
    def call_id(self) -> str | None:
        return field_of(self.tool_call, "id")


@dataclass
class AssistantTurn:
    assistant_messages: list[Any] = field(default_factory=list)
    tool_interactions: list[ToolInteraction] = field(default_factory=list)
    orphan_tool_messages: list[Any] = field(default_factory=list)
    final_content: str | None = None
    final_reasoning: str | None = None
    final_reasoning_summary: str | None = None
    type: Literal["assistant"] = ASSISTANT_ROLE


@dataclass(frozen=True)
class MessageTurn:
    type: str
    message: Any


Turn: TypeAlias = AssistantTurn | MessageTurn


def group_turns(messages: Sequence[Any]) -> list[Turn]:
    """Group ordered messages (mappings or models) into turns."""
    turns: list[Turn] = []
    i = 0
    while i < len(messages):
        message = messages[i]
        role = field_of(message, "role")
        if role == ASSISTANT_ROLE:
            turn, i = _collect_run(messages, i)
            turns.append(turn)
            continue
        turns.append(MessageTurn(type=str(role), message=message))
        i += 1
    return turns


def _has_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _collect_run(messages: Sequence[Any], start: int) -> tuple[AssistantTurn, int]:
    turn = AssistantTurn()
    open_calls: dict[Any, ToolInteraction] = {}
    j = start
    while j < len(messages):
        current = messages[j]
        role = field_of(current, "role")
        if role == ASSISTANT_ROLE:
            turn.assistant_messages.append(current)
            _absorb_assistant(turn, open_calls, current)
        elif role == TOOL_ROLE:
            interaction = open_calls.pop(field_of(current, "tool_call_id"), None)
            if interaction is None:
                turn.orphan_tool_messages.append(current)
            else:
                interaction.tool_response = current
                interaction.tool_output_summary = field_of(current, "tool_output_summary")
        else:
            break
        j += 1
    return turn, j


def _absorb_assistant(turn: AssistantTurn, open_calls: dict[Any, ToolInteraction], message: Any) -> None:
    content = field_of(message, "content")
    tool_calls = field_of(message, "tool_calls")
    if isinstance(tool_calls, list) and tool_calls:
        # Reasoning and text belong to the message, so only its first call carries them.
        for index, call in enumerate(tool_calls):
            first = index == 0
            interaction = ToolInteraction(
                tool_call=call,
                reasoning=field_of(message, "reasoning") if first else None,
                reasoning_summary=field_of(message, "reasoning_summary") if first else None,
                tool_call_summary=field_of(message, "tool_call_summary"),
                content_with_tool_calls=content if first and _has_text(content) else None,
            )
            turn.tool_interactions.append(interaction)
            call_id = interaction.call_id
            if call_id is not None:
                open_calls[call_id] = interaction
        return
    if _has_text(content):
        turn.final_content = content
        turn.final_reasoning = field_of(message, "reasoning")
        turn.final_reasoning_summary = field_of(message, "reasoning_summary")
