"""Terminal rendering of grouped turns."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from rich.console import Console, Group, RenderableType
from rich.panel import Panel
from rich.text import Text

from taskwire.connection import ConnectionState
from taskwire.envelope import field_of
from taskwire.grouping import AssistantTurn, ToolInteraction, Turn

TOOL_PREVIEW_LIMIT = 200

_ROLE_STYLES = {
    "user": "bold cyan",
    "assistant": "bold yellow",
    "system": "bold magenta",
    "developer": "bold magenta",
    "tool": "bold green",
}


def _preview(value: Any, limit: int) -> str:
    text = "" if value is None else str(value)
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def _is_streaming(message: Any) -> bool:
    return bool(field_of(message, "is_streaming", False))


class TurnRenderer:
    """Render turns and connection state with Rich."""

    def __init__(self, console: Console | None = None, *, preview_limit: int = TOOL_PREVIEW_LIMIT) -> None:
        self.console = console or Console()
        self._preview_limit = preview_limit

    def status(self, state: ConnectionState) -> Text:
        if state.connected:
            return Text("Real-time", style="green")
        if state.connecting:
            return Text("Connecting...", style="yellow")
        if state.error:
            label = "Offline" if state.offline else f"Reconnecting ({state.reconnect_attempts})"
            return Text(f"{label}: {state.error}", style="red")
        return Text("Disconnected", style="dim")

    def view(self, turns: Sequence[Turn], state: ConnectionState) -> RenderableType:
        return Group(self.status(state), *(self.turn(turn) for turn in turns))

    def print_turns(self, turns: Sequence[Turn]) -> None:
        for turn in turns:
            self.console.print(self.turn(turn))

    def turn(self, turn: Turn) -> RenderableType:
        if isinstance(turn, AssistantTurn):
            return self._assistant(turn)
        style = _ROLE_STYLES.get(turn.type, "bold")
        content = field_of(turn.message, "content") or ""
        return Panel(Text(str(content)), title=Text(turn.type, style=style), title_align="left")

    def _assistant(self, turn: AssistantTurn) -> RenderableType:
        parts: list[RenderableType] = []
        for interaction in turn.tool_interactions:
            parts.extend(self._interaction(interaction))
        for orphan in turn.orphan_tool_messages:
            parts.append(Text(f"notice: {_preview(field_of(orphan, 'content'), self._preview_limit)}", style="dim"))
        if turn.final_reasoning:
            parts.append(Text(turn.final_reasoning, style="dim italic"))
        if turn.final_content:
            parts.append(Text(turn.final_content))
        title = "assistant"
        if any(_is_streaming(message) for message in turn.assistant_messages):
            title = "assistant (streaming)"
        return Panel(Group(*parts), title=Text(title, style=_ROLE_STYLES["assistant"]), title_align="left")

    def _interaction(self, interaction: ToolInteraction) -> list[RenderableType]:
        lines: list[RenderableType] = []
        if interaction.reasoning:
            lines.append(Text(interaction.reasoning, style="dim italic"))
        if interaction.content_with_tool_calls:
            lines.append(Text(interaction.content_with_tool_calls))
        function = field_of(interaction.tool_call, "function") or {}
        name = field_of(function, "name") or "tool"
        arguments = _preview(field_of(function, "arguments"), self._preview_limit)
        lines.append(Text(f"-> {name}({arguments})", style="cyan"))
        if interaction.tool_response is None:
            lines.append(Text("   (waiting for result)", style="dim"))
        else:
            output = interaction.tool_output_summary or field_of(interaction.tool_response, "content")
            lines.append(Text(f"   {_preview(output, self._preview_limit)}", style="green"))
        return lines
