"""taskwire command line."""

from __future__ import annotations

import asyncio
import contextlib

import typer
from loguru import logger
from rich.live import Live

from taskwire.api import TaskApiClient
from taskwire.client import SyncClient
from taskwire.config import Settings, load_settings
from taskwire.errors import ConfigurationError, FetchError
from taskwire.grouping import group_turns
from taskwire.logging_utils import configure_logging
from taskwire.merge import merge_conversation
from taskwire.render import TurnRenderer

app = typer.Typer(name="taskwire", help="Real-time task conversation viewer", add_completion=False)

REFRESH_TIMEOUT_SECONDS = 1.0


def _settings(api_base_url: str | None, ws_url: str | None) -> Settings:
    try:
        return load_settings(api_base_url=api_base_url, ws_url=ws_url)
    except ConfigurationError as exc:
        typer.echo(f"invalid configuration: {exc}", err=True)
        raise typer.Exit(2) from exc


@app.command("watch")
def watch(
    task_id: str = typer.Argument(..., help="Task to follow"),
    api_base_url: str | None = typer.Option(None, "--api", help="Task service base URL"),
    ws_url: str | None = typer.Option(None, "--ws", help="Socket endpoint"),
    duration: float | None = typer.Option(None, "--duration", help="Stop after this many seconds"),
) -> None:
    """Follow a task's conversation live."""
    settings = _settings(api_base_url, ws_url)
    configure_logging(profile="watch", level=settings.log_level)
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(_watch(settings, task_id, duration))


@app.command("turns")
def turns(
    task_id: str = typer.Argument(..., help="Task to print"),
    api_base_url: str | None = typer.Option(None, "--api", help="Task service base URL"),
) -> None:
    """Print a task's persisted conversation grouped into turns."""
    settings = _settings(api_base_url, None)
    configure_logging(level=settings.log_level)
    try:
        asyncio.run(_print_turns(settings, task_id))
    except FetchError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(1) from exc


async def _print_turns(settings: Settings, task_id: str) -> None:
    client = TaskApiClient.from_settings(settings)
    try:
        persisted = await client.fetch_persisted_conversation(task_id)
    finally:
        await client.aclose()
    TurnRenderer().print_turns(group_turns(merge_conversation(persisted, ())))


async def _watch(settings: Settings, task_id: str, duration: float | None) -> None:
    renderer = TurnRenderer()
    changed = asyncio.Event()
    loop = asyncio.get_running_loop()
    deadline = None if duration is None else loop.time() + duration

    async with SyncClient(settings) as client:
        client.on_change(lambda changed_task: changed.set() if changed_task == task_id else None)
        client.connection.on_state_change(lambda _state: changed.set())
        await client.watch(task_id)
        logger.info("cli.watch task_id={}", task_id)
        with Live(renderer.view(client.get_turns(task_id), client.connection_state), console=renderer.console) as live:
            while deadline is None or loop.time() < deadline:
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(changed.wait(), timeout=REFRESH_TIMEOUT_SECONDS)
                changed.clear()
                live.update(renderer.view(client.get_turns(task_id), client.connection_state), refresh=True)
