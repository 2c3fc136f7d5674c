"""Connection manager for the real-time event socket.

One :class:`ConnectionManager` owns at most one socket at a time. It opens the
socket, keeps it alive with ping frames, and re-opens it after failures with a
fixed delay until a ceiling of attempts is reached, at which point it goes
offline and stops retrying. Decoded events are handed to ``on_event``
receivers; connection state changes are announced to ``on_state_change``
receivers.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, TypeAlias

from blinker import Signal
from loguru import logger

from taskwire.envelope import ControlFrame, Heartbeat, decode_frame, encode_frame, encode_ping
from taskwire.errors import MalformedFrameError, TransportError
from taskwire.events import Envelope
from taskwire.scheduler import LoopScheduler, Scheduler, TimerHandle
from taskwire.transport import AiohttpTransport, Socket, Transport

if TYPE_CHECKING:
    from taskwire.config import Settings

RECONNECT_INTERVAL_SECONDS = 3.0
MAX_RECONNECT_ATTEMPTS = 10
HEARTBEAT_INTERVAL_SECONDS = 30.0

OPEN_FAILED_ERROR = "WebSocket server unavailable"
SOCKET_ERROR = "WebSocket connection error"
MAX_RECONNECT_ERROR = "Max reconnection attempts reached"

StateHandler: TypeAlias = Callable[["ConnectionState"], None]
EventHandler: TypeAlias = Callable[[Envelope], None]


@dataclass(frozen=True)
class ConnectionState:
    """Read-only snapshot of the socket's health."""

    connected: bool = False
    connecting: bool = False
    error: str | None = None
    last_event_time: datetime | None = None
    reconnect_attempts: int = 0
    offline: bool = False


class ConnectionManager:
    """Establish, monitor and re-establish one socket."""

    def __init__(
        self,
        url: str,
        transport: Transport,
        *,
        scheduler: Scheduler | None = None,
        reconnect_interval: float = RECONNECT_INTERVAL_SECONDS,
        max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
    ) -> None:
        self.url = url
        self._transport = transport
        self._scheduler = scheduler or LoopScheduler()
        self._reconnect_interval = reconnect_interval
        self._max_reconnect_attempts = max_reconnect_attempts
        self._heartbeat_interval = heartbeat_interval
        self._state = ConnectionState()
        self._state_changed = Signal("taskwire.connection.state")
        self._event_received = Signal("taskwire.connection.event")
        self._socket: Socket | None = None
        self._runner: asyncio.Task[None] | None = None
        self._reconnect_handle: TimerHandle | None = None
        self._heartbeat_handle: TimerHandle | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._manual_disconnect = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        transport: Transport | None = None,
        scheduler: Scheduler | None = None,
    ) -> ConnectionManager:
        return cls(
            settings.resolve_ws_url(),
            transport or AiohttpTransport(connect_timeout=settings.request_timeout_seconds),
            scheduler=scheduler,
            reconnect_interval=settings.reconnect_interval_seconds,
            max_reconnect_attempts=settings.max_reconnect_attempts,
            heartbeat_interval=settings.heartbeat_interval_seconds,
        )

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state.connected

    def on_state_change(self, handler: StateHandler) -> Callable[[], None]:
        def _receiver(sender: Any, *, state: ConnectionState) -> None:
            handler(state)

        self._state_changed.connect(_receiver, weak=False)
        return lambda: self._state_changed.disconnect(_receiver)

    def on_event(self, handler: EventHandler) -> Callable[[], None]:
        def _receiver(sender: Any, *, event: Envelope) -> None:
            handler(event)

        self._event_received.connect(_receiver, weak=False)
        return lambda: self._event_received.disconnect(_receiver)

    def connect(self) -> None:
        """Open the socket unless one is already open or opening."""
        if self._state.connecting or self._state.connected:
            return
        self._manual_disconnect = False
        self._cancel_reconnect()
        self._update(connecting=True, error=None, offline=False)
        loop = asyncio.get_running_loop()
        self._runner = loop.create_task(self._run(), name="taskwire.connection")

    def disconnect(self) -> None:
        """Close the socket and suppress automatic reconnection."""
        self._manual_disconnect = True
        self._cancel_reconnect()
        self._cancel_heartbeat()
        if self._runner is not None and not self._runner.done():
            self._runner.cancel()
        self._socket = None
        self._update(connected=False, connecting=False, reconnect_attempts=0)

    async def aclose(self) -> None:
        """Disconnect and wait for the socket and pending sends to finish."""
        self.disconnect()
        runner, self._runner = self._runner, None
        if runner is not None:
            try:
                await runner
            except asyncio.CancelledError:
                pass
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def send(self, message: dict[str, Any]) -> bool:
        """Send one JSON frame; returns False when no socket is open."""
        if self._socket is None:
            return False
        self._spawn(self._send_raw(self._socket, encode_frame(message)))
        return True

    async def _run(self) -> None:
        socket: Socket | None = None
        try:
            socket = await self._transport.open(self.url)
            self._socket = socket
            self._handle_open()
            async for raw in socket:
                self._handle_frame(raw)
        except TransportError as exc:
            logger.warning("connection.error url={} error={}", self.url, exc)
            self._handle_error(SOCKET_ERROR if socket is not None else OPEN_FAILED_ERROR)
        finally:
            # A runner replaced by a newer connect() must not touch shared state.
            current = self._runner is asyncio.current_task()
            if self._socket is socket:
                self._socket = None
            if socket is not None:
                await self._close_socket(socket)
            if current:
                self._handle_close()

    def _handle_open(self) -> None:
        logger.info("connection.open url={}", self.url)
        self._update(connected=True, connecting=False, error=None, reconnect_attempts=0, offline=False)
        self._send_heartbeat()

    def _handle_frame(self, raw: str | bytes) -> None:
        try:
            frame = decode_frame(raw)
        except MalformedFrameError as exc:
            logger.warning("connection.frame.malformed reason={}", exc.reason)
            return
        if isinstance(frame, Heartbeat):
            return
        self._update(last_event_time=datetime.now(UTC))
        if isinstance(frame, ControlFrame):
            logger.debug("connection.frame.control type={}", frame.type)
            return
        try:
            self._event_received.send(self, event=frame)
        except Exception:
            logger.exception("connection.dispatch.error event_type={}", frame.event_type)

    def _handle_error(self, message: str) -> None:
        self._update(connecting=False, error=message)

    def _handle_close(self) -> None:
        self._cancel_heartbeat()
        self._update(connected=False, connecting=False)
        if self._manual_disconnect:
            logger.info("connection.closed manual=true")
            return

        attempts = self._state.reconnect_attempts
        if attempts >= self._max_reconnect_attempts:
            logger.error("connection.offline attempts={} url={}", attempts, self.url)
            self._update(error=MAX_RECONNECT_ERROR, offline=True)
            return

        attempts += 1
        logger.info(
            "connection.reconnect attempt={} max={} delay={}",
            attempts,
            self._max_reconnect_attempts,
            self._reconnect_interval,
        )
        self._update(reconnect_attempts=attempts)
        self._reconnect_handle = self._scheduler.call_later(self._reconnect_interval, self._reconnect)

    def _reconnect(self) -> None:
        self._reconnect_handle = None
        self.connect()

    def _send_heartbeat(self) -> None:
        self._heartbeat_handle = None
        if self._socket is None:
            return
        self._spawn(self._send_raw(self._socket, encode_ping()))
        self._heartbeat_handle = self._scheduler.call_later(self._heartbeat_interval, self._send_heartbeat)

    async def _send_raw(self, socket: Socket, data: str) -> None:
        try:
            await socket.send(data)
        except TransportError as exc:
            logger.warning("connection.send.failed error={}", exc)

    async def _close_socket(self, socket: Socket) -> None:
        try:
            await socket.close()
        except TransportError as exc:
            logger.warning("connection.close.failed error={}", exc)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    def _cancel_heartbeat(self) -> None:
        if self._heartbeat_handle is not None:
            self._heartbeat_handle.cancel()
            self._heartbeat_handle = None

    def _update(self, **changes: Any) -> None:
        self._state = replace(self._state, **changes)
        try:
            self._state_changed.send(self, state=self._state)
        except Exception:
            logger.exception("connection.state_handler.error")
