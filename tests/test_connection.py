import asyncio
import json

import pytest

from taskwire.connection import (
    MAX_RECONNECT_ERROR,
    OPEN_FAILED_ERROR,
    SOCKET_ERROR,
    ConnectionManager,
    ConnectionState,
)
from taskwire.errors import TransportError
from taskwire.events import Envelope

URL = "ws://tasks.local/ws?client_id=test"


async def _settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_connect_opens_socket_and_sends_heartbeats(transport, scheduler) -> None:
    manager = ConnectionManager(URL, transport, scheduler=scheduler)
    manager.connect()
    assert manager.state.connecting is True

    await _settle()
    assert manager.is_connected
    assert manager.state.connecting is False
    assert transport.opened_urls == [URL]
    socket = transport.last
    assert socket.pings == 1

    scheduler.advance(29)
    await _settle()
    assert socket.pings == 1

    scheduler.advance(1)
    await _settle()
    assert socket.pings == 2

    scheduler.advance(60)
    await _settle()
    assert socket.pings == 4

    await manager.aclose()
    assert socket.closed is True
    assert scheduler.pending == 0


@pytest.mark.asyncio
async def test_connect_is_idempotent(transport, scheduler) -> None:
    manager = ConnectionManager(URL, transport, scheduler=scheduler)
    manager.connect()
    manager.connect()
    await _settle()
    manager.connect()
    await _settle()

    assert len(transport.opened_urls) == 1
    await manager.aclose()


@pytest.mark.asyncio
async def test_reconnect_stops_after_ceiling_and_goes_offline(transport, scheduler) -> None:
    transport.fail_next = 100
    manager = ConnectionManager(URL, transport, scheduler=scheduler)
    manager.connect()
    await _settle()
    assert manager.state.error == OPEN_FAILED_ERROR
    assert manager.state.reconnect_attempts == 1

    for attempt in range(2, 11):
        scheduler.advance(3.0)
        await _settle()
        assert manager.state.reconnect_attempts == attempt
        assert manager.state.offline is False

    scheduler.advance(3.0)
    await _settle()
    assert len(transport.opened_urls) == 11
    assert manager.state.offline is True
    assert manager.state.error == MAX_RECONNECT_ERROR
    assert manager.state.reconnect_attempts == 10

    scheduler.advance(60.0)
    await _settle()
    assert len(transport.opened_urls) == 11
    assert scheduler.pending == 0
    await manager.aclose()


@pytest.mark.asyncio
async def test_reconnect_waits_fixed_interval(transport, scheduler) -> None:
    transport.fail_next = 1
    manager = ConnectionManager(URL, transport, scheduler=scheduler)
    manager.connect()
    await _settle()

    scheduler.advance(2.5)
    await _settle()
    assert len(transport.opened_urls) == 1

    scheduler.advance(0.5)
    await _settle()
    assert len(transport.opened_urls) == 2
    assert manager.is_connected
    await manager.aclose()


@pytest.mark.asyncio
async def test_successful_open_resets_attempts(transport, scheduler) -> None:
    transport.fail_next = 2
    manager = ConnectionManager(URL, transport, scheduler=scheduler)
    manager.connect()
    await _settle()
    assert manager.state.reconnect_attempts == 1

    scheduler.advance(3.0)
    await _settle()
    assert manager.state.reconnect_attempts == 2

    scheduler.advance(3.0)
    await _settle()
    assert manager.is_connected
    assert manager.state.reconnect_attempts == 0
    assert manager.state.error is None
    await manager.aclose()


@pytest.mark.asyncio
async def test_disconnect_cancels_pending_reconnect(transport, scheduler) -> None:
    transport.fail_next = 1
    manager = ConnectionManager(URL, transport, scheduler=scheduler)
    manager.connect()
    await _settle()
    assert manager.state.reconnect_attempts == 1

    manager.disconnect()
    assert manager.state.reconnect_attempts == 0

    scheduler.advance(10.0)
    await _settle()
    assert len(transport.opened_urls) == 1
    await manager.aclose()


@pytest.mark.asyncio
async def test_manual_disconnect_does_not_reconnect(transport, scheduler) -> None:
    manager = ConnectionManager(URL, transport, scheduler=scheduler)
    manager.connect()
    await _settle()
    socket = transport.last

    manager.disconnect()
    await _settle()
    assert socket.closed is True
    assert manager.is_connected is False

    scheduler.advance(60.0)
    await _settle()
    assert len(transport.opened_urls) == 1
    assert socket.pings == 1
    await manager.aclose()


@pytest.mark.asyncio
async def test_disconnect_then_connect_keeps_new_socket(transport, scheduler) -> None:
    manager = ConnectionManager(URL, transport, scheduler=scheduler)
    manager.connect()
    await _settle()

    manager.disconnect()
    manager.connect()
    await _settle()
    assert manager.is_connected
    assert len(transport.opened_urls) == 2
    assert transport.sockets[0].closed is True

    scheduler.advance(10.0)
    await _settle()
    assert len(transport.opened_urls) == 2
    assert manager.send({"type": "hello"}) is True
    await manager.aclose()


@pytest.mark.asyncio
async def test_server_close_schedules_reconnect(transport, scheduler) -> None:
    manager = ConnectionManager(URL, transport, scheduler=scheduler)
    manager.connect()
    await _settle()

    transport.last.drop()
    await _settle()
    assert manager.is_connected is False
    assert manager.state.reconnect_attempts == 1

    scheduler.advance(3.0)
    await _settle()
    assert manager.is_connected
    assert len(transport.sockets) == 2
    assert manager.state.reconnect_attempts == 0
    await manager.aclose()


@pytest.mark.asyncio
async def test_socket_error_while_open_sets_error(transport, scheduler) -> None:
    manager = ConnectionManager(URL, transport, scheduler=scheduler)
    manager.connect()
    await _settle()
    socket = transport.last

    socket.fail(TransportError("reset by peer"))
    await _settle()
    assert manager.state.error == SOCKET_ERROR
    assert manager.state.reconnect_attempts == 1
    assert socket.closed is True
    await manager.aclose()


@pytest.mark.asyncio
async def test_frames_are_decoded_and_filtered(transport, scheduler) -> None:
    manager = ConnectionManager(URL, transport, scheduler=scheduler)
    events: list[Envelope] = []
    manager.on_event(events.append)
    manager.connect()
    await _settle()
    socket = transport.last

    socket.push(json.dumps({"type": "pong"}))
    socket.push("{not json")
    socket.push(json.dumps([1, 2]))
    await _settle()
    assert events == []
    assert manager.state.last_event_time is None

    socket.push_event(event_type="message_added", task_id="t1", message_id=7)
    socket.push(json.dumps({"event_type": "task_deleted", "task_id": "t2"}))
    socket.push(json.dumps({"type": "connected", "event": None}))
    await _settle()

    assert [event.event_type for event in events] == ["message_added", "task_deleted"]
    assert events[0].get("message_id") == 7
    assert manager.state.last_event_time is not None
    assert manager.is_connected
    await manager.aclose()


@pytest.mark.asyncio
async def test_failing_event_handler_keeps_socket_open(transport, scheduler) -> None:
    manager = ConnectionManager(URL, transport, scheduler=scheduler)

    def _explode(_event: Envelope) -> None:
        raise RuntimeError("boom")

    manager.on_event(_explode)
    manager.connect()
    await _settle()

    transport.last.push_event(event_type="message_added", task_id="t1")
    await _settle()
    assert manager.is_connected
    await manager.aclose()


@pytest.mark.asyncio
async def test_state_observers_can_unsubscribe(transport, scheduler) -> None:
    manager = ConnectionManager(URL, transport, scheduler=scheduler)
    states: list[ConnectionState] = []
    unsubscribe = manager.on_state_change(states.append)

    manager.connect()
    await _settle()
    assert states[0].connecting is True
    assert states[-1].connected is True

    unsubscribe()
    seen = len(states)
    manager.disconnect()
    await _settle()
    assert len(states) == seen
    await manager.aclose()


@pytest.mark.asyncio
async def test_send_requires_open_socket(transport, scheduler) -> None:
    manager = ConnectionManager(URL, transport, scheduler=scheduler)
    assert manager.send({"type": "subscribe"}) is False

    manager.connect()
    await _settle()
    assert manager.send({"type": "subscribe", "task_id": "t1"}) is True
    await _settle()

    frames = [json.loads(frame) for frame in transport.last.sent]
    assert {"type": "subscribe", "task_id": "t1"} in frames
    await manager.aclose()


def test_from_settings_uses_derived_socket_url(settings, transport, scheduler) -> None:
    manager = ConnectionManager.from_settings(settings, transport=transport, scheduler=scheduler)
    assert manager.url == "ws://tasks.local:8080/ws?client_id=webui"
    assert manager.state == ConnectionState()
