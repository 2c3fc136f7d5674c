"""Socket transport seam and its aiohttp implementation."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Mapping
from typing import Protocol

import aiohttp
from loguru import logger

from taskwire.errors import TransportError


class Socket(Protocol):
    """One open bidirectional connection."""

    async def send(self, data: str) -> None: ...

    def __aiter__(self) -> AsyncIterator[str | bytes]: ...

    async def close(self) -> None: ...


class Transport(Protocol):
    """Factory for sockets."""

    async def open(self, url: str) -> Socket: ...


class AiohttpSocket:
    """WebSocket connection backed by an aiohttp client session."""

    def __init__(self, session: aiohttp.ClientSession, ws: aiohttp.ClientWebSocketResponse) -> None:
        self._session = session
        self._ws = ws

    async def send(self, data: str) -> None:
        try:
            await self._ws.send_str(data)
        except (aiohttp.ClientError, ConnectionResetError, RuntimeError) as exc:
            raise TransportError(f"send failed: {exc}") from exc

    async def __aiter__(self) -> AsyncIterator[str | bytes]:
        async for message in self._ws:
            if message.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                yield message.data
            elif message.type == aiohttp.WSMsgType.ERROR:
                raise TransportError(f"socket error: {self._ws.exception()}")
        logger.debug("transport.closed code={}", self._ws.close_code)

    async def close(self) -> None:
        try:
            if not self._ws.closed:
                await self._ws.close()
        finally:
            await self._session.close()


class AiohttpTransport:
    """Open WebSocket connections with aiohttp."""

    def __init__(self, *, connect_timeout: float = 30.0, headers: Mapping[str, str] | None = None) -> None:
        self._connect_timeout = connect_timeout
        self._headers = dict(headers or {})

    async def open(self, url: str) -> Socket:
        session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=None, connect=self._connect_timeout),
            headers=self._headers,
        )
        try:
            ws = await session.ws_connect(url, autoping=True)
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
            await session.close()
            raise TransportError(f"failed to open {url}: {exc}") from exc
        except BaseException:
            # Cancelled mid-handshake, e.g. by disconnect().
            await session.close()
            raise
        return AiohttpSocket(session, ws)
