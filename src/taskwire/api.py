"""Request-layer collaborator: fetch persisted conversations."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Protocol

import aiohttp
from loguru import logger
from pydantic import ValidationError

from taskwire.errors import FetchError
from taskwire.events import ConversationMessage

if TYPE_CHECKING:
    from taskwire.config import Settings

CONVERSATION_PATH = "/task/conversation"


class ConversationFetcher(Protocol):
    """Anything that can return the persisted conversation of a task."""

    async def fetch_persisted_conversation(self, task_id: str) -> list[ConversationMessage]: ...


class TaskApiClient:
    """Minimal HTTP client for the task service."""

    def __init__(self, base_url: str, *, timeout: float = 30.0, session: aiohttp.ClientSession | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    @classmethod
    def from_settings(cls, settings: Settings) -> TaskApiClient:
        return cls(settings.api_base_url, timeout=settings.request_timeout_seconds)

    async def fetch_persisted_conversation(self, task_id: str) -> list[ConversationMessage]:
        """Return the task's persisted conversation.

        Raises:
            FetchError: On transport failures, error statuses or unexpected payloads.
        """
        session = self._ensure_session()
        url = f"{self.base_url}{CONVERSATION_PATH}"
        try:
            async with session.get(url, params={"task_id": task_id}) as response:
                response.raise_for_status()
                payload = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise FetchError(task_id, str(exc) or type(exc).__name__) from exc
        except ValueError as exc:
            raise FetchError(task_id, f"undecodable response body: {exc}") from exc

        conversation = payload.get("conversation") if isinstance(payload, dict) else None
        if not isinstance(conversation, list):
            raise FetchError(task_id, "response has no conversation list")
        try:
            messages = [ConversationMessage.model_validate(item) for item in conversation]
        except ValidationError as exc:
            raise FetchError(task_id, f"invalid message: {exc.error_count()} error(s)") from exc
        logger.debug("api.conversation.fetched task_id={} count={}", task_id, len(messages))
        return messages

    async def aclose(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session
