"""Async chat client that streams answers from the HTTP API into a ClientStreamReducer."""

import json
import logging
from typing import Any

import httpx

from streamchat.core.errors import (
    ChatEngineError,
    NotFoundError,
    RateLimitedError,
    TurnInProgressError,
)
from streamchat.core.sse import iter_sse_data
from streamchat.client.reducer import ClientMessage, ClientStreamReducer
from streamchat.services.llm.base import error_for_status
from streamchat.services.transport import TERMINAL_TYPES

logger = logging.getLogger(__name__)

CONNECTION_CLOSED = "connection closed"


def _retry_after(value: str | None) -> float | None:
    """Seconds from a Retry-After header; None when absent or given as a date."""
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _response_error(
    status_code: int, body: bytes, retry_after: str | None = None
) -> ChatEngineError:
    try:
        detail = json.loads(body).get("detail", "")
    except (ValueError, AttributeError):
        detail = body.decode("utf-8", errors="replace")[:200]
    detail = str(detail)
    if status_code == 404:
        return NotFoundError(detail)
    if status_code == 409:
        return TurnInProgressError(detail)
    if status_code == 429:
        return RateLimitedError(detail, retry_after=_retry_after(retry_after))
    return error_for_status(status_code, detail)


class ChatSession:
    """One conversation as seen by a client.

    Usage::

        async with ChatSession("http://localhost:8000") as chat:
            reply = await chat.send("explain recursion")
    """

    def __init__(
        self,
        base_url: str,
        conversation_id: str | None = None,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.reducer = ClientStreamReducer(conversation_id)
        self.turn_id: str | None = None
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def __aenter__(self) -> "ChatSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    @property
    def conversation_id(self) -> str | None:
        return self.reducer.conversation_id

    @property
    def messages(self) -> list[ClientMessage]:
        return self.reducer.messages

    async def _history_page(self, limit: int, offset: int) -> dict[str, Any]:
        resp = await self._client.get(
            f"/api/conversations/{self.conversation_id}/messages",
            params={"limit": limit, "offset": offset},
        )
        if resp.status_code >= 400:
            raise _response_error(resp.status_code, resp.content)
        return resp.json()

    async def load_history(self, limit: int = 50) -> list[ClientMessage]:
        """Replace the local message list with the newest ``limit`` persisted messages."""
        if not self.conversation_id:
            return self.messages
        page = await self._history_page(limit, 0)
        if page.get("total", 0) > limit:
            page = await self._history_page(limit, page["total"] - limit)
        self.reducer.messages = [
            ClientMessage(
                id=m["id"],
                role=m["role"],
                content=m["content"],
                metadata=m.get("metadata") or {},
            )
            for m in page["messages"]
        ]
        return self.messages

    async def send(
        self,
        text: str,
        conversation_type: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> ClientMessage | None:
        """Stream one answer. Returns the assistant message, or None when nothing was kept."""
        local_id = self.reducer.begin_turn(self.conversation_id, text)
        payload: dict[str, Any] = {"message": text, "stream": True}
        if self.conversation_id:
            payload["conversation_id"] = self.conversation_id
        if conversation_type:
            payload["conversation_type"] = conversation_type
        if options:
            payload["options"] = options

        message_id = local_id
        try:
            async with self._client.stream("POST", "/api/chat", json=payload) as response:
                if response.status_code >= 400:
                    error = _response_error(
                        response.status_code,
                        await response.aread(),
                        response.headers.get("Retry-After"),
                    )
                    self.reducer.fail_turn(local_id, error.message)
                    raise error

                message_id = response.headers.get("X-Turn-Id", local_id)
                self.turn_id = message_id
                self.reducer.acknowledge_turn(
                    local_id,
                    message_id,
                    user_message_id=response.headers.get("X-User-Message-Id"),
                    conversation_id=response.headers.get("X-Conversation-Id"),
                )

                async for data in iter_sse_data(response.aiter_lines()):
                    try:
                        frame = json.loads(data)
                    except ValueError:
                        logger.debug(f"Skipping malformed frame: {data[:100]!r}")
                        continue
                    if not isinstance(frame, dict):
                        logger.debug(f"Skipping non-object frame: {data[:100]!r}")
                        continue
                    self.reducer.apply_event(message_id, frame)
                    if frame.get("type") in TERMINAL_TYPES:
                        break
        except httpx.RequestError as e:
            logger.warning(f"Stream for turn {message_id} interrupted: {e}")
        finally:
            self.turn_id = None
            # No terminal frame arrived; release the turn so the next send can start
            current = self.reducer.streaming_message_id
            if current is not None and current in (local_id, message_id):
                self.reducer.fail_turn(current, CONNECTION_CLOSED)
        return self.reducer.find(message_id)

    async def cancel(self) -> bool:
        """Ask the server to stop the answer being streamed. Returns False when idle."""
        turn_id = self.reducer.request_cancel()
        if turn_id is None or self.turn_id != turn_id:
            return False
        resp = await self._client.post(f"/api/chat/turns/{turn_id}/cancel")
        if resp.status_code == 404:
            # Turn finished before the request arrived
            return False
        if resp.status_code >= 400:
            raise _response_error(resp.status_code, resp.content)
        return True
