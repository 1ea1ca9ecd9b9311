"""Session Transport - a server-to-client push channel (server-sent events) for one turn."""

import asyncio
import logging
from typing import Any, AsyncIterator

from streamchat.core.errors import TransportClosedError
from streamchat.core.sse import encode_event

logger = logging.getLogger(__name__)

TERMINAL_TYPES = ("done", "error")


class SSETransport:
    """Bounded queue between the turn and the HTTP response body.

    Every write waits at most ``write_timeout`` seconds for room in the
    buffer; a consumer that stops reading (or disconnects) turns the next
    write into ``TransportClosedError``.
    """

    def __init__(self, turn_id: str, write_timeout: float = 10.0, buffer_size: int = 32):
        self.turn_id = turn_id
        self._write_timeout = write_timeout
        self._queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue(maxsize=buffer_size)
        self._closed = asyncio.Event()
        self._terminated = False

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def _mark_closed(self) -> None:
        if not self._closed.is_set():
            logger.debug(f"Transport for turn {self.turn_id} closed")
        self._closed.set()

    async def _write(self, frame: dict[str, Any]) -> None:
        if self._closed.is_set() or self._terminated:
            raise TransportClosedError(f"Transport for turn {self.turn_id} is closed")
        try:
            await asyncio.wait_for(self._queue.put(frame), timeout=self._write_timeout)
        except asyncio.TimeoutError:
            logger.info(
                f"Turn {self.turn_id}: write timed out after {self._write_timeout}s, treating client as gone"
            )
            self._mark_closed()
            raise TransportClosedError("write timed out") from None

    async def send(self, fragment: str) -> None:
        await self._write({"type": "fragment", "text": fragment})

    async def send_done(self, **details: Any) -> None:
        await self._write({"type": "done", **details})
        self._terminated = True

    async def send_error(self, reason: str, **details: Any) -> None:
        await self._write({"type": "error", "reason": reason, **details})
        self._terminated = True

    def close(self) -> None:
        """End the channel. Frames already queued are still delivered."""
        if self._terminated or self._closed.is_set():
            return
        self._terminated = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            self._mark_closed()

    async def frames(self) -> AsyncIterator[str]:
        """Encoded SSE frames for the response body, ending after a terminal frame."""
        try:
            while True:
                frame = await self._queue.get()
                if frame is None:
                    break
                yield encode_event(frame)
                if frame["type"] in TERMINAL_TYPES:
                    break
        finally:
            self._mark_closed()
