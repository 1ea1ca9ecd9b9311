"""Tests for the SSE session transport."""

import asyncio
import json

import pytest

from streamchat.core.errors import TransportClosedError
from streamchat.services.transport import SSETransport


def _decode(frame):
    return json.loads(frame[len("data: "):].strip())


@pytest.mark.asyncio
async def test_frames_delivered_in_order_until_terminal():
    transport = SSETransport("turn-1", write_timeout=1.0, buffer_size=8)
    await transport.send("Recur")
    await transport.send("sion")
    await transport.send_done(message_id="turn-1")

    frames = [_decode(f) async for f in transport.frames()]
    assert frames == [
        {"type": "fragment", "text": "Recur"},
        {"type": "fragment", "text": "sion"},
        {"type": "done", "message_id": "turn-1"},
    ]
    assert transport.closed


@pytest.mark.asyncio
async def test_no_writes_after_terminal_frame():
    transport = SSETransport("turn-1", write_timeout=1.0)
    await transport.send_error("model_unavailable", code="model_unavailable")
    with pytest.raises(TransportClosedError):
        await transport.send("late")


@pytest.mark.asyncio
async def test_slow_consumer_times_out_write():
    transport = SSETransport("turn-1", write_timeout=0.05, buffer_size=1)
    await transport.send("fills the buffer")
    with pytest.raises(TransportClosedError):
        await transport.send("never fits")
    assert transport.closed
    with pytest.raises(TransportClosedError):
        await transport.send("closed")


@pytest.mark.asyncio
async def test_consumer_disconnect_marks_closed():
    transport = SSETransport("turn-1", write_timeout=1.0)
    await transport.send("a")
    frames = transport.frames()
    assert _decode(await frames.__anext__()) == {"type": "fragment", "text": "a"}
    await frames.aclose()

    await asyncio.wait_for(transport.wait_closed(), timeout=1.0)
    with pytest.raises(TransportClosedError):
        await transport.send("b")


@pytest.mark.asyncio
async def test_close_ends_frames_without_terminal():
    transport = SSETransport("turn-1", write_timeout=1.0)
    await transport.send("partial")
    transport.close()
    transport.close()

    frames = [_decode(f) async for f in transport.frames()]
    assert frames == [{"type": "fragment", "text": "partial"}]
