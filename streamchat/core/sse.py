"""Server-sent events framing, used for our own push channel and for reading model backends."""

import json
from typing import Any, AsyncIterable, AsyncIterator

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def encode_event(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


async def iter_sse_data(lines: AsyncIterable[str]) -> AsyncIterator[str]:
    """Yield the data payload of every event in a stream of text lines.

    Comment lines (keep-alives) and fields other than ``data`` are ignored.
    Multiple ``data`` lines inside one event are joined with a newline, and a
    trailing event without a blank line after it is still delivered.
    """
    data_lines: list[str] = []
    async for raw in lines:
        line = raw.rstrip("\r\n")
        if not line:
            if data_lines:
                yield "\n".join(data_lines)
                data_lines = []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "data":
            data_lines.append(value)
    if data_lines:
        yield "\n".join(data_lines)
