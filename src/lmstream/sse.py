"""Server-Sent Events framing, in both directions."""

from __future__ import annotations

import json
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import asdict

from lmstream.events import StreamEvent

DONE_SENTINEL = "[DONE]"


def _event_data(block: str) -> str | None:
    lines = []
    for line in block.split("\n"):
        if line.startswith("data:"):
            value = line[5:]
            lines.append(value[1:] if value.startswith(" ") else value)
    if not lines:
        return None
    return "\n".join(lines)


async def iter_sse_data(fragments: AsyncIterable[str]) -> AsyncIterator[str]:
    """Yield the ``data`` payload of each event in an SSE body.

    *fragments* may split the body anywhere.  Events are separated by a
    blank line; an unterminated trailing event is flushed at end of
    input.  Empty payloads and the ``[DONE]`` sentinel are skipped.
    """
    buffer = ""
    pending_cr = False
    async for fragment in fragments:
        if isinstance(fragment, (bytes, bytearray)):
            fragment = fragment.decode("utf-8")
        # A trailing "\r" may be the first half of a "\r\n" pair.
        raw = ("\r" if pending_cr else "") + fragment
        pending_cr = raw.endswith("\r")
        if pending_cr:
            raw = raw[:-1]
        buffer += raw.replace("\r\n", "\n").replace("\r", "\n")
        while "\n\n" in buffer:
            block, buffer = buffer.split("\n\n", 1)
            data = _event_data(block)
            if data and data.strip() != DONE_SENTINEL:
                yield data

    if pending_cr:
        buffer += "\n"
    data = _event_data(buffer.strip("\n"))
    if data and data.strip() != DONE_SENTINEL:
        yield data


async def sse_generator(
    event_stream: AsyncIterable[StreamEvent],
) -> AsyncIterator[str]:
    """Convert normalised stream events into SSE-formatted strings."""
    async for event in event_stream:
        event_type = type(event).__name__
        data = json.dumps(asdict(event))
        yield f"event: {event_type}\ndata: {data}\n\n"
    yield "event: done\ndata: {}\n\n"
