"""Server-sent event helpers for the realtime change stream."""
from __future__ import annotations

from typing import AsyncGenerator, AsyncIterator, Iterable

from fastapi.responses import StreamingResponse

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Content-Type": "text/event-stream",
    "Connection": "keep-alive",
}


def format_sse(data: str, event: str | None = None) -> str:
    """Return a properly formatted SSE payload."""
    lines = []
    if event:
        lines.append(f"event: {event}")
    for chunk in data.splitlines() or [""]:
        lines.append(f"data: {chunk}")
    lines.append("\n")
    return "\n".join(lines)


async def parse_sse(lines: AsyncIterator[str]) -> AsyncIterator[tuple[str | None, str]]:
    """Decode an SSE line stream into ``(event, data)`` pairs.

    Comment lines (``:keepalive``) are skipped; a blank line terminates the
    current event. An event without ``data:`` lines is ignored.
    """

    event: str | None = None
    data: list[str] = []
    async for raw in lines:
        line = raw.rstrip("\r")
        if not line:
            if data:
                yield event, "\n".join(data)
            event, data = None, []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            event = value
        elif field == "data":
            data.append(value)
    if data:
        yield event, "\n".join(data)


def stream(iterable: Iterable[str] | AsyncGenerator[str, None]) -> StreamingResponse:
    """Create a streaming response for an iterable of SSE payloads."""

    async def iterator() -> AsyncGenerator[bytes, None]:
        if hasattr(iterable, "__aiter__"):
            async for item in iterable:  # type: ignore[union-attr]
                yield item.encode("utf-8")
        else:
            for item in iterable:  # type: ignore[union-attr]
                yield item.encode("utf-8")

    return StreamingResponse(iterator(), headers=SSE_HEADERS)
