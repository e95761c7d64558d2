"""
Server-sent events framing for the DevPulse analysis streams.
"""

import json
from typing import Any, AsyncIterator, List, Optional

from pydantic import BaseModel


class ServerSentEvent(BaseModel):
    """One dispatched event from a ``text/event-stream`` body."""
    event: str = "message"
    data: str = ""
    id: Optional[str] = None
    retry: Optional[int] = None


class SSEDecoder:
    """
    Incremental decoder for event-stream lines.

    Feed it one line at a time (without the trailing newline); it returns an
    event whenever a blank line completes one.
    """

    def __init__(self):
        self._event = ""
        self._data: List[str] = []
        self._last_event_id: Optional[str] = None
        self._retry: Optional[int] = None

    def decode(self, line: str) -> Optional[ServerSentEvent]:
        line = line.rstrip("\r\n")

        if not line:
            return self._dispatch()

        if line.startswith(":"):
            return None

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if field == "data":
            self._data.append(value)
        elif field == "event":
            self._event = value
        elif field == "id":
            if "\0" not in value:
                self._last_event_id = value
        elif field == "retry":
            if value.isdigit():
                self._retry = int(value)

        return None

    def _dispatch(self) -> Optional[ServerSentEvent]:
        # Nothing is dispatched when no data line was seen
        if not self._data:
            self._event = ""
            return None

        event = ServerSentEvent(
            event=self._event or "message",
            data="\n".join(self._data),
            id=self._last_event_id,
            retry=self._retry,
        )
        self._event = ""
        self._data = []
        self._retry = None
        return event


async def aiter_events(lines: AsyncIterator[str]) -> AsyncIterator[ServerSentEvent]:
    """Decode events from an async line iterator such as ``httpx.Response.aiter_lines``."""
    decoder = SSEDecoder()
    async for line in lines:
        event = decoder.decode(line)
        if event is not None:
            yield event


def format_sse(data: Any, event: Optional[str] = None) -> str:
    """Format a payload as an SSE frame: ``event: {type}\\ndata: {json}\\n\\n``."""
    payload = data if isinstance(data, str) else json.dumps(data, default=str)
    frame = ""
    if event:
        frame += f"event: {event}\n"
    for line in payload.splitlines() or [""]:
        frame += f"data: {line}\n"
    return frame + "\n"
