"""
Server-Sent Event framing.

Each event is written as::

    event: <name>
    data: <json>
    <blank line>

Readers must only treat a block as complete at the blank line, and must
join multiple ``data:`` lines with newlines.
"""

import codecs
import json
from dataclasses import dataclass
from typing import Any

SSE_HEADERS = {
    "cache-control": "no-cache, no-transform",
    "connection": "keep-alive",
    "x-accel-buffering": "no",
}
SSE_CONTENT_TYPE = "text/event-stream; charset=utf-8"


def format_event(name: str, payload: Any) -> str:
    """Frame one event. Raises TypeError/ValueError if payload isn't JSON-serializable."""
    data = json.dumps(payload, ensure_ascii=False)
    lines = "".join(f"data: {line}\n" for line in data.split("\n"))
    return f"event: {name}\n{lines}\n"


@dataclass
class SSEEvent:
    """A decoded event block."""

    event: str | None = None
    data: str | None = None

    def json(self) -> Any:
        return json.loads(self.data) if self.data is not None else None


def parse_event_block(raw: str) -> SSEEvent:
    """Parse the lines of one event block (without its terminating blank line)."""
    parsed = SSEEvent()
    data_lines: list[str] = []

    for line in raw.split("\n"):
        if not line or line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            parsed.event = value
        elif name == "data":
            data_lines.append(value)

    if data_lines:
        parsed.data = "\n".join(data_lines)
    return parsed


class SSEDecoder:
    """
    Incremental event-stream decoder.

    Feed it raw bytes as they arrive; it yields complete events and keeps
    partial lines (and partial UTF-8 sequences) buffered until the rest
    shows up.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes | str) -> list[SSEEvent]:
        if isinstance(chunk, bytes):
            text = self._decoder.decode(chunk)
        else:
            text = chunk
        self._buffer += text
        # CRLF and lone CR are both valid line endings; a CR at the very end
        # might be the first half of a CRLF, so hold it back.
        if self._buffer.endswith("\r"):
            pending, self._buffer = self._buffer[:-1], "\r"
        else:
            pending, self._buffer = self._buffer, ""
        pending = pending.replace("\r\n", "\n").replace("\r", "\n")
        self._buffer = pending + self._buffer
        return self._drain()

    def _drain(self) -> list[SSEEvent]:
        events = []
        while True:
            boundary = self._buffer.find("\n\n")
            if boundary == -1:
                break
            block, self._buffer = self._buffer[:boundary], self._buffer[boundary + 2 :]
            event = parse_event_block(block)
            if event.event is not None or event.data is not None:
                events.append(event)
        return events

    def flush(self) -> list[SSEEvent]:
        """Emit whatever is left once the stream has ended."""
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        tail = tail.replace("\r\n", "\n").replace("\r", "\n")
        if not tail.strip():
            return []
        event = parse_event_block(tail)
        if event.event is None and event.data is None:
            return []
        return [event]
