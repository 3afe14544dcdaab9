"""Frame parsing for streamed provider bodies.

Two framings are supported: server-sent events (``event:``/``data:`` blocks
separated by blank lines) and newline-delimited JSON. The same incremental
parser handles a body that arrives line by line and a body that arrives all
at once, so both produce identical frames.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from dataclasses import dataclass
import re
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from collections.abc import AsyncIterable

Framing = Literal["sse", "ndjson"]

DONE_SENTINEL = "[DONE]"

# Same terminators httpx recognises when iterating lines.
_LINE_BREAK = re.compile(r"\r\n|\r|\n")


@dataclass(frozen=True)
class Frame:
    """One event/data pair from a stream."""

    data: str
    event: str | None = None


class FrameParser:
    """Incremental line-oriented frame parser.

    Feed lines without their terminators; collect frames from the return
    values and from :meth:`flush` at end of input. Once the ``[DONE]``
    sentinel is seen, :attr:`done` is set and further input is ignored.
    """

    def __init__(self, framing: Framing = "sse") -> None:
        self.framing = framing
        self.done = False
        self._event: str | None = None
        self._data: list[str] = []
        # Lines outside SSE field syntax, e.g. a raw JSON error body.
        self._bare: list[str] = []

    def feed_line(self, line: str) -> list[Frame]:
        if self.done:
            return []
        line = line.rstrip("\r\n")
        if self.framing == "ndjson":
            return self._feed_ndjson(line)
        return self._feed_sse(line)

    def flush(self) -> list[Frame]:
        """Dispatch whatever is pending at end of input."""
        if self.done:
            return []
        return self._dispatch()

    def _feed_ndjson(self, line: str) -> list[Frame]:
        stripped = line.strip()
        if not stripped:
            return []
        if stripped == DONE_SENTINEL:
            self.done = True
            return []
        return [Frame(data=stripped)]

    def _feed_sse(self, line: str) -> list[Frame]:
        if not line.strip():
            return self._dispatch()
        if line.startswith(":"):
            return []

        name, sep, value = line.partition(":")
        if sep and name in ("event", "data", "id", "retry"):
            frames = self._dispatch_bare()
            if value.startswith(" "):
                value = value[1:]
            if name == "event":
                self._event = value.strip() or None
            elif name == "data":
                self._data.append(value)
            return frames

        frames = self._dispatch_fields()
        self._bare.append(line)
        return frames

    def _dispatch(self) -> list[Frame]:
        return self._dispatch_fields() + self._dispatch_bare()

    def _dispatch_fields(self) -> list[Frame]:
        event, data = self._event, self._data
        self._event, self._data = None, []
        if not data:
            return []
        return self._emit("\n".join(data), event)

    def _dispatch_bare(self) -> list[Frame]:
        bare = self._bare
        self._bare = []
        if not bare:
            return []
        return self._emit("\n".join(bare).strip(), None)

    def _emit(self, data: str, event: str | None) -> list[Frame]:
        if data.strip() == DONE_SENTINEL:
            self.done = True
            return []
        return [Frame(data=data, event=event)]


async def aiter_frames(
    lines: AsyncIterable[str], framing: Framing = "sse"
) -> AsyncGenerator[Frame, None]:
    """Yield frames from an async iterable of lines as they complete.

    When *lines* is an async generator it is closed as soon as this
    generator finishes or is closed, even if lines remain unread.
    """
    parser = FrameParser(framing)
    try:
        async for line in lines:
            for frame in parser.feed_line(line):
                yield frame
            if parser.done:
                return
        for frame in parser.flush():
            yield frame
    finally:
        if isinstance(lines, AsyncGenerator):
            await lines.aclose()


def parse_frames(body: bytes | str, framing: Framing = "sse") -> list[Frame]:
    """Split a complete body into frames (batch delivery)."""
    text = body.decode("utf-8", "replace") if isinstance(body, bytes) else body
    parser = FrameParser(framing)
    frames: list[Frame] = []
    for line in _LINE_BREAK.split(text):
        frames.extend(parser.feed_line(line))
        if parser.done:
            return frames
    frames.extend(parser.flush())
    return frames
