"""Event stream parser for ``data: <json>\\n\\n`` framed responses.

The parser is a small state machine over a text buffer::

    IDLE -> BUFFERING -> (MESSAGE_READY | BUFFERING)
                     \\-> CLOSED  (terminal message or end of stream)

Chunks may split a frame, a line, or a multi-byte character anywhere.
A malformed frame is dropped on its own; it never disturbs the buffer.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterator
from enum import Enum

from pydantic import ValidationError

from explora.errors import FrameParseError
from explora.models.messages import StreamMessage, is_terminal, parse_message
from explora.utils.cancellation import CancellationToken, is_cancelled

logger = logging.getLogger(__name__)

FRAME_DELIMITER = "\n\n"
DATA_FIELD = "data:"


class ParserState(str, Enum):
    IDLE = "idle"
    BUFFERING = "buffering"
    MESSAGE_READY = "message_ready"
    CLOSED = "closed"


class EventStreamParser:
    """Incremental parser turning raw chunks into typed messages."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.state = ParserState.IDLE
        self.terminal: StreamMessage | None = None
        self.errors: list[FrameParseError] = []
        self.messages_parsed = 0

    @property
    def is_closed(self) -> bool:
        return self.state == ParserState.CLOSED

    @property
    def buffered(self) -> str:
        return self._buffer

    def feed(self, chunk: bytes | str) -> list[StreamMessage]:
        """Append a chunk and return every message it completed."""
        if self.is_closed:
            return []

        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        self._buffer = (self._buffer + text).replace("\r\n", "\n")

        frames = self._buffer.split(FRAME_DELIMITER)
        self._buffer = frames.pop()
        self.state = ParserState.BUFFERING if self._buffer else ParserState.IDLE

        return self._consume(frames)

    def close(self) -> list[StreamMessage]:
        """Signal end of stream; parse whatever complete frame remains."""
        if self.is_closed:
            return []

        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        messages = self._consume([tail]) if tail.strip() else []
        self.state = ParserState.CLOSED
        return messages

    def _consume(self, frames: list[str]) -> list[StreamMessage]:
        messages: list[StreamMessage] = []
        for frame in frames:
            try:
                message = self._parse_frame(frame)
            except FrameParseError as e:
                logger.warning(f"Skipping malformed stream frame: {e.message}")
                self.errors.append(e)
                continue

            if message is None:
                continue

            messages.append(message)
            self.messages_parsed += 1
            self.state = ParserState.MESSAGE_READY

            if is_terminal(message):
                self.terminal = message
                self.state = ParserState.CLOSED
                self._buffer = ""
                break

        return messages

    def _parse_frame(self, frame: str) -> StreamMessage | None:
        data_lines = []
        for line in frame.split("\n"):
            if line.startswith(DATA_FIELD):
                value = line[len(DATA_FIELD):]
                data_lines.append(value[1:] if value.startswith(" ") else value)
            # comments (":") and other fields (event/id/retry) carry nothing for us

        if not data_lines:
            return None

        payload = "\n".join(data_lines)
        try:
            return parse_message(payload)
        except json.JSONDecodeError as e:
            raise FrameParseError(f"invalid JSON ({e.msg})", payload) from e
        except ValidationError as e:
            raise FrameParseError(
                f"payload does not match any message type ({e.error_count()} errors)",
                payload,
            ) from e


async def parse_stream(
    chunks: AsyncIterator[bytes],
    cancel: CancellationToken | None = None,
) -> AsyncIterator[StreamMessage]:
    """Yield messages from an async byte stream in arrival order.

    Stops at the first terminal message, at end of stream, or as soon as
    ``cancel`` is raised.
    """
    parser = EventStreamParser()

    async for chunk in chunks:
        if is_cancelled(cancel):
            logger.info("Stream parsing cancelled")
            return

        for message in parser.feed(chunk):
            if is_cancelled(cancel):
                logger.info("Stream parsing cancelled")
                return
            yield message

        if parser.is_closed:
            return

    for message in parser.close():
        if is_cancelled(cancel):
            return
        yield message
