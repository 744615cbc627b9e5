"""Tests for the event stream parser."""

from __future__ import annotations

from collections.abc import AsyncIterator

import pytest

from explora.models.messages import (
    AspectsBatchMessage,
    CompleteMessage,
    ConceptsBatchMessage,
    ErrorMessage,
    MetadataMessage,
)
from explora.stream.parser import EventStreamParser, ParserState, parse_stream
from explora.utils.cancellation import CancellationToken

from conftest import photosynthesis_stream, sse_body

METADATA = b'data: {"type":"metadata","data":{"mainTopic":"Photosynthesis"}}\n\n'
COMPLETE = b'data: {"type":"complete"}\n\n'


async def chunks(*parts: bytes) -> AsyncIterator[bytes]:
    for part in parts:
        yield part


class TestEventStreamParser:
    """Tests for EventStreamParser.feed()."""

    def test_single_frame(self) -> None:
        """Test one complete frame yields one typed message."""
        parser = EventStreamParser()
        messages = parser.feed(METADATA)

        assert len(messages) == 1
        assert isinstance(messages[0], MetadataMessage)
        assert messages[0].data.main_topic == "Photosynthesis"
        assert parser.state == ParserState.MESSAGE_READY

    def test_frame_split_across_chunks(self) -> None:
        """Test a frame cut at an arbitrary byte is reassembled."""
        parser = EventStreamParser()

        assert parser.feed(METADATA[:17]) == []
        assert parser.state == ParserState.BUFFERING
        messages = parser.feed(METADATA[17:])

        assert len(messages) == 1
        assert messages[0].data.main_topic == "Photosynthesis"

    def test_every_split_point(self) -> None:
        """Test splitting the whole stream at any byte gives the same messages."""
        body = sse_body(*photosynthesis_stream())
        expected = EventStreamParser().feed(body)

        for cut in range(1, len(body)):
            parser = EventStreamParser()
            messages = parser.feed(body[:cut]) + parser.feed(body[cut:])
            assert messages == expected

    def test_multibyte_character_split(self) -> None:
        """Test a UTF-8 character split between chunks survives."""
        frame = 'data: {"type":"metadata","data":{"mainTopic":"Fotosynthese ☀"}}\n\n'.encode()
        cut = frame.index("☀".encode()) + 1
        parser = EventStreamParser()

        messages = parser.feed(frame[:cut]) + parser.feed(frame[cut:])

        assert messages[0].data.main_topic == "Fotosynthese ☀"

    def test_crlf_delimiters(self) -> None:
        """Test CRLF-delimited frames are accepted."""
        parser = EventStreamParser()
        messages = parser.feed(METADATA.replace(b"\n", b"\r\n"))
        assert len(messages) == 1

    def test_malformed_frame_skipped(self) -> None:
        """Test bad JSON is logged and skipped; later frames still parse."""
        parser = EventStreamParser()
        messages = parser.feed(b"data: {not json\n\n" + METADATA)

        assert len(messages) == 1
        assert isinstance(messages[0], MetadataMessage)
        assert len(parser.errors) == 1
        assert parser.errors[0].frame == "{not json"

    def test_unknown_type_rejected(self) -> None:
        """Test an unknown message type is treated as a malformed frame."""
        parser = EventStreamParser()
        messages = parser.feed(b'data: {"type":"surprise","data":{}}\n\n' + COMPLETE)

        assert [m.type for m in messages] == ["complete"]
        assert len(parser.errors) == 1

    def test_comments_and_other_fields_ignored(self) -> None:
        """Test comment and event lines do not produce messages."""
        parser = EventStreamParser()
        messages = parser.feed(b": keep-alive\n\nevent: update\n" + METADATA)
        assert len(messages) == 1

    def test_terminal_complete_closes(self) -> None:
        """Test nothing after complete is parsed."""
        parser = EventStreamParser()
        messages = parser.feed(COMPLETE + METADATA)

        assert [m.type for m in messages] == ["complete"]
        assert parser.is_closed
        assert isinstance(parser.terminal, CompleteMessage)
        assert parser.feed(METADATA) == []

    def test_terminal_error(self) -> None:
        """Test an error frame is terminal and exposes its reason."""
        parser = EventStreamParser()
        messages = parser.feed(b'data: {"type":"error","data":{"message":"Failed to analyze topic"}}\n\n')

        assert isinstance(messages[0], ErrorMessage)
        assert messages[0].reason == "Failed to analyze topic"
        assert parser.is_closed

    def test_legacy_error_field(self) -> None:
        """Test errors carried in a top-level error field."""
        parser = EventStreamParser()
        messages = parser.feed(b'data: {"type":"error","error":"quota exceeded"}\n\n')
        assert messages[0].reason == "quota exceeded"

    def test_concepts_batch_alias(self) -> None:
        """Test concepts_batch carries its parent id."""
        parser = EventStreamParser()
        frame = b'data: {"type":"concepts_batch","data":{"parentId":"n1","concepts":[{"name":"A"}]}}\n\n'
        messages = parser.feed(frame)

        assert isinstance(messages[0], ConceptsBatchMessage)
        assert messages[0].data.parent_id == "n1"

    def test_concepts_batch_bare_list_for_root(self) -> None:
        """Test a bare concept list, as URL analysis sends it, belongs to the root."""
        parser = EventStreamParser()
        frame = b'data: {"type":"concepts_batch","data":[{"name":"A"},{"name":"B"}]}\n\n'
        messages = parser.feed(frame)

        assert isinstance(messages[0], ConceptsBatchMessage)
        assert messages[0].data.parent_id == "main"
        assert [c.name for c in messages[0].data.concepts] == ["A", "B"]

    def test_metadata_summary(self) -> None:
        """Test URL metadata summary becomes the description."""
        parser = EventStreamParser()
        frame = b'data: {"type":"metadata","data":{"title":"Content from example.com","summary":"Leaves"}}\n\n'
        data = parser.feed(frame)[0].data

        assert data.label == "Content from example.com"
        assert data.description == "Leaves"

    def test_close_flushes_unterminated_frame(self) -> None:
        """Test a final frame without the blank line is parsed on close."""
        parser = EventStreamParser()
        assert parser.feed(COMPLETE.rstrip(b"\n")) == []

        messages = parser.close()

        assert [m.type for m in messages] == ["complete"]
        assert parser.is_closed


class TestParseStream:
    """Tests for the async parse_stream() helper."""

    @pytest.mark.asyncio
    async def test_yields_in_order(self) -> None:
        """Test messages come out in arrival order."""
        body = sse_body(*photosynthesis_stream())
        types = [m.type async for m in parse_stream(chunks(body[:40], body[40:90], body[90:]))]
        assert types == ["metadata", "aspects_batch", "complete"]

    @pytest.mark.asyncio
    async def test_stops_at_terminal(self) -> None:
        """Test chunks after the terminal message are not consumed."""
        consumed: list[bytes] = []

        async def source() -> AsyncIterator[bytes]:
            for part in (COMPLETE, METADATA, METADATA):
                consumed.append(part)
                yield part

        messages = [m async for m in parse_stream(source())]

        assert [m.type for m in messages] == ["complete"]
        assert consumed == [COMPLETE]

    @pytest.mark.asyncio
    async def test_cancellation_stops_consumption(self) -> None:
        """Test no chunk is consumed once the token is cancelled."""
        token = CancellationToken()
        consumed: list[bytes] = []

        async def source() -> AsyncIterator[bytes]:
            for part in (METADATA, sse_body(photosynthesis_stream()[1]), COMPLETE):
                consumed.append(part)
                yield part

        seen = []
        async for message in parse_stream(source(), token):
            seen.append(message)
            token.cancel("user left")

        assert len(seen) == 1
        assert isinstance(seen[0], MetadataMessage)
        assert len(consumed) == 2
        assert not any(isinstance(m, AspectsBatchMessage) for m in seen)
