"""Event stream parsing and the backend stream client."""

from explora.stream.client import GenerationClient
from explora.stream.parser import EventStreamParser, ParserState, parse_stream

__all__ = ["EventStreamParser", "GenerationClient", "ParserState", "parse_stream"]
