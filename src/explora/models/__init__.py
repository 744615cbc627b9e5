"""Data models for Explora."""

from explora.models.content import (
    ContentMetadata,
    ContentPage,
    ContentParagraph,
    ContentSection,
    SectionType,
)
from explora.models.graph import (
    ROOT_NODE_ID,
    Graph,
    GraphEdge,
    GraphNode,
    Importance,
    NodeKind,
    Position,
    ProgressSnapshot,
)
from explora.models.messages import StreamMessage, encode_frame, parse_message
from explora.models.resources import (
    Chapter,
    CheckAttempt,
    MindMap,
    Paragraph,
    SessionContext,
    SourceType,
    Topic,
)

__all__ = [
    "Chapter",
    "CheckAttempt",
    "ContentMetadata",
    "ContentPage",
    "ContentParagraph",
    "ContentSection",
    "Graph",
    "GraphEdge",
    "GraphNode",
    "Importance",
    "MindMap",
    "NodeKind",
    "Paragraph",
    "Position",
    "ProgressSnapshot",
    "ROOT_NODE_ID",
    "SectionType",
    "SessionContext",
    "SourceType",
    "StreamMessage",
    "Topic",
    "encode_frame",
    "parse_message",
]
