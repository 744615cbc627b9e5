"""Typed protocol messages exchanged with the generation backend.

The wire format is a sequence of ``data: <json>\\n\\n`` frames. Each JSON
object carries a ``type`` discriminator and a variant-specific payload.
Unknown ``type`` values fail validation instead of being passed through.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal, Union

from pydantic import ConfigDict, Field, TypeAdapter, field_validator, model_validator

from explora.models.base import WireModel
from explora.models.content import ContentParagraph, ContentSection
from explora.models.graph import ROOT_NODE_ID, Importance, Position


class MetadataPayload(WireModel):
    """Root-level metadata.

    Topic analysis sends ``mainTopic``; URL analysis sends ``title`` and
    ``summary``; content generation sends the full content header
    (``title``, ``sectionTitles``, ...), kept as extras.
    """

    model_config = ConfigDict(extra="allow")

    main_topic: str | None = None
    title: str | None = None
    topic: str | None = None
    description: str = ""
    difficulty: str | None = None
    estimated_time: str | None = None
    source_url: str | None = None
    summary: str | None = None

    @model_validator(mode="after")
    def _summary_as_description(self) -> MetadataPayload:
        if not self.description and self.summary:
            self.description = self.summary
        return self

    @property
    def label(self) -> str | None:
        return self.main_topic or self.title or self.topic


class StoredPlacement(WireModel):
    """Id and geometry of a node that was already laid out once.

    Only replayed batches carry this; live batches are laid out on arrival.
    """

    id: str
    position: Position
    source_handle: str = "right"
    target_handle: str = "target-left"


class ConceptItem(WireModel):
    """One sibling concept inside a batch."""

    name: str
    description: str = ""
    importance: Importance | None = None
    connections: list[str] = Field(default_factory=list)
    difficulty: str | None = None
    examples: list[str] = Field(default_factory=list)
    placement: StoredPlacement | None = None


class ConceptsBatchPayload(WireModel):
    """Sibling concepts to attach under ``parent_id``."""

    parent_id: str = ROOT_NODE_ID
    concepts: list[ConceptItem] = Field(default_factory=list)


class SubConcept(WireModel):
    """A sub-concept in the JSON answer of the expand endpoint."""

    name: str
    description: str = ""
    examples: list[str] = Field(default_factory=list)
    related_to: list[str] = Field(default_factory=list)
    difficulty: str | None = None

    def to_item(self) -> ConceptItem:
        return ConceptItem(
            name=self.name,
            description=self.description,
            connections=self.related_to,
            difficulty=self.difficulty,
            examples=self.examples,
        )


class ExpansionData(WireModel):
    model_config = ConfigDict(extra="allow")

    concept: str = ""
    sub_concepts: list[SubConcept] = Field(default_factory=list)


class ExpansionResponse(WireModel):
    """Body of ``POST /expand-concept``.

    Success is ``{success: true, data: {...}}``; failures carry ``error``
    and sometimes ``details``.
    """

    success: bool = False
    data: ExpansionData | None = None
    error: str | None = None
    details: Any = None


class OutlinePayload(WireModel):
    sections: list[ContentSection] = Field(default_factory=list)


class ParagraphChunkPayload(WireModel):
    """Accumulated text of a paragraph so far (not a delta)."""

    id: str
    content: str = ""


class ErrorPayload(WireModel):
    message: str = "Unknown streaming error"


class MetadataMessage(WireModel):
    type: Literal["metadata"] = "metadata"
    data: MetadataPayload


class OutlineMessage(WireModel):
    type: Literal["outline"] = "outline"
    data: OutlinePayload


class AspectsBatchMessage(WireModel):
    type: Literal["aspects_batch"] = "aspects_batch"
    data: list[ConceptItem]


class ConceptsBatchMessage(WireModel):
    """Concepts under a parent.

    URL analysis sends a bare list of concepts for the root; expansions
    send ``{parentId, concepts}``.
    """

    type: Literal["concepts_batch"] = "concepts_batch"
    data: ConceptsBatchPayload

    @field_validator("data", mode="before")
    @classmethod
    def _root_batch_from_list(cls, value: Any) -> Any:
        if isinstance(value, list):
            return {"parentId": ROOT_NODE_ID, "concepts": value}
        return value


class ParagraphMessage(WireModel):
    type: Literal["paragraph"] = "paragraph"
    data: ContentParagraph


class ParagraphChunkMessage(WireModel):
    type: Literal["paragraph_chunk"] = "paragraph_chunk"
    data: ParagraphChunkPayload


class ParagraphCompleteMessage(WireModel):
    type: Literal["paragraph_complete"] = "paragraph_complete"
    data: ContentParagraph


class CompleteMessage(WireModel):
    type: Literal["complete"] = "complete"
    data: dict[str, Any] | None = None


class ErrorMessage(WireModel):
    """Backend failure. Older endpoints put the text in ``error``."""

    type: Literal["error"] = "error"
    data: ErrorPayload | None = None
    error: str | None = None

    @property
    def reason(self) -> str:
        if self.data is not None:
            return self.data.message
        return self.error or "Unknown streaming error"


StreamMessage = Annotated[
    Union[
        MetadataMessage,
        OutlineMessage,
        AspectsBatchMessage,
        ConceptsBatchMessage,
        ParagraphMessage,
        ParagraphChunkMessage,
        ParagraphCompleteMessage,
        CompleteMessage,
        ErrorMessage,
    ],
    Field(discriminator="type"),
]

TERMINAL_TYPES = frozenset({"complete", "error"})

_adapter: TypeAdapter[StreamMessage] = TypeAdapter(StreamMessage)


def parse_message(payload: str | bytes | dict[str, Any]) -> StreamMessage:
    """Validate a decoded (or raw JSON) payload into a typed message.

    Raises:
        pydantic.ValidationError: unknown ``type`` or malformed payload
        json.JSONDecodeError: ``payload`` is not valid JSON
    """
    if isinstance(payload, (str, bytes)):
        payload = json.loads(payload)
    return _adapter.validate_python(payload)


def encode_frame(message: StreamMessage) -> bytes:
    """Encode a message as one SSE frame."""
    body = json.dumps(message.to_wire(), ensure_ascii=False, separators=(",", ":"))
    return f"data: {body}\n\n".encode("utf-8")


def is_terminal(message: StreamMessage) -> bool:
    return message.type in TERMINAL_TYPES
