"""Persisted resource records and the per-request session context."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SourceType(str, Enum):
    """Where a topic came from."""

    TOPIC = "topic"
    URL = "url"


class SessionContext(BaseModel):
    """Explicit session state passed through the pipeline."""

    session_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    language: str = "en"


class Resource(BaseModel):
    """A record in the external store.

    ``kind`` names the collection. ``slug_scope`` returns the scope in which
    ``slug`` must be unique, or None when the record has no slug.
    """

    kind: ClassVar[str] = "resource"

    id: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def slug_scope(self) -> str | None:
        return None

    @property
    def slug_value(self) -> str | None:
        return getattr(self, "slug", None)


class Topic(Resource):
    kind: ClassVar[str] = "topic"

    session_id: str
    slug: str
    title: str
    source_type: SourceType = SourceType.TOPIC
    source_url: str | None = None
    language: str = "en"
    mind_map_data: dict[str, Any] | None = None

    @property
    def slug_scope(self) -> str | None:
        return self.session_id


MIND_MAP_SCOPE = "mind_maps"


class MindMap(Resource):
    """Stored graph for a topic. At most one ``live`` map per topic."""

    kind: ClassVar[str] = "mind_map"

    topic_id: str
    slug: str
    nodes: list[dict[str, Any]] = Field(default_factory=list)
    edges: list[dict[str, Any]] = Field(default_factory=list)
    layout_data: dict[str, Any] | None = None
    live: bool = True

    @property
    def slug_scope(self) -> str | None:
        return MIND_MAP_SCOPE


class Chapter(Resource):
    kind: ClassVar[str] = "chapter"

    topic_id: str
    session_id: str
    index: int
    title: str
    description: str = ""


class Paragraph(Resource):
    kind: ClassVar[str] = "paragraph"

    topic_id: str
    chapter_id: str
    session_id: str
    index: int
    title: str = ""
    content: str = ""
    summary: str | None = None
    is_generated: bool = False
    generated_at: datetime | None = None


class CheckAttempt(Resource):
    """A chapter check. Ids carry a timestamp so attempts stay historical."""

    kind: ClassVar[str] = "check"

    topic_id: str
    chapter_id: str
    session_id: str
    score: float = 0.0
    questions: list[dict[str, Any]] = Field(default_factory=list)
    answers: list[dict[str, Any]] = Field(default_factory=list)
    feedback: dict[str, Any] | None = None


RESOURCE_TYPES: dict[str, type[Resource]] = {
    cls.kind: cls for cls in (Topic, MindMap, Chapter, Paragraph, CheckAttempt)
}
