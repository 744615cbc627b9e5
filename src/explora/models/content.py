"""Long-form content models (sections and paragraphs)."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import Field

from explora.models.base import WireModel


class SectionType(str, Enum):
    """Role of a section within a content page."""

    INTRODUCTION = "introduction"
    EXPLANATION = "explanation"
    EXAMPLE = "example"
    APPLICATION = "application"
    SUMMARY = "summary"


class ContentParagraph(WireModel):
    """A paragraph keyed by a stable id."""

    id: str
    title: str = ""
    content: str = ""
    order: int = 0
    section_id: str = ""
    is_loaded: bool = False


class ContentSection(WireModel):
    """A section of a content page."""

    id: str
    title: str = ""
    type: SectionType = SectionType.EXPLANATION
    order: int = 0
    paragraphs: list[ContentParagraph] = Field(default_factory=list)

    def get_paragraph(self, paragraph_id: str) -> ContentParagraph | None:
        for paragraph in self.paragraphs:
            if paragraph.id == paragraph_id:
                return paragraph
        return None


class RelatedTopic(WireModel):
    """A topic related to a content page."""

    name: str
    description: str = ""
    relevance: str = "medium"
    connection_type: str = "related"


class ContentMetadata(WireModel):
    """Header information sent before any section."""

    id: str = ""
    topic: str = ""
    title: str = ""
    description: str = ""
    difficulty: str = "intermediate"
    estimated_read_time: str = ""
    section_titles: list[str] = Field(default_factory=list)
    learning_objectives: list[str] = Field(default_factory=list)
    prerequisites: list[str] = Field(default_factory=list)
    next_steps: list[str] = Field(default_factory=list)
    related_topics: list[RelatedTopic] = Field(default_factory=list)
    last_updated: datetime | None = None


class ContentPage(ContentMetadata):
    """A complete content page: metadata plus ordered sections."""

    sections: list[ContentSection] = Field(default_factory=list)

    @property
    def metadata(self) -> ContentMetadata:
        data = self.model_dump(exclude={"sections"})
        if not data["section_titles"]:
            data["section_titles"] = [s.title for s in self.sections]
        return ContentMetadata(**data)
