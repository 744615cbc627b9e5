"""Identifier and slug resolution."""

from explora.identifiers.resolver import (
    concept_node_id,
    derive_chapter_id,
    derive_check_id,
    derive_mind_map_slug,
    derive_paragraph_id,
    derive_topic_id,
    extract_topic_slug,
    normalize_title,
    slug,
    unique_slug_in_scope,
)

__all__ = [
    "concept_node_id",
    "derive_chapter_id",
    "derive_check_id",
    "derive_mind_map_slug",
    "derive_paragraph_id",
    "derive_topic_id",
    "extract_topic_slug",
    "normalize_title",
    "slug",
    "unique_slug_in_scope",
]
