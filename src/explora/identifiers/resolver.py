"""Deterministic identifiers and slugs.

Chapter, paragraph and mind-map identifiers are pure functions of their
parent id and index, so re-deriving them always yields the same id. Check
ids carry a millisecond timestamp so attempts stay historical.

Slug uniqueness is checked against a caller-supplied ``exists`` callable.
The search is bounded; under races the final insert is re-validated by the
persistence layer.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Awaitable, Callable

from explora.errors import ResolverExhausted
from explora.models.graph import Position
from explora.utils.config import get_settings

logger = logging.getLogger(__name__)

ExistsCheck = Callable[[str, str], Awaitable[bool]]

_INVALID_CHARS = re.compile(r"[^a-z0-9\s-]")
_WHITESPACE = re.compile(r"\s+")
_HYPHENS = re.compile(r"-+")

FALLBACK_SLUG = "topic"


def slug(title: str) -> str:
    """Convert a title into a URL-safe slug.

    >>> slug("Het Romeinse Keizerrijk")
    'het-romeinse-keizerrijk'
    >>> slug("  A///B  ")
    'ab'
    """
    value = title.strip().lower()
    value = _INVALID_CHARS.sub("", value)
    value = _WHITESPACE.sub("-", value)
    value = _HYPHENS.sub("-", value)
    return value.strip("-")


def normalize_title(title: str) -> str:
    """Case- and whitespace-insensitive form of a title, used for lookups.

    Unlike ``slug`` it keeps punctuation, so ``C`` and ``C++`` differ.
    """
    return " ".join(title.split()).casefold()


def _timestamp_ms() -> int:
    return int(time.time() * 1000)


async def unique_slug_in_scope(
    scope: str,
    title: str,
    exists: ExistsCheck,
    max_attempts: int | None = None,
) -> str:
    """Find a slug for ``title`` that ``exists`` does not report as taken.

    Tries the base slug, then ``-2``, ``-3``, ... up to ``max_attempts``
    candidates, then a single timestamp-suffixed candidate.

    Raises:
        ResolverExhausted: every candidate was taken
    """
    if max_attempts is None:
        max_attempts = get_settings().slug_max_attempts

    base = slug(title) or FALLBACK_SLUG
    candidate = base
    for attempt in range(1, max_attempts + 1):
        if attempt > 1:
            candidate = f"{base}-{attempt}"
        if not await exists(scope, candidate):
            return candidate

    candidate = f"{base}-{_timestamp_ms()}"
    if not await exists(scope, candidate):
        logger.info(f"Slug '{base}' crowded in scope {scope}, using {candidate}")
        return candidate

    raise ResolverExhausted(
        f"No free slug for '{title}' in scope {scope} after {max_attempts + 1} attempts",
        {"scope": scope, "base": base},
    )


def derive_topic_id(topic_slug: str, token: str) -> str:
    """Globally addressable topic id: session-unique slug plus a short token."""
    return f"{topic_slug}-{token[:8]}"


def derive_chapter_id(topic_slug: str, index: int) -> str:
    return f"{topic_slug}-chapter-{index}"


def derive_paragraph_id(chapter_id: str, index: int) -> str:
    return f"{chapter_id}-paragraph-{index}"


def derive_check_id(chapter_id: str, timestamp_ms: int | None = None) -> str:
    if timestamp_ms is None:
        timestamp_ms = _timestamp_ms()
    return f"{chapter_id}-check-{timestamp_ms}"


def derive_mind_map_slug(topic_slug: str) -> str:
    return f"{topic_slug}-mindmap"


def extract_topic_slug(resource_id: str) -> str:
    """Recover the topic part of a chapter, paragraph or check id.

    Returns ``resource_id`` unchanged when it has no ``-chapter-`` segment.
    """
    marker = resource_id.rfind("-chapter-")
    if marker == -1:
        return resource_id
    return resource_id[:marker]


def concept_node_id(label: str, position: Position) -> str:
    """Node id from label plus rounded position.

    Two same-label siblings in one batch sit at different angles, so the
    position suffix keeps their ids apart.
    """
    base = slug(label) or "concept"
    return f"{base}-{int(round(position.x))}-{int(round(position.y))}"
