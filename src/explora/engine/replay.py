"""Replay stored graphs and content pages as live-looking streams.

The messages produced here have exactly the shapes the backend sends, so
a replayed run goes through the same builder and callbacks as a live one.
Pacing is synthetic and capped; pass ``sleep`` to make it instant.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass

from explora.models.content import ContentPage
from explora.models.graph import ROOT_NODE_ID, Graph, GraphNode
from explora.models.messages import (
    AspectsBatchMessage,
    CompleteMessage,
    ConceptItem,
    ConceptsBatchMessage,
    ConceptsBatchPayload,
    MetadataMessage,
    MetadataPayload,
    OutlineMessage,
    OutlinePayload,
    ParagraphChunkMessage,
    ParagraphChunkPayload,
    ParagraphCompleteMessage,
    ParagraphMessage,
    StoredPlacement,
    StreamMessage,
)
from explora.utils.config import Settings, get_settings

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class ReplayDelays:
    """Pauses between replayed messages, in seconds."""

    batch: float
    paragraph: float
    word: float

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> ReplayDelays:
        settings = settings or get_settings()
        cap = settings.replay_max_delay_ms
        return cls(
            batch=min(settings.replay_batch_delay_ms, cap) / 1000,
            paragraph=min(settings.replay_paragraph_delay_ms, cap) / 1000,
            word=min(settings.replay_word_delay_ms, cap) / 1000,
        )

    @classmethod
    def none(cls) -> ReplayDelays:
        return cls(batch=0.0, paragraph=0.0, word=0.0)


def concept_item(node: GraphNode, source_handle: str, target_handle: str) -> ConceptItem:
    """Turn a stored node back into a batch item that pins its placement."""
    return ConceptItem(
        name=node.label,
        description=node.description,
        importance=node.importance,
        connections=list(node.connections),
        difficulty=node.difficulty,
        placement=StoredPlacement(
            id=node.id,
            position=node.position,
            source_handle=source_handle,
            target_handle=target_handle,
        ),
    )


def graph_batches(graph: Graph, batch_size: int) -> list[StreamMessage]:
    """Group a stored graph into batches, parents before children.

    Children keep their stored order within each parent. Root children
    become ``aspects_batch`` messages; deeper levels ``concepts_batch``.
    """
    if batch_size <= 0:
        raise ValueError(f"Batch size must be positive, got {batch_size}")

    edges = {e.target: e for e in graph.edges}
    messages: list[StreamMessage] = []
    queue = [ROOT_NODE_ID]
    visited = {ROOT_NODE_ID}

    while queue:
        parent_id = queue.pop(0)
        children = [n for n in graph.children_of(parent_id) if n.id not in visited]
        for child in children:
            visited.add(child.id)
            queue.append(child.id)

        for start in range(0, len(children), batch_size):
            items = []
            for child in children[start : start + batch_size]:
                edge = edges.get(child.id)
                if edge is not None:
                    items.append(concept_item(child, edge.source_handle, edge.target_handle))
                else:
                    items.append(concept_item(child, "right", "target-left"))

            if parent_id == ROOT_NODE_ID:
                messages.append(AspectsBatchMessage(data=items))
            else:
                messages.append(
                    ConceptsBatchMessage(
                        data=ConceptsBatchPayload(parent_id=parent_id, concepts=items)
                    )
                )

    orphans = [n for n in graph.nodes if n.id not in visited]
    if orphans:
        logger.warning(f"Replay skipped {len(orphans)} nodes not reachable from the root")
    return messages


async def replay_graph(
    graph: Graph,
    topic: str | None = None,
    batch_size: int | None = None,
    sleep: Sleep = asyncio.sleep,
    delays: ReplayDelays | None = None,
) -> AsyncIterator[StreamMessage]:
    """Yield ``metadata``, the stored batches, then ``complete``."""
    settings = get_settings()
    batch_size = batch_size or settings.aspects_batch_size
    delays = delays or ReplayDelays.from_settings(settings)

    root = graph.get_node(ROOT_NODE_ID)
    yield MetadataMessage(
        data=MetadataPayload(
            main_topic=root.label if root else topic,
            description=root.description if root else "",
            difficulty=root.difficulty if root else None,
            estimated_time=root.estimated_time if root else None,
            source_url=root.source_url if root else None,
        )
    )

    for message in graph_batches(graph, batch_size):
        await sleep(delays.batch)
        yield message

    yield CompleteMessage()


async def replay_content(
    page: ContentPage,
    stream_words: bool = True,
    sleep: Sleep = asyncio.sleep,
    delays: ReplayDelays | None = None,
) -> AsyncIterator[StreamMessage]:
    """Yield a cached page as metadata, per-section outline and paragraphs, then complete."""
    delays = delays or ReplayDelays.from_settings()

    metadata = page.metadata.model_dump(by_alias=True, exclude_none=True)
    yield MetadataMessage(data=MetadataPayload.model_validate(metadata))

    for section in sorted(page.sections, key=lambda s: s.order):
        stubs = [p.model_copy(update={"content": "", "is_loaded": False}) for p in section.paragraphs]
        yield OutlineMessage(
            data=OutlinePayload(sections=[section.model_copy(update={"paragraphs": stubs})])
        )

        for paragraph in sorted(section.paragraphs, key=lambda p: p.order):
            await sleep(delays.paragraph)
            yield ParagraphMessage(
                data=paragraph.model_copy(update={"content": "", "is_loaded": False})
            )

            if stream_words and paragraph.content:
                words = paragraph.content.split(" ")
                for count in range(1, len(words) + 1):
                    await sleep(delays.word)
                    yield ParagraphChunkMessage(
                        data=ParagraphChunkPayload(
                            id=paragraph.id, content=" ".join(words[:count])
                        )
                    )

            yield ParagraphCompleteMessage(data=paragraph.model_copy(update={"is_loaded": True}))

    yield CompleteMessage()
