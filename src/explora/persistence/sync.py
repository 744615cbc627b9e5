"""Persistence synchronizer: idempotent writes of topics and mind maps.

Snapshots arrive many times per run. The synchronizer turns them into
at most one live mind map per topic: the first write creates the map,
every later write updates it. Inserts that lose a race re-read and
update instead of duplicating.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from explora.errors import DuplicateKeyError, PersistenceConflict
from explora.identifiers.resolver import (
    derive_chapter_id,
    derive_check_id,
    derive_mind_map_slug,
    derive_paragraph_id,
    derive_topic_id,
    normalize_title,
    unique_slug_in_scope,
)
from explora.models.graph import GraphEdge, GraphNode, ProgressSnapshot
from explora.models.resources import (
    MIND_MAP_SCOPE,
    Chapter,
    CheckAttempt,
    MindMap,
    Paragraph,
    SessionContext,
    SourceType,
    Topic,
    utcnow,
)
from explora.persistence.store import ResourceStore
from explora.utils.config import get_settings

logger = logging.getLogger(__name__)

R = TypeVar("R")


@dataclass
class GetOrCreateResult(Generic[R]):
    """A resource and whether it existed before the call."""

    resource: R
    is_existing: bool


def graph_payload(snapshot: ProgressSnapshot) -> dict[str, Any]:
    """Serialize a snapshot into the stored mind map columns."""
    return {
        "nodes": [node.to_wire() for node in snapshot.nodes],
        "edges": [edge.to_wire() for edge in snapshot.edges],
        "layout_data": {
            "isComplete": snapshot.is_complete,
            "currentStep": snapshot.current_step,
            "nodeCount": len(snapshot.nodes),
            "edgeCount": len(snapshot.edges),
        },
    }


def snapshot_from_mind_map(mind_map: MindMap) -> ProgressSnapshot:
    layout = mind_map.layout_data or {}
    return ProgressSnapshot(
        nodes=[GraphNode.model_validate(n) for n in mind_map.nodes],
        edges=[GraphEdge.model_validate(e) for e in mind_map.edges],
        is_complete=bool(layout.get("isComplete", False)),
        current_step=layout.get("currentStep", ""),
    )


class PersistenceSynchronizer:
    """Writes topics, mind maps and reading progress to a ``ResourceStore``."""

    def __init__(self, store: ResourceStore, max_retries: int | None = None):
        settings = get_settings()
        self.store = store
        self.max_retries = (
            max_retries if max_retries is not None else settings.persistence_max_retries
        )
        # topic id -> live mind map id seen earlier in this process
        self._live_maps: dict[str, str] = {}

    # ==================== Topics ====================

    async def find_topic(self, ctx: SessionContext, title: str) -> Topic | None:
        wanted = normalize_title(title)
        for topic in await self.store.find(Topic.kind, session_id=ctx.session_id):
            if normalize_title(topic.title) == wanted:
                return topic
        return None

    async def get_or_create_topic(
        self,
        ctx: SessionContext,
        title: str,
        source_type: SourceType = SourceType.TOPIC,
        source_url: str | None = None,
    ) -> GetOrCreateResult[Topic]:
        """Return the session's topic with this title, creating it once.

        Raises:
            PersistenceConflict: inserts kept colliding after ``max_retries``
        """
        for _ in range(self.max_retries + 1):
            existing = await self.find_topic(ctx, title)
            if existing is not None:
                return GetOrCreateResult(existing, True)

            topic_slug = await unique_slug_in_scope(ctx.session_id, title, self.store.exists)
            topic = Topic(
                id=derive_topic_id(topic_slug, uuid.uuid4().hex),
                session_id=ctx.session_id,
                slug=topic_slug,
                title=title.strip(),
                source_type=source_type,
                source_url=source_url,
                language=ctx.language,
            )
            try:
                created = await self.store.create(topic)
            except DuplicateKeyError as e:
                logger.info(f"Topic insert for '{title}' collided ({e.message}), re-reading")
                continue

            logger.info(f"Created topic {created.id} for '{title}'")
            return GetOrCreateResult(created, False)

        raise PersistenceConflict(
            f"Could not create topic '{title}' after {self.max_retries + 1} attempts",
            {"session_id": ctx.session_id},
        )

    async def finalize_topic(self, topic_id: str, mind_map_id: str) -> Topic:
        """Record on the topic which mind map completed and how big it is."""
        mind_map = await self.store.get(MindMap.kind, mind_map_id)
        if mind_map is None:
            raise KeyError(f"mind_map {mind_map_id} not found")

        data = {
            "mindMapId": mind_map_id,
            "nodeCount": len(mind_map.nodes),
            "edgeCount": len(mind_map.edges),
            "completedAt": utcnow().isoformat(),
        }
        return await self.store.update(Topic.kind, topic_id, {"mind_map_data": data})

    # ==================== Mind maps ====================

    async def get_live_mind_map(self, topic_id: str) -> MindMap | None:
        cached = self._live_maps.get(topic_id)
        if cached is not None:
            mind_map = await self.store.get(MindMap.kind, cached)
            if mind_map is not None and mind_map.live:
                return mind_map

        maps = await self.store.find(MindMap.kind, topic_id=topic_id, live=True)
        if not maps:
            return None
        # Newest wins when a store without the unique index let duplicates in
        mind_map = maps[-1]
        self._live_maps[topic_id] = mind_map.id
        return mind_map

    async def load_snapshot(self, topic_id: str) -> ProgressSnapshot | None:
        mind_map = await self.get_live_mind_map(topic_id)
        return snapshot_from_mind_map(mind_map) if mind_map else None

    async def upsert_graph(
        self,
        topic_id: str,
        snapshot: ProgressSnapshot,
        mind_map_id: str | None = None,
    ) -> MindMap:
        """Write ``snapshot`` as the topic's live mind map.

        Updates the live map when one exists, otherwise creates it. An
        insert that loses a race re-reads and updates the winner.

        Raises:
            KeyError: the topic does not exist
            PersistenceConflict: still colliding after ``max_retries``
        """
        payload = graph_payload(snapshot)

        for attempt in range(self.max_retries + 1):
            existing = None
            if mind_map_id is not None:
                existing = await self.store.get(MindMap.kind, mind_map_id)
            if existing is None:
                existing = await self.get_live_mind_map(topic_id)

            if existing is not None:
                updated = await self.store.update(MindMap.kind, existing.id, payload)
                self._live_maps[topic_id] = updated.id
                return updated

            topic = await self.store.get(Topic.kind, topic_id)
            if topic is None:
                raise KeyError(f"topic {topic_id} not found")

            map_slug = await unique_slug_in_scope(
                MIND_MAP_SCOPE, derive_mind_map_slug(topic.slug), self.store.exists
            )
            mind_map = MindMap(id=uuid.uuid4().hex, topic_id=topic_id, slug=map_slug, **payload)
            try:
                created = await self.store.create(mind_map)
            except DuplicateKeyError as e:
                logger.info(
                    f"Mind map insert for topic {topic_id} collided "
                    f"(attempt {attempt + 1}): {e.message}"
                )
                continue

            self._live_maps[topic_id] = created.id
            logger.info(f"Created mind map {created.id} for topic {topic_id}")
            return created

        raise PersistenceConflict(
            f"Could not write mind map for topic {topic_id} after {self.max_retries + 1} attempts",
            {"topic_id": topic_id},
        )

    async def save_node_expansion(
        self,
        mind_map_id: str,
        node_id: str,
        new_nodes: list[GraphNode],
        new_edges: list[GraphEdge],
    ) -> MindMap:
        """Append an expansion to a stored map, skipping ids already present."""
        mind_map = await self.store.get(MindMap.kind, mind_map_id)
        if mind_map is None:
            raise KeyError(f"mind_map {mind_map_id} not found")

        node_ids = {n["id"] for n in mind_map.nodes}
        edge_ids = {e["id"] for e in mind_map.edges}

        nodes = [
            {**n, "expanded": True} if n["id"] == node_id else n for n in mind_map.nodes
        ]
        nodes += [n.to_wire() for n in new_nodes if n.id not in node_ids]
        edges = list(mind_map.edges) + [e.to_wire() for e in new_edges if e.id not in edge_ids]

        layout = dict(mind_map.layout_data or {})
        layout.update({"nodeCount": len(nodes), "edgeCount": len(edges)})

        logger.info(f"Saved expansion of {node_id}: {len(nodes) - len(node_ids)} new nodes")
        return await self.store.update(
            MindMap.kind, mind_map_id, {"nodes": nodes, "edges": edges, "layout_data": layout}
        )

    # ==================== Chapters and paragraphs ====================

    async def create_chapters(
        self,
        topic: Topic,
        titles: list[str],
        descriptions: list[str] | None = None,
    ) -> list[Chapter]:
        """Create numbered chapters for a topic. Existing ids are left as they are."""
        chapters = []
        for index, title in enumerate(titles, start=1):
            chapter_id = derive_chapter_id(topic.id, index)
            existing = await self.store.get(Chapter.kind, chapter_id)
            if existing is not None:
                chapters.append(existing)
                continue

            chapter = Chapter(
                id=chapter_id,
                topic_id=topic.id,
                session_id=topic.session_id,
                index=index,
                title=title,
                description=descriptions[index - 1] if descriptions and index <= len(descriptions) else "",
            )
            try:
                chapters.append(await self.store.create(chapter))
            except DuplicateKeyError:
                chapters.append(await self.store.get(Chapter.kind, chapter_id))
        return chapters

    async def create_paragraph_stubs(
        self,
        chapter: Chapter,
        count: int,
        summaries: list[str] | None = None,
    ) -> list[Paragraph]:
        """Create ``count`` empty paragraphs for a chapter, 1-based."""
        paragraphs = []
        for index in range(1, count + 1):
            paragraph_id = derive_paragraph_id(chapter.id, index)
            existing = await self.store.get(Paragraph.kind, paragraph_id)
            if existing is not None:
                paragraphs.append(existing)
                continue

            stub = Paragraph(
                id=paragraph_id,
                topic_id=chapter.topic_id,
                chapter_id=chapter.id,
                session_id=chapter.session_id,
                index=index,
                summary=summaries[index - 1] if summaries and index <= len(summaries) else None,
            )
            try:
                paragraphs.append(await self.store.create(stub))
            except DuplicateKeyError:
                paragraphs.append(await self.store.get(Paragraph.kind, paragraph_id))
        return paragraphs

    async def save_paragraph_content(
        self, paragraph_id: str, content: str, title: str | None = None
    ) -> Paragraph:
        patch: dict[str, Any] = {
            "content": content,
            "is_generated": True,
            "generated_at": utcnow(),
        }
        if title is not None:
            patch["title"] = title
        return await self.store.update(Paragraph.kind, paragraph_id, patch)

    async def save_check_attempt(
        self,
        chapter: Chapter,
        score: float,
        questions: list[dict[str, Any]] | None = None,
        answers: list[dict[str, Any]] | None = None,
        feedback: dict[str, Any] | None = None,
        timestamp_ms: int | None = None,
    ) -> CheckAttempt:
        """Store one attempt. Every call creates a new record."""
        attempt = CheckAttempt(
            id=derive_check_id(chapter.id, timestamp_ms),
            topic_id=chapter.topic_id,
            chapter_id=chapter.id,
            session_id=chapter.session_id,
            score=score,
            questions=questions or [],
            answers=answers or [],
            feedback=feedback,
        )
        return await self.store.create(attempt)
