"""Incremental graph builder.

``reduce`` folds one stream message into a snapshot and returns a new
snapshot. Lists are copied on every step; node objects that did not
change are carried over as-is, so callers can compare nodes by identity.

``GraphBuilder`` wraps the reducer with the run-level state a caller
needs: the current snapshot, the latest metadata, and whether the run
has ended.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from explora.errors import BuilderClosedError, GraphFrozenError
from explora.identifiers.resolver import concept_node_id, normalize_title
from explora.layout.radial import Handles, LayoutPreset, layout_batch
from explora.models.content import ContentPage, ContentParagraph, ContentSection
from explora.models.graph import (
    ROOT_NODE_ID,
    GraphEdge,
    GraphNode,
    NodeKind,
    Position,
    ProgressSnapshot,
    merge_by_id,
)
from explora.models.messages import (
    AspectsBatchMessage,
    CompleteMessage,
    ConceptItem,
    ConceptsBatchMessage,
    ErrorMessage,
    MetadataMessage,
    MetadataPayload,
    OutlineMessage,
    ParagraphChunkMessage,
    ParagraphCompleteMessage,
    ParagraphMessage,
    StreamMessage,
)
from explora.utils.config import Settings, get_settings

logger = logging.getLogger(__name__)

# Nodes at this depth or deeper cannot be expanded further.
MAX_EXPANDABLE_LEVEL = 1


@dataclass(frozen=True)
class BuildContext:
    """Fixed inputs of one build: the topic and the layout geometry."""

    topic: str
    center: Position
    topic_preset: LayoutPreset
    expansion_preset: LayoutPreset
    source_url: str | None = None
    max_root_children: int | None = None

    @classmethod
    def from_settings(
        cls,
        topic: str,
        source_url: str | None = None,
        settings: Settings | None = None,
    ) -> BuildContext:
        settings = settings or get_settings()
        return cls(
            topic=topic,
            center=Position(x=settings.mindmap_center_x, y=settings.mindmap_center_y),
            topic_preset=LayoutPreset.topic_level(settings),
            expansion_preset=LayoutPreset.expansion_level(settings),
            source_url=source_url,
            max_root_children=settings.max_mindmap_nodes,
        )

    def preset_for(self, parent: GraphNode) -> LayoutPreset:
        return self.topic_preset if parent.is_root else self.expansion_preset


def placeholder_root(ctx: BuildContext, label: str | None = None) -> GraphNode:
    """Root shown before the backend's first metadata message."""
    return GraphNode(
        id=ROOT_NODE_ID,
        kind=NodeKind.ROOT,
        position=ctx.center,
        label=label or ctx.topic,
        description=f"Analyzing {ctx.topic}...",
        level=0,
        expandable=False,
        source_url=ctx.source_url,
        is_loading=True,
    )


def _replace_node(nodes: list[GraphNode], node: GraphNode) -> list[GraphNode]:
    return [node if n.id == node.id else n for n in nodes]


def _next_free_id(candidate: str, taken: set[str]) -> str:
    if candidate not in taken:
        return candidate
    suffix = 2
    while f"{candidate}-{suffix}" in taken:
        suffix += 1
    return f"{candidate}-{suffix}"


def build_children(
    parent: GraphNode,
    items: Sequence[ConceptItem],
    ctx: BuildContext,
    taken: set[str],
    placed: int = 0,
) -> tuple[list[GraphNode], list[GraphEdge]]:
    """Create nodes and parent -> child edges for one batch.

    Items that carry a stored placement keep their id and position.
    Otherwise the whole batch is laid out around ``parent``, turned past
    the ``placed`` siblings it already has, and each id is derived from
    label and position. ``taken`` is updated in place.
    """
    placements = layout_batch(
        len(items),
        parent.position,
        ctx.preset_for(parent),
        [item.importance for item in items],
        placed=placed,
    )
    level = parent.level + 1

    nodes: list[GraphNode] = []
    edges: list[GraphEdge] = []
    for item, placement in zip(items, placements):
        if item.placement is not None:
            node_id = item.placement.id
            pos = item.placement.position
            handles = Handles(item.placement.source_handle, item.placement.target_handle)
        else:
            pos = placement.position
            handles = placement.handles
            node_id = _next_free_id(concept_node_id(item.name, pos), taken)
        taken.add(node_id)

        nodes.append(
            GraphNode(
                id=node_id,
                kind=NodeKind.CONCEPT,
                position=pos,
                label=item.name,
                description=item.description,
                level=level,
                expandable=level <= MAX_EXPANDABLE_LEVEL,
                parent_id=parent.id,
                importance=item.importance,
                difficulty=item.difficulty,
                connections=tuple(item.connections),
                source_url=parent.source_url,
            )
        )
        edges.append(GraphEdge.between(parent.id, node_id, *handles))
    return nodes, edges


def _apply_metadata(
    snapshot: ProgressSnapshot, data: MetadataPayload, ctx: BuildContext
) -> ProgressSnapshot:
    root = snapshot.root
    if root is None:
        root = placeholder_root(ctx, data.label)
        nodes = [root, *snapshot.nodes]
    else:
        nodes = list(snapshot.nodes)

    update: dict = {"is_loading": False}
    if data.label:
        update["label"] = data.label
    if data.description:
        update["description"] = data.description
    if data.difficulty is not None:
        update["difficulty"] = data.difficulty
    if data.estimated_time is not None:
        update["estimated_time"] = data.estimated_time
    if data.source_url is not None:
        update["source_url"] = data.source_url

    new_root = root.model_copy(update=update)
    return snapshot.model_copy(
        update={
            "nodes": _replace_node(nodes, new_root),
            "edges": list(snapshot.edges),
            "current_step": f"Mapping {new_root.label}...",
        }
    )


def _apply_batch(
    snapshot: ProgressSnapshot,
    parent_id: str,
    items: Sequence[ConceptItem],
    ctx: BuildContext,
) -> ProgressSnapshot:
    nodes = list(snapshot.nodes)
    parent = snapshot.get_node(parent_id)
    if parent is None and parent_id == ROOT_NODE_ID:
        parent = placeholder_root(ctx)
        nodes.insert(0, parent)
    if parent is None:
        logger.warning(f"Dropping batch of {len(items)} concepts for unknown parent {parent_id}")
        return snapshot.model_copy(update={"nodes": nodes, "edges": list(snapshot.edges)})

    if parent.is_root and ctx.max_root_children is not None:
        room = ctx.max_root_children - len(snapshot.graph.children_of(parent.id))
        if room < len(items):
            logger.warning(
                f"Root already has {ctx.max_root_children - room} concepts, "
                f"keeping {max(room, 0)} of {len(items)}"
            )
            items = items[: max(room, 0)]

    taken = {n.id for n in nodes}
    placed = len(snapshot.graph.children_of(parent.id))
    children, edges = build_children(parent, items, ctx, taken, placed=placed)

    if not parent.is_root and children and not parent.expanded:
        nodes = _replace_node(nodes, parent.model_copy(update={"expanded": True}))

    return snapshot.model_copy(
        update={
            "nodes": merge_by_id(nodes, children),
            "edges": merge_by_id(list(snapshot.edges), edges),
            "current_step": f"Added {len(children)} concepts to {parent.label}",
        }
    )


def _merge_sections(
    sections: list[ContentSection], incoming: Sequence[ContentSection]
) -> list[ContentSection]:
    existing = {s.id: s for s in sections}
    merged = []
    for section in incoming:
        previous = existing.get(section.id)
        if previous is not None:
            section = section.model_copy(
                update={"paragraphs": _merge_outline_paragraphs(previous.paragraphs, section.paragraphs)}
            )
        merged.append(section)
    return merge_by_id(sections, merged)


def _merge_outline_paragraphs(
    paragraphs: list[ContentParagraph], stubs: Sequence[ContentParagraph]
) -> list[ContentParagraph]:
    # Outlines are cumulative and carry stubs; streamed text stays
    known = {p.id: p for p in paragraphs}
    updates = []
    for stub in stubs:
        current = known.get(stub.id)
        if current is None:
            updates.append(stub)
        else:
            updates.append(
                current.model_copy(update={"title": stub.title or current.title, "order": stub.order})
            )
    return merge_by_id(paragraphs, updates)


def _put_paragraph(
    sections: list[ContentSection], paragraph: ContentParagraph
) -> list[ContentSection]:
    for section in sections:
        if section.id == paragraph.section_id:
            updated = section.model_copy(
                update={"paragraphs": merge_by_id(section.paragraphs, [paragraph])}
            )
            return merge_by_id(sections, [updated])

    # Paragraph arrived before its outline
    orphan = ContentSection(id=paragraph.section_id, order=len(sections), paragraphs=[paragraph])
    return [*sections, orphan]


def _find_paragraph(
    sections: list[ContentSection], paragraph_id: str
) -> ContentParagraph | None:
    for section in sections:
        paragraph = section.get_paragraph(paragraph_id)
        if paragraph is not None:
            return paragraph
    return None


def _apply_content(snapshot: ProgressSnapshot, message: StreamMessage) -> ProgressSnapshot:
    sections = list(snapshot.sections)
    step = snapshot.current_step

    if isinstance(message, OutlineMessage):
        sections = _merge_sections(sections, message.data.sections)
        step = f"Outlined {len(sections)} sections"
    elif isinstance(message, ParagraphMessage):
        sections = _put_paragraph(sections, message.data)
        step = f"Writing {message.data.title or message.data.id}"
    elif isinstance(message, ParagraphChunkMessage):
        current = _find_paragraph(sections, message.data.id)
        if current is None:
            logger.warning(f"Chunk for unknown paragraph {message.data.id} ignored")
        else:
            sections = _put_paragraph(
                sections, current.model_copy(update={"content": message.data.content})
            )
    elif isinstance(message, ParagraphCompleteMessage):
        sections = _put_paragraph(sections, message.data.model_copy(update={"is_loaded": True}))
        step = f"Finished {message.data.title or message.data.id}"

    return snapshot.model_copy(
        update={
            "nodes": list(snapshot.nodes),
            "edges": list(snapshot.edges),
            "sections": sections,
            "current_step": step,
        }
    )


def _apply_complete(snapshot: ProgressSnapshot) -> ProgressSnapshot:
    nodes = list(snapshot.nodes)
    root = snapshot.root
    if root is not None and root.is_loading:
        nodes = _replace_node(nodes, root.model_copy(update={"is_loading": False}))
    return snapshot.model_copy(
        update={
            "nodes": nodes,
            "edges": list(snapshot.edges),
            "is_complete": True,
            "current_step": "Complete",
        }
    )


def fail_snapshot(snapshot: ProgressSnapshot, reason: str, ctx: BuildContext) -> ProgressSnapshot:
    """Mark a snapshot as failed without losing any node built so far."""
    nodes = list(snapshot.nodes)
    root = snapshot.root
    if root is None:
        root = placeholder_root(ctx)
        nodes.insert(0, root)
    nodes = _replace_node(
        nodes,
        root.model_copy(update={"error": True, "is_loading": False, "description": reason}),
    )
    return snapshot.model_copy(
        update={
            "nodes": nodes,
            "edges": list(snapshot.edges),
            "error": reason,
            "current_step": f"Error: {reason}",
        }
    )


def reduce(
    snapshot: ProgressSnapshot, message: StreamMessage, ctx: BuildContext
) -> ProgressSnapshot:
    """Fold one message into ``snapshot``.

    Raises:
        BuilderClosedError: the snapshot already ended in an error
        GraphFrozenError: the snapshot is complete and ``message`` would change it
    """
    if snapshot.error is not None:
        raise BuilderClosedError(
            f"Run already failed, cannot apply '{message.type}'",
            {"error": snapshot.error},
        )
    if snapshot.is_complete:
        if isinstance(message, CompleteMessage):
            return snapshot.model_copy(
                update={"nodes": list(snapshot.nodes), "edges": list(snapshot.edges)}
            )
        raise GraphFrozenError(
            f"Graph is complete, cannot apply '{message.type}'",
            {"message_type": message.type},
        )

    if isinstance(message, MetadataMessage):
        return _apply_metadata(snapshot, message.data, ctx)
    if isinstance(message, AspectsBatchMessage):
        return _apply_batch(snapshot, ROOT_NODE_ID, message.data, ctx)
    if isinstance(message, ConceptsBatchMessage):
        return _apply_batch(snapshot, message.data.parent_id, message.data.concepts, ctx)
    if isinstance(message, CompleteMessage):
        return _apply_complete(snapshot)
    if isinstance(message, ErrorMessage):
        return fail_snapshot(snapshot, message.reason, ctx)
    return _apply_content(snapshot, message)


def merge_expansion(
    snapshot: ProgressSnapshot,
    parent_id: str,
    items: Sequence[ConceptItem],
    ctx: BuildContext,
) -> ProgressSnapshot:
    """Append an expansion under ``parent_id``, also on a complete graph.

    Only adds: items already present as a child of the same label, and
    nodes or edges whose id already exists, are skipped. New children are
    turned past the existing ones and the parent is flagged as expanded.

    Raises:
        KeyError: ``parent_id`` is not in the graph
    """
    parent = snapshot.get_node(parent_id)
    if parent is None:
        raise KeyError(parent_id)

    existing = {n.id for n in snapshot.nodes}
    siblings = snapshot.graph.children_of(parent.id)
    labels = {normalize_title(n.label) for n in siblings}
    items = [i for i in items if i.placement is not None or normalize_title(i.name) not in labels]
    # Fresh id space: an item landing on an existing id is a duplicate, not a new node
    children, edges = build_children(parent, items, ctx, set(), placed=len(siblings))
    new_nodes = [n for n in children if n.id not in existing]
    new_ids = {n.id for n in new_nodes}
    edge_ids = {e.id for e in snapshot.edges}
    # A duplicate item keeps its original parent; no second inbound edge
    new_edges = [e for e in edges if e.target in new_ids and e.id not in edge_ids]

    nodes = list(snapshot.nodes)
    if new_nodes and not parent.expanded:
        nodes = _replace_node(nodes, parent.model_copy(update={"expanded": True}))

    return snapshot.model_copy(
        update={
            "nodes": nodes + new_nodes,
            "edges": list(snapshot.edges) + new_edges,
            "current_step": f"Expanded {parent.label} with {len(new_nodes)} concepts",
        }
    )


@dataclass
class GraphBuilder:
    """Stateful wrapper around ``reduce`` for one generation run."""

    ctx: BuildContext
    snapshot: ProgressSnapshot = field(default_factory=ProgressSnapshot)
    metadata: MetadataPayload | None = None

    @classmethod
    def for_topic(cls, topic: str, source_url: str | None = None) -> GraphBuilder:
        return cls(BuildContext.from_settings(topic, source_url))

    @classmethod
    def from_snapshot(cls, snapshot: ProgressSnapshot, ctx: BuildContext) -> GraphBuilder:
        return cls(ctx=ctx, snapshot=snapshot)

    @property
    def is_complete(self) -> bool:
        return self.snapshot.is_complete

    @property
    def is_closed(self) -> bool:
        return self.snapshot.error is not None

    def start(self, label: str | None = None, step: str | None = None) -> ProgressSnapshot:
        """Show the loading root before the first message arrives."""
        root = placeholder_root(self.ctx, label or f"Analyzing {self.ctx.topic}...")
        self.snapshot = ProgressSnapshot(
            nodes=[root],
            current_step=step or "Analyzing topic structure...",
        )
        return self.snapshot

    def apply(self, message: StreamMessage) -> ProgressSnapshot:
        self.snapshot = reduce(self.snapshot, message, self.ctx)
        if isinstance(message, MetadataMessage):
            self.metadata = message.data
        return self.snapshot

    def fail(self, reason: str) -> ProgressSnapshot:
        """Record a failure that did not come from the stream itself."""
        if not self.is_closed:
            self.snapshot = fail_snapshot(self.snapshot, reason, self.ctx)
        return self.snapshot

    def merge_expansion(self, parent_id: str, items: Sequence[ConceptItem]) -> ProgressSnapshot:
        if self.is_closed:
            raise BuilderClosedError("Run already failed, cannot merge expansion")
        self.snapshot = merge_expansion(self.snapshot, parent_id, items, self.ctx)
        return self.snapshot

    def content_page(self) -> ContentPage:
        """Assemble the page built so far from metadata and sections."""
        data = self.metadata.model_dump(by_alias=True, exclude_none=True) if self.metadata else {}
        data.setdefault("topic", self.ctx.topic)
        data.setdefault("title", data.get("mainTopic") or self.ctx.topic)
        sections = sorted(self.snapshot.sections, key=lambda s: s.order)
        return ContentPage.model_validate({**data, "sections": sections})
