"""Graph models for streamed mind maps."""

from __future__ import annotations

from enum import Enum

from pydantic import ConfigDict, Field

from explora.models.base import WireModel
from explora.models.content import ContentSection

ROOT_NODE_ID = "main"


class NodeKind(str, Enum):
    """Kind of a graph node."""

    ROOT = "root"
    CONCEPT = "concept"


class Importance(str, Enum):
    """Relative importance of a concept within its batch."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Position(WireModel):
    """A point on the canvas."""

    model_config = ConfigDict(frozen=True)

    x: float
    y: float


class GraphNode(WireModel):
    """A node in the mind map.

    Nodes are immutable; the builder replaces a node with ``model_copy``
    so untouched nodes can be shared between snapshots.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    kind: NodeKind = NodeKind.CONCEPT
    position: Position
    label: str
    description: str = ""
    level: int = Field(default=0, ge=0)
    expandable: bool = True
    expanded: bool = False
    parent_id: str | None = None
    importance: Importance | None = None
    difficulty: str | None = None
    estimated_time: str | None = None
    connections: tuple[str, ...] = ()
    source_url: str | None = None
    is_loading: bool = False
    error: bool = False

    @property
    def is_root(self) -> bool:
        return self.kind == NodeKind.ROOT


class GraphEdge(WireModel):
    """A directed parent -> child edge."""

    model_config = ConfigDict(frozen=True)

    id: str
    source: str
    target: str
    source_handle: str = "right"
    target_handle: str = "target-left"

    @staticmethod
    def make_id(source: str, target: str) -> str:
        return f"edge-{source}-{target}"

    @classmethod
    def between(
        cls,
        source: str,
        target: str,
        source_handle: str,
        target_handle: str,
    ) -> GraphEdge:
        """Create the edge from ``source`` to ``target``."""
        return cls(
            id=cls.make_id(source, target),
            source=source,
            target=target,
            source_handle=source_handle,
            target_handle=target_handle,
        )


def merge_by_id(existing: list, incoming: list) -> list:
    """Merge two id-keyed lists, keeping order; later entries win."""
    merged = list(existing)
    index = {item.id: pos for pos, item in enumerate(merged)}
    for item in incoming:
        pos = index.get(item.id)
        if pos is None:
            index[item.id] = len(merged)
            merged.append(item)
        else:
            merged[pos] = item
    return merged


class Graph(WireModel):
    """Ordered node and edge lists, unique by id."""

    nodes: list[GraphNode] = Field(default_factory=list)
    edges: list[GraphEdge] = Field(default_factory=list)

    def get_node(self, node_id: str) -> GraphNode | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def children_of(self, parent_id: str) -> list[GraphNode]:
        return [n for n in self.nodes if n.parent_id == parent_id]


class ProgressSnapshot(WireModel):
    """The externally observable state after one processed message."""

    nodes: list[GraphNode] = Field(default_factory=list)
    edges: list[GraphEdge] = Field(default_factory=list)
    is_complete: bool = False
    current_step: str = ""
    sections: list[ContentSection] = Field(default_factory=list)
    error: str | None = None

    @property
    def graph(self) -> Graph:
        return Graph(nodes=list(self.nodes), edges=list(self.edges))

    @property
    def root(self) -> GraphNode | None:
        for node in self.nodes:
            if node.id == ROOT_NODE_ID:
                return node
        return None

    def get_node(self, node_id: str) -> GraphNode | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None
