"""Radial layout for sibling batches around a parent node.

All functions are pure: the same inputs always give bit-identical output,
so live and replayed runs produce the same layout.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import NamedTuple

from explora.models.graph import Importance, Position
from explora.utils.config import Settings, get_settings

DEFAULT_MARGIN = 80.0


class Handles(NamedTuple):
    source_handle: str
    target_handle: str


# (upper bound in degrees, handles); sectors are centred on the compass points
_SECTORS: tuple[tuple[float, Handles], ...] = (
    (45.0, Handles("right", "target-left")),
    (135.0, Handles("bottom", "target-top")),
    (225.0, Handles("left", "target-right")),
    (315.0, Handles("top", "target-bottom")),
    (360.0, Handles("right", "target-left")),
)


@dataclass(frozen=True)
class LayoutPreset:
    """Geometry for one level of the map."""

    node_width: float
    min_radius: float
    max_radius: float
    margin: float = DEFAULT_MARGIN
    importance_step: float = 20.0

    @classmethod
    def topic_level(cls, settings: Settings | None = None) -> LayoutPreset:
        settings = settings or get_settings()
        return cls(
            node_width=settings.mindmap_node_width,
            min_radius=settings.mindmap_min_radius,
            max_radius=settings.mindmap_max_radius,
            margin=settings.mindmap_node_margin,
            importance_step=settings.importance_radius_offset,
        )

    @classmethod
    def expansion_level(cls, settings: Settings | None = None) -> LayoutPreset:
        settings = settings or get_settings()
        return cls(
            node_width=settings.mindmap_node_width,
            min_radius=settings.expansion_min_radius,
            max_radius=settings.expansion_max_radius,
            margin=settings.mindmap_node_margin,
            importance_step=settings.importance_radius_offset,
        )


@dataclass(frozen=True)
class Placement:
    """Where one sibling goes and how its edge attaches."""

    position: Position
    angle: float
    radius: float
    handles: Handles


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def safe_radius(
    n: int,
    node_width: float,
    min_radius: float,
    max_radius: float,
    margin: float = DEFAULT_MARGIN,
) -> float:
    """Smallest radius at which ``n`` equally spaced nodes do not overlap.

    Each node needs ``node_width + margin`` of arc; with ``arc = 2*pi*r/n``
    that gives ``r = n * (node_width + margin) / (2*pi)``, clamped to
    ``[min_radius, max_radius]``.
    """
    if n <= 1:
        return min_radius
    required = n * (node_width + margin) / (2 * math.pi)
    return clamp(required, min_radius, max_radius)


def angle_for(index: int, n: int) -> float:
    if n <= 0:
        raise ValueError(f"Batch size must be positive, got {n}")
    return 2 * math.pi * (index % n) / n


def point_at(angle: float, center: Position, radius: float) -> Position:
    return Position(
        x=center.x + math.cos(angle) * radius,
        y=center.y + math.sin(angle) * radius,
    )


def position(index: int, n: int, center: Position, radius: float) -> Position:
    """Place node ``index`` of ``n`` on the circle around ``center``."""
    return point_at(angle_for(index, n), center, radius)


def batch_rotation(placed: int, count: int) -> float:
    """Angle by which a batch is turned when ``placed`` siblings already exist.

    The first batch is not turned. Later batches are turned by a growing
    fraction of one slot (1/2, 2/3, 3/4, ...), so equal-sized batches never
    reuse an earlier batch's angles.
    """
    if placed <= 0 or count <= 0:
        return 0.0
    return (2 * math.pi / count) * placed / (placed + count)


def optimal_handles(angle: float) -> Handles:
    """Pick edge anchors for a child at ``angle`` (radians) from its parent."""
    degrees = math.degrees(angle) % 360.0
    for upper, handles in _SECTORS:
        if degrees < upper:
            return handles
    return _SECTORS[-1][1]


def importance_offset(importance: Importance | str | None, step: float = 20.0) -> float:
    """High-importance siblings sit closer to the parent, low ones further out."""
    if importance is None:
        return 0.0
    value = Importance(importance)
    if value == Importance.HIGH:
        return -step
    if value == Importance.LOW:
        return step
    return 0.0


def weighted_radius(
    base_radius: float,
    importance: Importance | str | None,
    min_radius: float,
    max_radius: float,
    step: float = 20.0,
) -> float:
    return clamp(base_radius + importance_offset(importance, step), min_radius, max_radius)


def layout_batch(
    count: int,
    center: Position,
    preset: LayoutPreset,
    importances: Sequence[Importance | str | None] | None = None,
    placed: int = 0,
) -> list[Placement]:
    """Lay out a whole batch of siblings around ``center``.

    ``placed`` is the number of siblings already around ``center`` from
    earlier batches; see ``batch_rotation``.
    """
    if count <= 0:
        return []

    base = safe_radius(count, preset.node_width, preset.min_radius, preset.max_radius, preset.margin)
    rotation = batch_rotation(placed, count)
    placements: list[Placement] = []
    for index in range(count):
        importance = importances[index] if importances and index < len(importances) else None
        radius = weighted_radius(
            base, importance, preset.min_radius, preset.max_radius, preset.importance_step
        )
        angle = angle_for(index, count) + rotation
        placements.append(
            Placement(
                position=point_at(angle, center, radius),
                angle=angle,
                radius=radius,
                handles=optimal_handles(angle),
            )
        )
    return placements
