"""Radial layout engine."""

from explora.layout.radial import (
    Handles,
    LayoutPreset,
    Placement,
    batch_rotation,
    importance_offset,
    layout_batch,
    optimal_handles,
    position,
    safe_radius,
)

__all__ = [
    "Handles",
    "LayoutPreset",
    "Placement",
    "batch_rotation",
    "importance_offset",
    "layout_batch",
    "optimal_handles",
    "position",
    "safe_radius",
]
