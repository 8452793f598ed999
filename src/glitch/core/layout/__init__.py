"""Stable layered layout of pipeline graphs."""

from .engine import LayoutEngine, LayoutResult, LayoutState, NodeLayout
from .geometry import Point, Rect, Vec2
from .layered import LayeredLayout, Layers
from .sizes import SizeHints

__all__ = [
    "LayeredLayout",
    "Layers",
    "LayoutEngine",
    "LayoutResult",
    "LayoutState",
    "NodeLayout",
    "Point",
    "Rect",
    "SizeHints",
    "Vec2",
]
