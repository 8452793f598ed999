"""Coordinate assignment for an ordered layering.

Works in layer space: the layer axis is ``x`` and nodes of one layer are
stacked along ``y``. Callers transpose for top-to-bottom layouts.
"""

from __future__ import annotations

from collections.abc import Callable, Hashable

import networkx as nx

from .geometry import Point, Vec2

# Movement below this is treated as converged.
_EPSILON = 0.5


def _median(values: list[float]) -> float:
    values = sorted(values)
    mid = len(values) // 2
    if len(values) % 2:
        return values[mid]
    return (values[mid - 1] + values[mid]) / 2


def _pack(
    layer: list[Hashable],
    targets: dict[Hashable, float],
    sizes: dict[Hashable, Vec2],
    gap: float,
) -> dict[Hashable, float]:
    """Place nodes at their target centres without overlap, keeping order.

    Nodes are pushed forward to respect ``gap``, then the whole run is
    shifted back so its mean displacement from the targets is zero.
    """
    tops: dict[Hashable, float] = {}
    cursor = float("-inf")
    for node in layer:
        top = max(targets[node] - sizes[node].y / 2, cursor)
        tops[node] = top
        cursor = top + sizes[node].y + gap
    if layer:
        drift = sum(tops[n] + sizes[n].y / 2 - targets[n] for n in layer) / len(layer)
        for node in layer:
            tops[node] -= drift
    return tops


def assign_coordinates(
    graph: nx.DiGraph,
    ordering: list[list[Hashable]],
    size_of: Callable[[Hashable], Vec2],
    margin: Vec2,
    iterations: int = 8,
) -> dict[Hashable, Point]:
    """Return the top-left corner of every node in ``ordering``.

    Layers are spaced by their widest member plus ``margin.x``. Within a
    layer nodes keep their order, are at least ``margin.y`` apart, and are
    pulled towards the median centre of their neighbours in the adjacent
    layers. The result is normalised so the bounding box starts at (0, 0).
    """
    sizes = {node: size_of(node) for layer in ordering for node in layer}

    x: dict[Hashable, float] = {}
    offset = 0.0
    for layer in ordering:
        width = max((sizes[n].x for n in layer), default=0.0)
        for node in layer:
            x[node] = offset + (width - sizes[node].x) / 2
        offset += width + margin.x

    tops: dict[Hashable, float] = {}
    for layer in ordering:
        cursor = 0.0
        for node in layer:
            tops[node] = cursor
            cursor += sizes[node].y + margin.y

    def centre(node: Hashable) -> float:
        return tops[node] + sizes[node].y / 2

    for iteration in range(iterations):
        moved = 0.0
        downward = iteration % 2 == 0
        indices = range(1, len(ordering)) if downward else range(len(ordering) - 2, -1, -1)
        for i in indices:
            layer = ordering[i]
            targets = {}
            for node in layer:
                neighbours = graph.predecessors(node) if downward else graph.successors(node)
                centres = [centre(n) for n in neighbours]
                targets[node] = _median(centres) if centres else centre(node)
            packed = _pack(layer, targets, sizes, margin.y)
            for node in layer:
                moved = max(moved, abs(packed[node] - tops[node]))
                tops[node] = packed[node]
        if moved < _EPSILON:
            break

    if not tops:
        return {}
    min_x = min(x.values())
    min_y = min(tops.values())
    return {node: Point(x[node] - min_x, tops[node] - min_y) for node in tops}
