"""Crossing reduction between adjacent layers."""

from __future__ import annotations

from collections.abc import Hashable

import networkx as nx

Ordering = list[list[Hashable]]


def count_crossings(graph: nx.DiGraph, ordering: Ordering) -> int:
    """Count edge crossings between every pair of adjacent layers."""
    total = 0
    for upper, lower in zip(ordering, ordering[1:]):
        upper_pos = {node: i for i, node in enumerate(upper)}
        lower_pos = {node: i for i, node in enumerate(lower)}
        segments = sorted(
            (upper_pos[u], lower_pos[v])
            for u in upper
            for v in graph.successors(u)
            if v in lower_pos
        )
        for i, (a1, b1) in enumerate(segments):
            for a2, b2 in segments[i + 1 :]:
                if a1 != a2 and b1 > b2:
                    total += 1
    return total


def _median(values: list[float]) -> float:
    values = sorted(values)
    mid = len(values) // 2
    if len(values) % 2:
        return values[mid]
    return (values[mid - 1] + values[mid]) / 2


def _reorder(layer: list[Hashable], neighbors: dict[Hashable, list[Hashable]], fixed: list[Hashable]) -> list[Hashable]:
    fixed_pos = {node: i for i, node in enumerate(fixed)}

    def key(item: tuple[int, Hashable]) -> tuple[float, int]:
        index, node = item
        positions = [fixed_pos[n] for n in neighbors.get(node, ()) if n in fixed_pos]
        # Nodes without neighbours in the fixed layer keep their slot.
        return (_median(positions) if positions else float(index), index)

    return [node for _, node in sorted(enumerate(layer), key=key)]


def reduce_crossings(
    graph: nx.DiGraph, ordering: Ordering, passes: int = 4
) -> tuple[Ordering, int]:
    """Median heuristic sweeps, alternating downwards and upwards.

    The incoming ``ordering`` is the baseline: a sweep result replaces the
    best ordering only when it has strictly fewer crossings. Ties between
    medians keep the current relative order.
    """
    best = [list(layer) for layer in ordering]
    best_crossings = count_crossings(graph, best)
    if best_crossings == 0 or len(ordering) < 2:
        return best, best_crossings

    predecessors = {n: list(graph.predecessors(n)) for n in graph}
    successors = {n: list(graph.successors(n)) for n in graph}
    current = [list(layer) for layer in ordering]

    for sweep in range(passes):
        if sweep % 2 == 0:
            for i in range(1, len(current)):
                current[i] = _reorder(current[i], predecessors, current[i - 1])
        else:
            for i in range(len(current) - 2, -1, -1):
                current[i] = _reorder(current[i], successors, current[i + 1])
        crossings = count_crossings(graph, current)
        if crossings < best_crossings:
            best = [list(layer) for layer in current]
            best_crossings = crossings
            if crossings == 0:
                break

    return best, best_crossings
