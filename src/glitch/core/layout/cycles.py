"""Cycle removal by reversing depth-first back edges."""

from __future__ import annotations

from collections.abc import Callable, Hashable
from typing import Any

import networkx as nx

_WHITE, _GREY, _BLACK = 0, 1, 2


def find_back_edges(
    graph: nx.DiGraph, order_key: Callable[[Hashable], Any]
) -> set[tuple[Hashable, Hashable]]:
    """Return the back edges of a DFS that visits roots and children in
    ``order_key`` order. Self-loops are never reported.

    The traversal is iterative so deep pipelines do not hit the recursion
    limit.
    """
    color = dict.fromkeys(graph, _WHITE)
    back: set[tuple[Hashable, Hashable]] = set()

    def children(node: Hashable):
        return iter(sorted(graph.successors(node), key=order_key))

    for root in sorted(graph, key=order_key):
        if color[root] != _WHITE:
            continue
        color[root] = _GREY
        stack = [(root, children(root))]
        while stack:
            node, pending = stack[-1]
            for child in pending:
                if child == node:
                    continue
                if color[child] == _GREY:
                    back.add((node, child))
                elif color[child] == _WHITE:
                    color[child] = _GREY
                    stack.append((child, children(child)))
                    break
            else:
                color[node] = _BLACK
                stack.pop()
    return back


def make_acyclic(
    graph: nx.DiGraph, order_key: Callable[[Hashable], Any]
) -> tuple[nx.DiGraph, set[tuple[Hashable, Hashable]]]:
    """Return an acyclic copy of ``graph`` and the reversed (feedback) edges.

    Self-loops are dropped from the copy. If an edge and its reverse both
    exist, the reversed back edge merges into the forward one.
    """
    back = find_back_edges(graph, order_key)
    dag = nx.DiGraph()
    dag.add_nodes_from(graph)
    for u, v in graph.edges:
        if u == v:
            continue
        if (u, v) in back:
            dag.add_edge(v, u)
        else:
            dag.add_edge(u, v)
    return dag, back
