"""Layer assignment and long-edge splitting."""

from __future__ import annotations

from collections.abc import Callable, Hashable
from typing import Any, NamedTuple

import networkx as nx


class VirtualNode(NamedTuple):
    """Bend point of an edge spanning more than one layer."""

    source: Hashable
    target: Hashable
    index: int


def assign_layers(
    dag: nx.DiGraph, order_key: Callable[[Hashable], Any]
) -> dict[Hashable, int]:
    """Longest-path layering: every node sits one layer after its deepest
    predecessor, sources at layer 0.

    Raises:
        networkx.NetworkXUnfeasible: if ``dag`` contains a cycle.
    """
    layers: dict[Hashable, int] = {}
    for node in nx.lexicographical_topological_sort(dag, key=order_key):
        layers[node] = max((layers[p] + 1 for p in dag.predecessors(node)), default=0)
    return layers


def split_long_edges(
    dag: nx.DiGraph, layers: dict[Hashable, int]
) -> tuple[nx.DiGraph, dict[Hashable, int], dict[tuple[Hashable, Hashable], list[VirtualNode]]]:
    """Insert a virtual node on every intermediate layer of long edges.

    Returns the augmented graph, layers including virtual nodes, and the
    chain of virtual nodes for each split edge.
    """
    graph = nx.DiGraph()
    graph.add_nodes_from(dag)
    all_layers = dict(layers)
    chains: dict[tuple[Hashable, Hashable], list[VirtualNode]] = {}

    for u, v in dag.edges:
        span = layers[v] - layers[u]
        if span <= 1:
            graph.add_edge(u, v)
            continue
        chain = [VirtualNode(u, v, i) for i in range(1, span)]
        previous = u
        for virtual in chain:
            all_layers[virtual] = layers[u] + virtual.index
            graph.add_edge(previous, virtual)
            previous = virtual
        graph.add_edge(previous, v)
        chains[(u, v)] = chain

    return graph, all_layers, chains
