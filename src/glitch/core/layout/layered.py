"""Layered (Sugiyama-style) layout of one connected component.

The work is split in two like the rest of the viewer expects:

* ``compute_layers`` is the expensive, topology-only part (cycle removal,
  layering, long-edge splitting, crossing reduction). Its result can be
  cached for as long as the component's nodes and edges do not change.
* ``compute_positions`` turns a cached ``Layers`` into coordinates for the
  current node sizes and is cheap enough to run on every size change.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Hashable, Iterable
from dataclasses import dataclass, field
from typing import Any, Literal

import networkx as nx

from ..errors import LayoutAnomaly
from .crossings import reduce_crossings
from .cycles import make_acyclic
from .geometry import Point, Vec2
from .layers import VirtualNode, assign_layers, split_long_edges
from .positions import assign_coordinates

logger = logging.getLogger(__name__)

Direction = Literal["LR", "TB"]


@dataclass
class Layers:
    """Topology-only result for one connected component."""

    graph: nx.DiGraph
    ordering: list[list[Hashable]]
    feedback_edges: set[tuple[Hashable, Hashable]] = field(default_factory=set)
    self_loops: set[Hashable] = field(default_factory=set)
    chains: dict[tuple[Hashable, Hashable], list[VirtualNode]] = field(
        default_factory=dict
    )
    crossings: int = 0
    degenerate: bool = False

    def nodes(self) -> list[Hashable]:
        return [n for layer in self.ordering for n in layer if not isinstance(n, VirtualNode)]

    def placement(self) -> dict[Hashable, tuple[int, int]]:
        """Map each real node to ``(layer, order)``, order ignoring bend points."""
        result = {}
        for index, layer in enumerate(self.ordering):
            real = [n for n in layer if not isinstance(n, VirtualNode)]
            for order, node in enumerate(real):
                result[node] = (index, order)
        return result

    def edge_chain(self, u: Hashable, v: Hashable) -> list[VirtualNode]:
        """Bend points of the original edge ``u -> v``, in travel order."""
        chain = self.chains.get((u, v))
        if chain is not None:
            return chain
        return list(reversed(self.chains.get((v, u), [])))


@dataclass
class LayeredLayout:
    margin: Vec2 = Vec2(20.0, 20.0)
    crossing_passes: int = 4
    position_iterations: int = 8
    direction: Direction = "LR"

    def compute_layers(
        self,
        nodes: Iterable[Hashable],
        edges: Iterable[tuple[Hashable, Hashable]],
        order_key: Callable[[Hashable], Any],
        previous: dict[Hashable, tuple[int, int]] | None = None,
    ) -> Layers:
        """Layer and order a single connected component.

        Args:
            nodes: Component nodes.
            edges: Directed edges between ``nodes``; self-loops allowed.
            order_key: Creation order of a node, used for every tie-break.
            previous: Last known ``(layer, order)`` of surviving nodes; seeds
                the ordering so that unaffected nodes keep their slots.

        Raises:
            LayoutAnomaly: if the computed layering violates an invariant.
        """
        graph = nx.DiGraph()
        graph.add_nodes_from(sorted(nodes, key=order_key))
        graph.add_edges_from(edges)
        self_loops = {u for u, v in graph.edges if u == v}

        def key(node: Hashable) -> tuple[Any, Any, int]:
            if isinstance(node, VirtualNode):
                return (order_key(node.source), order_key(node.target), node.index)
            return (order_key(node), order_key(node), -1)

        dag, back = make_acyclic(graph, key)
        try:
            layers = assign_layers(dag, key)
        except nx.NetworkXUnfeasible as e:
            raise LayoutAnomaly("cycle left after back-edge reversal", list(graph)) from e

        self._validate(graph, dag, layers, back)

        augmented, all_layers, chains = split_long_edges(dag, layers)
        depth = max(all_layers.values(), default=-1) + 1
        ordering: list[list[Hashable]] = [[] for _ in range(depth)]
        for node in augmented:
            ordering[all_layers[node]].append(node)

        previous = previous or {}

        def seed(node: Hashable) -> tuple[int, Any]:
            if not isinstance(node, VirtualNode):
                prior = previous.get(node)
                if prior is not None and prior[0] == all_layers[node]:
                    return (0, (prior[1], key(node)))
            return (1, key(node))

        for layer in ordering:
            layer.sort(key=seed)

        ordering, crossings = reduce_crossings(augmented, ordering, self.crossing_passes)

        # Chains are keyed by the edge as originally declared.
        original_chains = {}
        for (u, v), chain in chains.items():
            if (v, u) in back and (u, v) not in graph.edges:
                original_chains[(v, u)] = list(reversed(chain))
            else:
                original_chains[(u, v)] = chain

        return Layers(
            graph=augmented,
            ordering=ordering,
            feedback_edges=back,
            self_loops=self_loops,
            chains=original_chains,
            crossings=crossings,
        )

    def _validate(
        self,
        graph: nx.DiGraph,
        dag: nx.DiGraph,
        layers: dict[Hashable, int],
        back: set[tuple[Hashable, Hashable]],
    ) -> None:
        if not nx.is_directed_acyclic_graph(dag):
            raise LayoutAnomaly("layering graph is not acyclic", list(graph))
        for node in graph:
            if layers.get(node, -1) < 0:
                raise LayoutAnomaly(f"node {node!r} has no valid layer", [node])
        for u, v in graph.edges:
            if u == v:
                continue
            if (u, v) in back:
                if not layers[v] < layers[u]:
                    raise LayoutAnomaly(f"feedback edge {u!r}->{v!r} not reversed", [u, v])
            elif not layers[u] < layers[v]:
                raise LayoutAnomaly(f"edge {u!r}->{v!r} does not point forward", [u, v])

    def degenerate_layers(
        self, nodes: Iterable[Hashable], order_key: Callable[[Hashable], Any]
    ) -> Layers:
        """Single-layer creation-order layout used when validation fails."""
        ordered = sorted(nodes, key=order_key)
        graph = nx.DiGraph()
        graph.add_nodes_from(ordered)
        return Layers(graph=graph, ordering=[ordered] if ordered else [], degenerate=True)

    def compute_positions(
        self, layers: Layers, size_of: Callable[[Hashable], Vec2]
    ) -> tuple[dict[Hashable, Point], dict[tuple[Hashable, Hashable], list[Point]]]:
        """Place a layered component.

        Returns top-left positions of real nodes and the bend points (centre
        of each virtual node) of long edges, keyed by the original edge.
        """
        transpose = self.direction == "TB"

        def layer_size(node: Hashable) -> Vec2:
            if isinstance(node, VirtualNode):
                return Vec2(0.0, 0.0)
            size = size_of(node)
            return size.transposed() if transpose else size

        margin = self.margin.transposed() if transpose else self.margin
        corners = assign_coordinates(
            layers.graph, layers.ordering, layer_size, margin, self.position_iterations
        )
        if transpose:
            corners = {node: p.transposed() for node, p in corners.items()}

        positions = {n: p for n, p in corners.items() if not isinstance(n, VirtualNode)}
        waypoints = {
            edge: [corners[v] for v in chain] for edge, chain in layers.chains.items()
        }
        return positions, waypoints
