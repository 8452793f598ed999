"""Layout engine: turns graph snapshots into stable node placements.

The engine is a small state machine. Topology changes mark it dirty; the
next ``relayout`` recomputes layers for the connected components whose
nodes or edges changed (others are served from cache) and then assigns
coordinates for everything. A ``relayout`` on a clean engine only
recomputes coordinates, which is what size hint updates need.

Bins are compound nodes: the members of a bin are laid out inside it and
the bin takes part in its parent's layout as one node whose size encloses
its members. Edges between nodes in different bins are lifted to the
outermost distinct ancestors that share a scope.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

import networkx as nx

from ..components import Position, Size
from ..errors import LayoutAnomaly
from ..graph_model import GraphSnapshot
from ..store import EntityStore
from .geometry import Point, Rect, Vec2
from .layered import LayeredLayout, Layers
from .sizes import SizeHints

logger = logging.getLogger(__name__)

Scope = int | None
Signature = tuple[frozenset[int], frozenset[tuple[int, int]]]


class LayoutState(str, Enum):
    CLEAN = "clean"
    DIRTY = "dirty"
    RELAYOUT = "relayout"


@dataclass(frozen=True)
class NodeLayout:
    layer: int
    order: int
    component: int
    scope: int | None
    position: Point
    size: Vec2


@dataclass(frozen=True)
class LayoutResult:
    topology_version: int = -1
    nodes: dict[int, NodeLayout] = field(default_factory=dict)
    bins: dict[int, Rect] = field(default_factory=dict)
    feedback_edges: list[tuple[int, int]] = field(default_factory=list)
    self_loops: list[int] = field(default_factory=list)
    edge_waypoints: dict[tuple[int, int], list[Point]] = field(default_factory=dict)
    bounds: Rect | None = None


@dataclass
class _ScopeLayout:
    members: list[int]
    components: list[tuple[list[int], Layers]]


class LayoutEngine:
    def __init__(
        self,
        layout: LayeredLayout | None = None,
        size_hints: SizeHints | None = None,
        store: EntityStore | None = None,
        on_anomaly: Callable[[LayoutAnomaly], None] | None = None,
        bin_padding: Vec2 = Vec2(16.0, 16.0),
        bin_header: float = 24.0,
    ):
        self.layout = layout or LayeredLayout()
        self.size_hints = size_hints or SizeHints()
        self.store = store
        self.on_anomaly = on_anomaly
        self.bin_padding = bin_padding
        self.bin_header = bin_header

        self.state = LayoutState.CLEAN
        self.anomaly_count = 0
        self._topology_version: int | None = None
        self._scopes: dict[Scope, _ScopeLayout] = {}
        self._parents: dict[int, int | None] = {}
        self._cache: dict[Scope, dict[Signature, Layers]] = {}
        self._placement: dict[int, tuple[int, int]] = {}
        self._result = LayoutResult()

    @property
    def result(self) -> LayoutResult:
        return self._result

    def mark_dirty(self) -> None:
        if self.state is LayoutState.CLEAN:
            self.state = LayoutState.DIRTY

    def invalidate(self) -> None:
        """Drop every cached layering, e.g. after a configuration change."""
        self._cache.clear()
        self.mark_dirty()

    def relayout(self, snapshot: GraphSnapshot) -> LayoutResult:
        if (
            self.state is not LayoutState.CLEAN
            or self._topology_version != snapshot.topology_version
        ):
            self.state = LayoutState.RELAYOUT
            self._rebuild_layers(snapshot)
            self._topology_version = snapshot.topology_version

        result = self._place(snapshot)
        if self.store is not None:
            self._write_derived(result)
        self._result = result
        self.state = LayoutState.CLEAN
        return result

    # Layering

    def _rebuild_layers(self, snapshot: GraphSnapshot) -> None:
        order = {node.id: node.order for node in snapshot.nodes}
        self._parents = {node.id: node.parent for node in snapshot.nodes}

        members: dict[Scope, list[int]] = {None: []}
        for node in snapshot.nodes:
            members.setdefault(node.parent, []).append(node.id)
        for node in snapshot.nodes:
            if node.is_bin:
                members.setdefault(node.id, [])

        edges: dict[Scope, set[tuple[int, int]]] = {}
        for source, target in snapshot.edge_pairs():
            lifted = self._lift(source, target)
            if lifted is not None:
                scope, u, v = lifted
                edges.setdefault(scope, set()).add((u, v))

        scopes: dict[Scope, _ScopeLayout] = {}
        cache: dict[Scope, dict[Signature, Layers]] = {}
        placement: dict[int, tuple[int, int]] = {}
        for scope, scope_members in members.items():
            scope_edges = edges.get(scope, set())
            graph = nx.Graph()
            graph.add_nodes_from(scope_members)
            graph.add_edges_from(scope_edges)
            groups = [sorted(c, key=order.__getitem__) for c in nx.connected_components(graph)]
            groups.sort(key=lambda group: order[group[0]])

            old = self._cache.get(scope, {})
            fresh: dict[Signature, Layers] = {}
            components = []
            for group in groups:
                group_set = frozenset(group)
                group_edges = frozenset(e for e in scope_edges if e[0] in group_set)
                signature = (group_set, group_edges)
                layers = old.get(signature)
                if layers is None:
                    layers = self._compute_component(group, group_edges, order, scope)
                fresh[signature] = layers
                components.append((group, layers))
                placement.update(layers.placement())
            scopes[scope] = _ScopeLayout(members=scope_members, components=components)
            cache[scope] = fresh

        self._scopes = scopes
        self._cache = cache
        self._placement = placement

    def _compute_component(
        self,
        nodes: list[int],
        edges: frozenset[tuple[int, int]],
        order: dict[int, int],
        scope: Scope,
    ) -> Layers:
        previous = {n: self._placement[n] for n in nodes if n in self._placement}
        try:
            return self.layout.compute_layers(nodes, edges, order.__getitem__, previous)
        except LayoutAnomaly as e:
            self._report_anomaly(e, scope)
            return self.layout.degenerate_layers(nodes, order.__getitem__)

    def _report_anomaly(self, anomaly: LayoutAnomaly, scope: Scope) -> None:
        self.anomaly_count += 1
        logger.error(
            f"Layout anomaly in scope {scope}: {anomaly}; "
            "falling back to a single layer"
        )
        if self.on_anomaly is not None:
            try:
                self.on_anomaly(anomaly)
            except Exception as e:
                logger.error(f"Error in layout anomaly callback: {e}")

    def _ancestry(self, node: int) -> list[int]:
        chain = [node]
        parent = self._parents.get(node)
        while parent is not None and parent not in chain:
            chain.append(parent)
            parent = self._parents.get(parent)
        return chain

    def _lift(self, source: int, target: int) -> tuple[Scope, int, int] | None:
        """Find the scope where an edge is drawn and the members it joins.

        Returns None for edges between a bin and its own descendants, which
        do not constrain any layering.
        """
        if source == target:
            return self._parents.get(source), source, source
        source_chain = self._ancestry(source)
        target_chain = self._ancestry(target)
        if source in target_chain or target in source_chain:
            return None
        target_members = {self._parents.get(n): n for n in target_chain}
        for member in source_chain:
            scope = self._parents.get(member)
            if scope in target_members:
                return scope, member, target_members[scope]
        return None

    # Coordinates

    def _scope_depth(self, scope: Scope) -> int:
        return 0 if scope is None else len(self._ancestry(scope))

    def _place(self, snapshot: GraphSnapshot) -> LayoutResult:
        size_of = self.size_hints.resolver(snapshot)
        sizes: dict[int, Vec2] = {}
        local: dict[int, Point] = {}
        component_of: dict[int, int] = {}
        local_waypoints: dict[Scope, dict[tuple[int, int], list[Point]]] = {}
        feedback: list[tuple[int, int]] = []
        self_loops: list[int] = []

        def node_size(node: int) -> Vec2:
            size = sizes.get(node)
            if size is None:
                size = sizes[node] = size_of(node)
            return size

        stack_on_y = self.layout.direction == "LR"
        gap = (self.layout.margin.y if stack_on_y else self.layout.margin.x) * 2

        # Innermost bins first so their sizes are known to their parents.
        bottom_up = sorted(self._scopes, key=self._scope_depth, reverse=True)
        for scope in bottom_up:
            scope_layout = self._scopes[scope]
            cursor = 0.0
            waypoints: dict[tuple[int, int], list[Point]] = {}
            for index, (group, layers) in enumerate(scope_layout.components):
                positions, bends = self.layout.compute_positions(layers, node_size)
                offset = Vec2(0.0, cursor) if stack_on_y else Vec2(cursor, 0.0)
                extent = 0.0
                for node, point in positions.items():
                    local[node] = point + offset
                    component_of[node] = index
                    far = point.y + node_size(node).y if stack_on_y else point.x + node_size(node).x
                    extent = max(extent, far)
                for edge, points in bends.items():
                    waypoints[edge] = [p + offset for p in points]
                feedback.extend(sorted(layers.feedback_edges))
                self_loops.extend(sorted(layers.self_loops))
                cursor += extent + gap
            local_waypoints[scope] = waypoints

            if scope is not None:
                rects = [Rect(local[m], node_size(m)) for m in scope_layout.members]
                content = Rect.enclosing(rects)
                if content is None:
                    sizes[scope] = size_of(scope)
                else:
                    sizes[scope] = Vec2(
                        content.right + 2 * self.bin_padding.x,
                        content.bottom + 2 * self.bin_padding.y + self.bin_header,
                    ).max(Vec2(size_of(scope).x, 0.0))

        absolute: dict[int, Point] = {}
        edge_waypoints: dict[tuple[int, int], list[Point]] = {}
        for scope in sorted(self._scopes, key=self._scope_depth):
            if scope is None:
                origin = Vec2(0.0, 0.0)
            else:
                base = absolute.get(scope, Point())
                origin = base.as_vec() + Vec2(
                    self.bin_padding.x, self.bin_padding.y + self.bin_header
                )
            for member in self._scopes[scope].members:
                absolute[member] = local[member] + origin
            for edge, points in local_waypoints[scope].items():
                edge_waypoints[edge] = [p + origin for p in points]

        nodes: dict[int, NodeLayout] = {}
        for node in snapshot.nodes:
            if node.id not in absolute:
                continue
            layer, order = self._placement.get(node.id, (0, 0))
            nodes[node.id] = NodeLayout(
                layer=layer,
                order=order,
                component=component_of.get(node.id, 0),
                scope=node.parent,
                position=absolute[node.id],
                size=node_size(node.id),
            )

        bins = {
            scope: Rect(absolute[scope], sizes[scope])
            for scope in self._scopes
            if scope is not None and scope in absolute
        }
        roots = [Rect(absolute[n], node_size(n)) for n in self._scopes[None].members]
        return LayoutResult(
            topology_version=snapshot.topology_version,
            nodes=nodes,
            bins=bins,
            feedback_edges=feedback,
            self_loops=self_loops,
            edge_waypoints=edge_waypoints,
            bounds=Rect.enclosing(roots),
        )

    def _write_derived(self, result: LayoutResult) -> None:
        for entity in self._result.nodes.keys() - result.nodes.keys():
            self.store.clear_derived(entity)
        for entity, node in result.nodes.items():
            self.store.write_derived(entity, Position(x=node.position.x, y=node.position.y))
            self.store.write_derived(entity, Size(width=node.size.x, height=node.size.y))
