"""Tests for the layered layout building blocks."""

import networkx as nx
import pytest

from glitch.core.layout import LayeredLayout, Point, Rect, SizeHints, Vec2
from glitch.core.layout.crossings import count_crossings, reduce_crossings
from glitch.core.layout.cycles import find_back_edges, make_acyclic
from glitch.core.layout.layers import VirtualNode, assign_layers, split_long_edges
from glitch.core.layout.positions import assign_coordinates


def identity(node):
    return node


def fixed_size(node):
    return Vec2(80.0, 40.0)


def digraph(edges, nodes=()):
    graph = nx.DiGraph()
    graph.add_nodes_from(nodes)
    graph.add_edges_from(edges)
    return graph


class TestGeometry:
    def test_point_and_vector_arithmetic(self):
        assert Point(1, 2) + Vec2(3, 4) == Point(4, 6)
        assert Point(5, 5) - Point(2, 1) == Vec2(3, 4)
        assert Vec2(1, 2).transposed() == Vec2(2, 1)
        assert Vec2(1, 5).max(Vec2(3, 2)) == Vec2(3, 5)

    def test_enclosing_rect(self):
        rect = Rect.enclosing(
            [Rect(Point(10, 10), Vec2(20, 20)), Rect(Point(0, 25), Vec2(5, 30))]
        )
        assert rect == Rect(Point(0, 10), Vec2(30, 45))
        assert Rect.enclosing([]) is None


class TestCycles:
    """Tests for back-edge detection."""

    def test_acyclic_graph_has_no_back_edges(self):
        assert find_back_edges(digraph([(1, 2), (2, 3), (1, 3)]), identity) == set()

    def test_single_cycle_yields_one_back_edge(self):
        back = find_back_edges(digraph([(1, 2), (2, 3), (3, 1)]), identity)
        assert back == {(3, 1)}

    def test_self_loops_are_not_back_edges(self):
        dag, back = make_acyclic(digraph([(1, 2), (2, 2)]), identity)

        assert back == set()
        assert list(dag.edges) == [(1, 2)]

    def test_make_acyclic_reverses_feedback_edges(self):
        dag, back = make_acyclic(digraph([(1, 2), (2, 3), (3, 1), (3, 3)]), identity)

        assert back == {(3, 1)}
        assert nx.is_directed_acyclic_graph(dag)
        assert set(dag.edges) == {(1, 2), (2, 3), (1, 3)}

    def test_two_cycle_merges_into_one_edge(self):
        dag, back = make_acyclic(digraph([(1, 2), (2, 1)]), identity)

        assert back == {(2, 1)}
        assert list(dag.edges) == [(1, 2)]

    def test_deep_graph_does_not_recurse(self):
        edges = [(i, i + 1) for i in range(5000)] + [(5000, 0)]

        assert find_back_edges(digraph(edges), identity) == {(5000, 0)}


class TestLayers:
    """Tests for layering and long-edge splitting."""

    def test_longest_path_layering(self):
        layers = assign_layers(digraph([(1, 2), (2, 3), (1, 3)], nodes=[4]), identity)
        assert layers == {1: 0, 2: 1, 3: 2, 4: 0}

    def test_cyclic_input_raises(self):
        with pytest.raises(nx.NetworkXUnfeasible):
            assign_layers(digraph([(1, 2), (2, 1)]), identity)

    def test_long_edge_is_split(self):
        dag = digraph([(1, 2), (2, 3), (1, 3)])
        graph, layers, chains = split_long_edges(dag, assign_layers(dag, identity))

        virtual = VirtualNode(1, 3, 1)
        assert chains == {(1, 3): [virtual]}
        assert layers[virtual] == 1
        assert graph.has_edge(1, virtual)
        assert graph.has_edge(virtual, 3)
        assert not graph.has_edge(1, 3)


class TestCrossings:
    """Tests for crossing counting and reduction."""

    def test_counts_crossing(self):
        graph = digraph([("a", "d"), ("b", "c")])
        assert count_crossings(graph, [["a", "b"], ["c", "d"]]) == 1
        assert count_crossings(graph, [["a", "b"], ["d", "c"]]) == 0

    def test_shared_endpoints_do_not_cross(self):
        graph = digraph([("a", "c"), ("a", "d"), ("b", "d")])
        assert count_crossings(graph, [["a", "b"], ["c", "d"]]) == 0

    def test_reduction_removes_avoidable_crossing(self):
        graph = digraph([("a", "d"), ("b", "c")])

        ordering, crossings = reduce_crossings(graph, [["a", "b"], ["c", "d"]])

        assert crossings == 0
        assert ordering == [["a", "b"], ["d", "c"]]

    def test_crossing_free_ordering_is_kept(self):
        graph = digraph([("a", "c"), ("b", "d")])
        ordering = [["b", "a"], ["d", "c"]]

        assert reduce_crossings(graph, ordering) == (ordering, 0)


class TestCoordinates:
    """Tests for coordinate assignment."""

    def test_chain_is_laid_out_along_layers(self):
        graph = digraph([(1, 2), (2, 3)])

        positions = assign_coordinates(graph, [[1], [2], [3]], fixed_size, Vec2(20, 20))

        assert positions == {1: Point(0, 0), 2: Point(100, 0), 3: Point(200, 0)}

    def test_fork_and_join_are_centred(self):
        graph = digraph([(1, 2), (1, 3), (2, 4), (3, 4)])

        positions = assign_coordinates(graph, [[1], [2, 3], [4]], fixed_size, Vec2(20, 20))

        assert positions[2].y < positions[3].y
        assert positions[3].y - positions[2].y >= 40 + 20
        assert positions[1].y == pytest.approx((positions[2].y + positions[3].y) / 2)
        assert positions[4].y == pytest.approx(positions[1].y)

    def test_nodes_in_a_layer_never_overlap(self):
        graph = digraph([(0, n) for n in range(1, 6)] + [(n, 9) for n in range(1, 6)])
        ordering = [[0], [1, 2, 3, 4, 5], [9]]

        positions = assign_coordinates(graph, ordering, fixed_size, Vec2(20, 10))

        tops = [positions[n].y for n in ordering[1]]
        assert all(b - a >= 40 + 10 - 1e-9 for a, b in zip(tops, tops[1:]))
        assert min(p.x for p in positions.values()) == 0
        assert min(p.y for p in positions.values()) == 0

    def test_empty_ordering(self):
        assert assign_coordinates(nx.DiGraph(), [], fixed_size, Vec2(20, 20)) == {}


class TestLayeredLayout:
    """Tests for LayeredLayout on single components."""

    def test_edges_point_to_later_layers(self):
        layout = LayeredLayout()
        edges = [(1, 2), (1, 3), (2, 4), (3, 4), (4, 5), (1, 5)]

        layers = layout.compute_layers([1, 2, 3, 4, 5], edges, identity)

        placement = layers.placement()
        assert all(placement[u][0] < placement[v][0] for u, v in edges)
        assert layers.feedback_edges == set()
        assert not layers.degenerate

    def test_cycle_reports_feedback_edge_and_chain(self):
        layout = LayeredLayout()

        layers = layout.compute_layers([1, 2, 3], [(1, 2), (2, 3), (3, 1)], identity)

        assert layers.feedback_edges == {(3, 1)}
        assert layers.placement() == {1: (0, 0), 2: (1, 0), 3: (2, 0)}
        assert layers.edge_chain(3, 1) == [VirtualNode(1, 3, 1)]

    def test_self_loop_is_recorded(self):
        layers = LayeredLayout().compute_layers([1, 2], [(1, 2), (2, 2)], identity)

        assert layers.self_loops == {2}
        assert layers.placement() == {1: (0, 0), 2: (1, 0)}

    def test_ties_follow_creation_order(self):
        layers = LayeredLayout().compute_layers([3, 1, 2], [(3, 4), (1, 4), (2, 4)], identity)

        assert layers.ordering[0] == [1, 2, 3]

    def test_previous_order_is_kept(self):
        previous = {2: (0, 0), 1: (0, 1), 3: (1, 0)}

        layers = LayeredLayout().compute_layers(
            [1, 2, 3], [(1, 3), (2, 3)], identity, previous
        )

        assert layers.ordering[0] == [2, 1]

    def test_degenerate_layers(self):
        layers = LayeredLayout().degenerate_layers([3, 1, 2], identity)

        assert layers.degenerate
        assert layers.ordering == [[1, 2, 3]]
        assert layers.placement() == {1: (0, 0), 2: (0, 1), 3: (0, 2)}

    def test_positions_and_waypoints(self):
        layout = LayeredLayout()
        layers = layout.compute_layers([1, 2, 3], [(1, 2), (2, 3), (1, 3)], identity)

        positions, waypoints = layout.compute_positions(layers, fixed_size)

        assert positions[1].x < positions[2].x < positions[3].x
        assert len(waypoints[(1, 3)]) == 1
        assert positions[1].x < waypoints[(1, 3)][0].x < positions[3].x

    def test_top_to_bottom_direction(self):
        layout = LayeredLayout(direction="TB")
        layers = layout.compute_layers([1, 2], [(1, 2)], identity)

        positions, _ = layout.compute_positions(layers, fixed_size)

        assert positions[1].x == positions[2].x
        assert positions[2].y >= positions[1].y + 40 + 20


class TestSizeHints:
    """Tests for node size estimation."""

    def test_estimate_respects_minimum(self):
        hints = SizeHints()
        assert hints.estimate("abc") == Vec2(80.0, 40.0)

    def test_estimate_grows_with_label_and_ports(self):
        hints = SizeHints()

        size = hints.estimate("a" * 20, inputs=5, outputs=2)

        assert size == Vec2(20 * 7.0 + 24.0, 5 * 18.0 + 24.0)

    def test_explicit_size_wins(self):
        hints = SizeHints()
        version = hints.version

        hints.set(1, Vec2(300, 200))

        assert hints.explicit(1) == Vec2(300, 200)
        assert hints.version == version + 1
        hints.clear(1)
        assert hints.explicit(1) is None
