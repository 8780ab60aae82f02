"""
Tests for the breadth-first layout.
"""

from flowpilot.graph.layout import (
    LayoutConfig,
    Orientation,
    assign_levels,
    layout_nodes,
)
from flowpilot.graph.models import NodeKind, Position

from tests.helpers import make_edge, make_node


def build_tree():
    start = make_node(NodeKind.MANUAL_START, "Start")
    a = make_node(NodeKind.HTTP, "A")
    b = make_node(NodeKind.JAVASCRIPT, "B")
    c = make_node(NodeKind.JAVASCRIPT, "C")
    edges = [make_edge(start, a), make_edge(start, b), make_edge(a, c)]
    return [start, a, b, c], edges


class TestAssignLevels:
    """BFS level assignment."""

    def test_levels_follow_bfs_depth(self):
        (start, a, b, c), edges = build_tree()
        assert assign_levels(start.id, edges) == {start.id: 0, a.id: 1, b.id: 1, c.id: 2}

    def test_first_assignment_wins(self):
        start = make_node(NodeKind.MANUAL_START, "Start")
        a = make_node(NodeKind.JAVASCRIPT, "A")
        b = make_node(NodeKind.JAVASCRIPT, "B")
        edges = [make_edge(start, a), make_edge(a, b), make_edge(start, b)]

        levels = assign_levels(start.id, edges)

        # b is reached directly from start before the longer path via a
        assert levels[b.id] == 1

    def test_cycles_do_not_loop(self):
        start = make_node(NodeKind.MANUAL_START, "Start")
        a = make_node(NodeKind.JAVASCRIPT, "A")
        edges = [make_edge(start, a), make_edge(a, start)]

        assert assign_levels(start.id, edges) == {start.id: 0, a.id: 1}


class TestLayoutNodes:
    """Positions derived from levels."""

    def test_horizontal_layout_centres_siblings(self):
        (start, a, b, c), edges = build_tree()

        result = layout_nodes([start, a, b, c], edges, LayoutConfig())

        assert result.positions[start.id] == Position(0.0, 0.0)
        assert result.positions[a.id] == Position(300.0, -75.0)
        assert result.positions[b.id] == Position(300.0, 75.0)
        assert result.positions[c.id] == Position(600.0, 0.0)

    def test_vertical_layout_swaps_axes(self):
        (start, a, b, c), edges = build_tree()
        config = LayoutConfig(orientation=Orientation.VERTICAL)

        result = layout_nodes([start, a, b, c], edges, config)

        assert result.positions[a.id] == Position(-75.0, 300.0)
        assert result.positions[c.id] == Position(0.0, 600.0)

    def test_origin_and_spacing(self):
        (start, a, b, c), edges = build_tree()
        config = LayoutConfig(spacing_primary=100, spacing_secondary=40, start_x=10, start_y=20)

        result = layout_nodes([start, a, b, c], edges, config)

        assert result.positions[start.id] == Position(10.0, 20.0)
        assert result.positions[b.id] == Position(110.0, 40.0)

    def test_is_deterministic(self):
        nodes, edges = build_tree()

        first = layout_nodes(nodes, edges)
        second = layout_nodes(nodes, edges)

        assert first == second
        assert list(first.positions) == list(second.positions)

    def test_unreached_nodes_keep_no_position(self):
        nodes, edges = build_tree()
        lonely = make_node(NodeKind.JAVASCRIPT, "Lonely")

        result = layout_nodes(nodes + [lonely], edges)

        assert lonely.id not in result.positions
        assert len(result.positions) == 4

    def test_no_start_node(self):
        a = make_node(NodeKind.JAVASCRIPT, "A")
        assert layout_nodes([a], []) is None

    def test_edges_to_unknown_nodes_are_ignored(self):
        (start, a, b, c), edges = build_tree()
        ghost = make_node(NodeKind.JAVASCRIPT, "Ghost")
        edges.append(make_edge(start, ghost))

        result = layout_nodes([start, a, b, c], edges)

        assert ghost.id not in result.positions
        assert result.positions[a.id] == Position(300.0, -75.0)
