"""Tests for structural diffs between graphs."""

from histograph.commands import (
    AddEdge,
    AddVertex,
    RemoveEdge,
    RemoveVertex,
    SetEdgeAttributes,
    SetVertexAttributes,
)
from histograph.diff import diff
from histograph.graph import WorkingGraph
from histograph.mutation import MutationEngine
from histograph.objects import GraphObjectModel
from histograph.store import ObjectStore


def make_graph(vertices, edges, attrs=None):
    g = WorkingGraph()
    for v in vertices:
        g.add_vertex(v, (attrs or {}).get(v))
    for tail, head in edges:
        g.add_edge(tail, head)
    return g


def test_identical_graphs():
    g = make_graph([1, 2], [(1, 2)])
    result = diff(g, g.copy())
    assert result.is_empty()
    assert result.as_commands() == []


def test_point_of_view():
    g1 = make_graph([1, 2, 3], [(1, 2), (2, 3)])
    g2 = make_graph([1, 2, 4], [(1, 2), (2, 4)])
    result = diff(g1, g2)
    assert result.extra_vertices == [3]
    assert result.missing_vertices == [4]
    assert result.extra_edges == [(2, 3)]
    assert result.missing_edges == [(2, 4)]


def test_reverse_swaps_sides():
    g1 = make_graph([1, 2], [(1, 2)], {1: {"a": "1"}})
    g2 = make_graph([1, 3], [], {1: {"a": "2"}})
    forward = diff(g1, g2)
    backward = forward.reverse()
    expected = diff(g2, g1)
    assert backward.extra_vertices == expected.extra_vertices
    assert backward.missing_vertices == expected.missing_vertices
    assert backward.extra_edges == expected.extra_edges
    assert backward.missing_edges == expected.missing_edges
    assert backward.changed_vertices == expected.changed_vertices


def test_patch_order():
    g1 = make_graph([1, 2], [(1, 2)])
    g2 = make_graph([1, 3], [(1, 3)])
    assert diff(g1, g2).as_commands() == [
        RemoveEdge(from_vertex=1, to_vertex=2),
        RemoveVertex(vertex_id=2),
        AddVertex(vertex_id=3),
        AddEdge(from_vertex=1, to_vertex=3),
    ]


def test_attribute_changes_in_patch():
    g1 = make_graph([1, 2], [(1, 2)])
    g2 = make_graph([1, 2, 5], [(1, 2)], {1: {"name": "x"}, 5: {"new": "y"}})
    g2.set_edge_attributes(1, 2, {"w": "3"})
    result = diff(g1, g2)
    assert result.changed_vertices == {1: ({}, {"name": "x"})}
    assert result.changed_edges == {(1, 2): ({}, {"w": "3"})}
    commands = result.as_commands()
    assert SetVertexAttributes(vertex_id=5, attributes={"new": "y"}) in commands
    assert SetVertexAttributes(vertex_id=1, attributes={"name": "x"}) in commands
    assert SetEdgeAttributes(from_vertex=1, to_vertex=2, attributes={"w": "3"}) in commands


def test_patch_turns_first_graph_into_second():
    """Applying the patch to g1 through an engine reproduces g2's digest."""
    g1_commands = [
        AddVertex(vertex_id=1), AddVertex(vertex_id=2), AddVertex(vertex_id=3),
        AddEdge(from_vertex=1, to_vertex=2), AddEdge(from_vertex=2, to_vertex=3),
    ]
    g2_commands = [
        AddVertex(vertex_id=1), AddVertex(vertex_id=3), AddVertex(vertex_id=4),
        AddEdge(from_vertex=3, to_vertex=1), AddEdge(from_vertex=1, to_vertex=4),
        SetVertexAttributes(vertex_id=3, attributes={"k": "v"}),
    ]
    engine = MutationEngine(GraphObjectModel(ObjectStore()))
    engine.apply_all(g1_commands)
    target = MutationEngine(GraphObjectModel(ObjectStore()))
    target.apply_all(g2_commands)

    engine.apply_all(diff(engine.graph, target.graph).as_commands())

    assert set(engine.show().vertices) == set(target.show().vertices)
    assert set(engine.show().edges) == set(target.show().edges)
    assert engine.graph.vertex_attributes(3) == {"k": "v"}
    assert diff(engine.graph, target.graph).is_empty()


def test_summary():
    g1 = make_graph([1], [])
    g2 = make_graph([1, 2], [(1, 2)])
    summary = diff(g1, g2).to_summary()
    assert summary["vertices"]["missing"] == [2]
    assert summary["edges"]["missing"] == [[1, 2]]
