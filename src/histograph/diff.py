"""Structural diff between two working graphs.

The diff is taken from the first graph's point of view: ``extra_*`` is what
only the first graph has, ``missing_*`` what only the second has.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from .commands import (
    AddEdge,
    AddVertex,
    GraphCommand,
    RemoveEdge,
    RemoveVertex,
    SetEdgeAttributes,
    SetVertexAttributes,
)
from .graph import EdgeKey, WorkingGraph
from .models import Attributes


@dataclass
class StructureDiff:
    """Vertices, edges and attribute values that differ between two graphs.

    Attribute changes are kept as (old, new) pairs for vertices and edges
    present in both graphs.
    """

    extra_vertices: list[int] = field(default_factory=list)
    missing_vertices: list[int] = field(default_factory=list)
    extra_edges: list[EdgeKey] = field(default_factory=list)
    missing_edges: list[EdgeKey] = field(default_factory=list)
    changed_vertices: dict[int, tuple[Attributes, Attributes]] = field(default_factory=dict)
    changed_edges: dict[EdgeKey, tuple[Attributes, Attributes]] = field(default_factory=dict)

    # Attributes of missing vertices/edges, needed to rebuild them
    missing_vertex_attributes: dict[int, Attributes] = field(default_factory=dict)
    missing_edge_attributes: dict[EdgeKey, Attributes] = field(default_factory=dict)
    extra_vertex_attributes: dict[int, Attributes] = field(default_factory=dict)
    extra_edge_attributes: dict[EdgeKey, Attributes] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not (
            self.extra_vertices
            or self.missing_vertices
            or self.extra_edges
            or self.missing_edges
            or self.changed_vertices
            or self.changed_edges
        )

    def reverse(self) -> StructureDiff:
        """The same diff seen from the second graph."""
        return StructureDiff(
            extra_vertices=list(self.missing_vertices),
            missing_vertices=list(self.extra_vertices),
            extra_edges=list(self.missing_edges),
            missing_edges=list(self.extra_edges),
            changed_vertices={k: (new, old) for k, (old, new) in self.changed_vertices.items()},
            changed_edges={k: (new, old) for k, (old, new) in self.changed_edges.items()},
            missing_vertex_attributes=dict(self.extra_vertex_attributes),
            missing_edge_attributes=dict(self.extra_edge_attributes),
            extra_vertex_attributes=dict(self.missing_vertex_attributes),
            extra_edge_attributes=dict(self.missing_edge_attributes),
        )

    def as_commands(self) -> list[GraphCommand]:
        """Patch that turns the first graph into the second.

        Edge removals come before vertex removals, and vertex additions
        before edge additions, so every command is valid when applied in
        order. Attribute assignments come last.
        """
        commands: list[GraphCommand] = []
        for tail, head in self.extra_edges:
            commands.append(RemoveEdge(from_vertex=tail, to_vertex=head))
        for vertex_id in self.extra_vertices:
            commands.append(RemoveVertex(vertex_id=vertex_id))
        for vertex_id in self.missing_vertices:
            commands.append(AddVertex(vertex_id=vertex_id))
        for tail, head in self.missing_edges:
            commands.append(AddEdge(from_vertex=tail, to_vertex=head))

        for vertex_id in self.missing_vertices:
            attributes = self.missing_vertex_attributes.get(vertex_id)
            if attributes:
                commands.append(SetVertexAttributes(vertex_id=vertex_id, attributes=attributes))
        for vertex_id, (_, new) in self.changed_vertices.items():
            commands.append(SetVertexAttributes(vertex_id=vertex_id, attributes=new))
        for key in self.missing_edges:
            attributes = self.missing_edge_attributes.get(key)
            if attributes:
                commands.append(
                    SetEdgeAttributes(from_vertex=key[0], to_vertex=key[1], attributes=attributes)
                )
        for (tail, head), (_, new) in self.changed_edges.items():
            commands.append(SetEdgeAttributes(from_vertex=tail, to_vertex=head, attributes=new))
        return commands

    def to_summary(self) -> dict:
        """JSON-ready summary, as printed by ``histograph diff --json``."""
        return {
            "vertices": {
                "extra": self.extra_vertices,
                "missing": self.missing_vertices,
                "changed": sorted(self.changed_vertices),
            },
            "edges": {
                "extra": [list(e) for e in self.extra_edges],
                "missing": [list(e) for e in self.missing_edges],
                "changed": [list(e) for e in sorted(self.changed_edges)],
            },
        }


def diff(g1: WorkingGraph, g2: WorkingGraph) -> StructureDiff:
    """Compute the diff between two graphs from the point of view of g1.

    Results follow g1's insertion order for ``extra_*`` and g2's for
    ``missing_*``.
    """
    result = StructureDiff()

    for vertex_id in g1.vertices():
        if not g2.contains_vertex(vertex_id):
            result.extra_vertices.append(vertex_id)
            result.extra_vertex_attributes[vertex_id] = g1.vertex_attributes(vertex_id)
            continue
        old, new = g1.vertex_attributes(vertex_id), g2.vertex_attributes(vertex_id)
        if old != new:
            result.changed_vertices[vertex_id] = (old, new)

    for vertex_id in g2.vertices():
        if not g1.contains_vertex(vertex_id):
            result.missing_vertices.append(vertex_id)
            result.missing_vertex_attributes[vertex_id] = g2.vertex_attributes(vertex_id)

    for key in g1.edges():
        if not g2.contains_edge(*key):
            result.extra_edges.append(key)
            result.extra_edge_attributes[key] = g1.edge_attributes(*key)
            continue
        old, new = g1.edge_attributes(*key), g2.edge_attributes(*key)
        if old != new:
            result.changed_edges[key] = (old, new)

    for key in g2.edges():
        if not g1.contains_edge(*key):
            result.missing_edges.append(key)
            result.missing_edge_attributes[key] = g2.edge_attributes(*key)

    return result
