"""In-memory working graph.

Mutable adjacency structure keyed by VertexId, separate from the persisted
content-addressed form. Every mutator validates first and only then
changes state, so a failed call leaves the graph untouched.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator

from .errors import DuplicateEdge, DuplicateVertex, UnknownEdge, UnknownVertex
from .models import Attributes, GraphView

EdgeKey = tuple[int, int]


@dataclass
class WorkingGraph:
    """Directed graph with per-vertex and per-edge attributes.

    Vertices and edges iterate in insertion order. Includes indices for
    O(1) neighbour lookups:
    - _outgoing: vertex id -> heads of edges leaving it
    - _incoming: vertex id -> tails of edges entering it
    """

    _vertices: dict[int, Attributes] = field(default_factory=dict)
    _edges: dict[EdgeKey, Attributes] = field(default_factory=dict)

    _outgoing: dict[int, list[int]] = field(default_factory=dict)
    _incoming: dict[int, list[int]] = field(default_factory=dict)

    # ─────────────────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────────────────

    def is_empty(self) -> bool:
        """True if the graph has no vertices (and therefore no edges)."""
        return not self._vertices

    def vertex_count(self) -> int:
        return len(self._vertices)

    def edge_count(self) -> int:
        return len(self._edges)

    def contains_vertex(self, vertex_id: int) -> bool:
        return vertex_id in self._vertices

    def contains_edge(self, from_vertex: int, to_vertex: int) -> bool:
        return (from_vertex, to_vertex) in self._edges

    def vertices(self) -> Iterator[int]:
        return iter(self._vertices)

    def edges(self) -> Iterator[EdgeKey]:
        return iter(self._edges)

    def outbound_edges(self, vertex_id: int) -> list[EdgeKey]:
        return [(vertex_id, head) for head in self._outgoing.get(vertex_id, [])]

    def inbound_edges(self, vertex_id: int) -> list[EdgeKey]:
        return [(tail, vertex_id) for tail in self._incoming.get(vertex_id, [])]

    def incident_edges(self, vertex_id: int) -> list[EdgeKey]:
        """Outbound then inbound edges, a self-loop listed once."""
        edges = self.outbound_edges(vertex_id)
        edges += [e for e in self.inbound_edges(vertex_id) if e[0] != vertex_id]
        return edges

    def degree_out(self, vertex_id: int) -> int:
        return len(self._outgoing.get(vertex_id, []))

    def degree_in(self, vertex_id: int) -> int:
        return len(self._incoming.get(vertex_id, []))

    def vertex_attributes(self, vertex_id: int) -> Attributes:
        if vertex_id not in self._vertices:
            raise UnknownVertex(vertex_id)
        return dict(self._vertices[vertex_id])

    def edge_attributes(self, from_vertex: int, to_vertex: int) -> Attributes:
        key = (from_vertex, to_vertex)
        if key not in self._edges:
            raise UnknownEdge(from_vertex, to_vertex)
        return dict(self._edges[key])

    def view(self) -> GraphView:
        """Snapshot for display: vertex ids and edge pairs in insertion order."""
        return GraphView(vertices=list(self._vertices), edges=list(self._edges))

    # ─────────────────────────────────────────────────────────────────────────
    # Mutations
    # ─────────────────────────────────────────────────────────────────────────

    def add_vertex(self, vertex_id: int, attributes: Attributes | None = None) -> None:
        if vertex_id in self._vertices:
            raise DuplicateVertex(vertex_id)
        self._vertices[vertex_id] = dict(attributes or {})

    def remove_vertex(self, vertex_id: int) -> list[EdgeKey]:
        """Remove a vertex and every incident edge.

        Returns:
            The edges removed along with the vertex
        """
        if vertex_id not in self._vertices:
            raise UnknownVertex(vertex_id)

        removed = self.incident_edges(vertex_id)
        for tail, head in removed:
            self._unlink(tail, head)
        del self._vertices[vertex_id]
        self._outgoing.pop(vertex_id, None)
        self._incoming.pop(vertex_id, None)
        return removed

    def add_edge(
        self, from_vertex: int, to_vertex: int, attributes: Attributes | None = None
    ) -> None:
        for vertex_id in (from_vertex, to_vertex):
            if vertex_id not in self._vertices:
                raise UnknownVertex(vertex_id)
        key = (from_vertex, to_vertex)
        if key in self._edges:
            raise DuplicateEdge(from_vertex, to_vertex)

        self._edges[key] = dict(attributes or {})
        self._outgoing.setdefault(from_vertex, []).append(to_vertex)
        self._incoming.setdefault(to_vertex, []).append(from_vertex)

    def remove_edge(self, from_vertex: int, to_vertex: int) -> None:
        if (from_vertex, to_vertex) not in self._edges:
            raise UnknownEdge(from_vertex, to_vertex)
        self._unlink(from_vertex, to_vertex)

    def set_vertex_attributes(self, vertex_id: int, attributes: Attributes) -> None:
        if vertex_id not in self._vertices:
            raise UnknownVertex(vertex_id)
        self._vertices[vertex_id] = dict(attributes)

    def set_edge_attributes(
        self, from_vertex: int, to_vertex: int, attributes: Attributes
    ) -> None:
        key = (from_vertex, to_vertex)
        if key not in self._edges:
            raise UnknownEdge(from_vertex, to_vertex)
        self._edges[key] = dict(attributes)

    def _unlink(self, tail: int, head: int) -> None:
        """Drop an edge from the edge map and both indices."""
        del self._edges[(tail, head)]

        heads = self._outgoing.get(tail)
        if heads is not None:
            heads.remove(head)
            if not heads:
                del self._outgoing[tail]

        tails = self._incoming.get(head)
        if tails is not None:
            tails.remove(tail)
            if not tails:
                del self._incoming[head]

    # ─────────────────────────────────────────────────────────────────────────
    # Utilities
    # ─────────────────────────────────────────────────────────────────────────

    def copy(self) -> WorkingGraph:
        """Deep copy, used to roll back a failed batch."""
        return WorkingGraph(
            _vertices={v: dict(a) for v, a in self._vertices.items()},
            _edges={e: dict(a) for e, a in self._edges.items()},
            _outgoing={v: list(h) for v, h in self._outgoing.items()},
            _incoming={v: list(t) for v, t in self._incoming.items()},
        )

    def check_index_consistency(self) -> list[str]:
        """Validate that indices match the edge map. Returns list of errors.

        This is a debug/test utility to detect index drift after incremental
        updates. An empty list means indices are consistent.
        """
        errors: list[str] = []

        expected_outgoing: dict[int, list[int]] = {}
        expected_incoming: dict[int, list[int]] = {}
        for tail, head in self._edges:
            expected_outgoing.setdefault(tail, []).append(head)
            expected_incoming.setdefault(head, []).append(tail)
            for vertex_id in (tail, head):
                if vertex_id not in self._vertices:
                    errors.append(f"edge ({tail}, {head}) references missing vertex {vertex_id}")

        for name, expected, actual in (
            ("_outgoing", expected_outgoing, self._outgoing),
            ("_incoming", expected_incoming, self._incoming),
        ):
            for vertex_id in set(expected) | set(actual):
                if sorted(expected.get(vertex_id, [])) != sorted(actual.get(vertex_id, [])):
                    errors.append(
                        f"{name}[{vertex_id}] mismatch: expected {expected.get(vertex_id, [])}, "
                        f"got {actual.get(vertex_id, [])}"
                    )

        return errors
