"""Mutation engine - applies graph commands and persists the working graph.

The engine keeps an arena of the current digest per vertex id and per edge.
When a vertex changes content its digest changes, so every edge touching
it is re-derived with ``rehash_edge`` and re-stored, and the persisted
graph lists the new edge digests. Old objects stay in the store untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

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
from .models import Digest, Edge, GraphView, Vertex
from .objects import GraphObjectModel

logger = logging.getLogger(__name__)


@dataclass
class _Snapshot:
    graph: WorkingGraph
    vertex_digests: dict[int, Digest]
    edge_digests: dict[EdgeKey, Digest]
    edges: dict[EdgeKey, Edge]
    dirty_vertices: set[int]
    dirty_edges: set[EdgeKey]
    pending: bool
    head: Digest | None


class MutationEngine:
    """State machine over a private working graph.

    Thread-safety: one writer per engine. Commands are applied strictly in
    sequence; replaying the same sequence from the same state yields the
    same working graph and the same digests.
    """

    def __init__(self, objects: GraphObjectModel, max_workers: int | None = None):
        """Initialize the engine with an empty working graph.

        Args:
            objects: Graph object model used for persistence
            max_workers: Threads used to store changed vertices in parallel
        """
        self.objects = objects
        self.max_workers = max_workers
        self.graph = WorkingGraph()
        self.head: Digest | None = None  # last persisted graph digest

        # Arena: current persisted digest per vertex id / edge
        self._vertex_digests: dict[int, Digest] = {}
        self._edge_digests: dict[EdgeKey, Digest] = {}
        self._edges: dict[EdgeKey, Edge] = {}

        # Changed since the last persistence point
        self._dirty_vertices: set[int] = set()
        self._dirty_edges: set[EdgeKey] = set()
        self._pending = False

    @property
    def has_pending_changes(self) -> bool:
        """True if commands were applied since the last persist or load."""
        return self._pending

    # ─────────────────────────────────────────────────────────────────────────
    # Applying commands
    # ─────────────────────────────────────────────────────────────────────────

    def apply(self, command: GraphCommand, persist: bool = True) -> Digest | None:
        """Apply one command; on failure the working graph is unchanged.

        Returns:
            The new graph digest when persist is True, else None
        """
        snapshot = self._snapshot()
        try:
            self._apply(command)
            return self._persist() if persist else None
        except Exception:
            self._restore(snapshot)
            raise

    def apply_all(self, commands: Iterable[GraphCommand], persist: bool = True) -> Digest | None:
        """Apply a batch atomically, then persist once.

        If any command fails, or persisting the result fails, every command
        of the batch is rolled back and the error is re-raised.
        """
        snapshot = self._snapshot()
        applied = 0
        try:
            for command in commands:
                self._apply(command)
                applied += 1
            return self._persist() if persist else None
        except Exception:
            logger.debug(f"Rolling back batch after {applied} applied commands")
            self._restore(snapshot)
            raise

    def _apply(self, command: GraphCommand) -> None:
        graph = self.graph

        if isinstance(command, AddVertex):
            graph.add_vertex(command.vertex_id)
            self._dirty_vertices.add(command.vertex_id)

        elif isinstance(command, RemoveVertex):
            removed = graph.remove_vertex(command.vertex_id)
            self._forget_vertex(command.vertex_id)
            for key in removed:
                self._forget_edge(key)

        elif isinstance(command, AddEdge):
            graph.add_edge(command.from_vertex, command.to_vertex)
            self._dirty_edges.add((command.from_vertex, command.to_vertex))

        elif isinstance(command, RemoveEdge):
            graph.remove_edge(command.from_vertex, command.to_vertex)
            self._forget_edge((command.from_vertex, command.to_vertex))

        elif isinstance(command, SetVertexAttributes):
            graph.set_vertex_attributes(command.vertex_id, command.attributes)
            self._dirty_vertices.add(command.vertex_id)

        elif isinstance(command, SetEdgeAttributes):
            graph.set_edge_attributes(command.from_vertex, command.to_vertex, command.attributes)
            self._dirty_edges.add((command.from_vertex, command.to_vertex))

        else:
            raise TypeError(f"Unknown command: {command!r}")

        self._pending = True

    def _forget_vertex(self, vertex_id: int) -> None:
        self._vertex_digests.pop(vertex_id, None)
        self._dirty_vertices.discard(vertex_id)

    def _forget_edge(self, key: EdgeKey) -> None:
        self._edge_digests.pop(key, None)
        self._edges.pop(key, None)
        self._dirty_edges.discard(key)

    # ─────────────────────────────────────────────────────────────────────────
    # Persistence
    # ─────────────────────────────────────────────────────────────────────────

    def persist(self) -> Digest:
        """Store the working graph and return its graph digest.

        If storing fails the digest arena is left as it was, so a later
        persist re-derives the same objects.
        """
        snapshot = self._snapshot()
        try:
            return self._persist()
        except Exception:
            self._restore(snapshot)
            raise

    def _persist(self) -> Digest:
        """Store without rollback.

        Steps:
        1. Store every vertex whose content may have changed.
        2. Re-derive every edge touching a vertex whose digest changed, and
           store new or re-attributed edges.
        3. Store the vertex set and the graph, both in insertion order.
        """
        graph = self.graph

        # 1. Vertices
        dirty = [v for v in graph.vertices() if v in self._dirty_vertices]
        vertices = [
            Vertex(vertex_id=v, attributes=graph.vertex_attributes(v)) for v in dirty
        ]
        digests = self.objects.store_vertices(vertices, max_workers=self.max_workers)

        changed: dict[int, Digest] = {}
        for vertex_id, digest in zip(dirty, digests):
            if self._vertex_digests.get(vertex_id) != digest:
                changed[vertex_id] = digest
                self._vertex_digests[vertex_id] = digest

        # 2. Edges
        rehashed = 0
        for key in graph.edges():
            tail, head = key
            if key in self._dirty_edges or key not in self._edges:
                edge = Edge(
                    tail_digest=self._vertex_digests[tail],
                    head_digest=self._vertex_digests[head],
                    attributes=graph.edge_attributes(tail, head),
                )
            elif tail in changed or head in changed:
                edge = self.objects.rehash_edge(
                    self._edges[key],
                    new_tail=changed.get(tail),
                    new_head=changed.get(head),
                )
                rehashed += 1
            else:
                continue

            self._edge_digests[key] = self.objects.store_edge(
                edge.tail_digest, edge.head_digest, edge.attributes
            )
            self._edges[key] = edge

        # 3. Membership and graph
        vertex_digests = [self._vertex_digests[v] for v in graph.vertices()]
        edge_digests = [self._edge_digests[key] for key in graph.edges()]
        self.objects.store_vertex_set(vertex_digests)
        digest = self.objects.store_graph(vertex_digests, edge_digests)

        if changed or rehashed:
            logger.debug(
                f"Persisted {len(changed)} changed vertices, rehashed {rehashed} edges"
            )

        self._dirty_vertices.clear()
        self._dirty_edges.clear()
        self._pending = False
        self.head = digest
        return digest

    def load(self, graph_digest: Digest) -> None:
        """Replace the working graph with a persisted graph state."""
        materialized = self.objects.materialize(graph_digest)
        self.graph = materialized.graph
        self._vertex_digests = materialized.vertex_digests
        self._edge_digests = materialized.edge_digests
        self._edges = materialized.edges
        self._dirty_vertices = set()
        self._dirty_edges = set()
        self._pending = False
        self.head = graph_digest

    def clear(self) -> None:
        """Reset to an empty, never-persisted working graph."""
        self.graph = WorkingGraph()
        self._vertex_digests = {}
        self._edge_digests = {}
        self._edges = {}
        self._dirty_vertices = set()
        self._dirty_edges = set()
        self._pending = False
        self.head = None

    # ─────────────────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────────────────

    def show(self) -> GraphView:
        """Current graph contents: vertex ids and edge pairs."""
        return self.graph.view()

    def vertex_digest(self, vertex_id: int) -> Digest | None:
        """Digest of the last persisted version of a vertex."""
        return self._vertex_digests.get(vertex_id)

    def edge_digest(self, from_vertex: int, to_vertex: int) -> Digest | None:
        """Digest of the last persisted version of an edge."""
        return self._edge_digests.get((from_vertex, to_vertex))

    # ─────────────────────────────────────────────────────────────────────────
    # Rollback
    # ─────────────────────────────────────────────────────────────────────────

    def _snapshot(self) -> _Snapshot:
        return _Snapshot(
            graph=self.graph.copy(),
            vertex_digests=dict(self._vertex_digests),
            edge_digests=dict(self._edge_digests),
            edges=dict(self._edges),
            dirty_vertices=set(self._dirty_vertices),
            dirty_edges=set(self._dirty_edges),
            pending=self._pending,
            head=self.head,
        )

    def _restore(self, snapshot: _Snapshot) -> None:
        self.graph = snapshot.graph
        self._vertex_digests = snapshot.vertex_digests
        self._edge_digests = snapshot.edge_digests
        self._edges = snapshot.edges
        self._dirty_vertices = snapshot.dirty_vertices
        self._dirty_edges = snapshot.dirty_edges
        self._pending = snapshot.pending
        self.head = snapshot.head
