"""Graph object model: typed objects to and from the object store.

Stateless translator. Edges and graphs reference vertices and edges by
digest, never by vertex id, so several graphs and edges can share one
stored vertex. Keeping those references current after a vertex changes is
the mutation engine's job; this module only provides ``rehash_edge``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, TypeVar

from .codec import HashedObject, ObjectKind, decode, encode, kind_of
from .errors import DanglingReference
from .graph import EdgeKey, WorkingGraph
from .models import Attributes, Commit, Digest, Edge, Graph, Vertex, VertexSet
from .store import ObjectStore

logger = logging.getLogger(__name__)

VERTEX_NAMESPACE = "vertex"
EDGE_NAMESPACE = "edge"
VERTEX_SET_NAMESPACE = "vertexvec"
GRAPH_NAMESPACE = "graph"
COMMIT_NAMESPACE = "commit"

NAMESPACES: dict[ObjectKind, str] = {
    ObjectKind.VERTEX: VERTEX_NAMESPACE,
    ObjectKind.EDGE: EDGE_NAMESPACE,
    ObjectKind.VERTEX_SET: VERTEX_SET_NAMESPACE,
    ObjectKind.GRAPH: GRAPH_NAMESPACE,
    ObjectKind.COMMIT: COMMIT_NAMESPACE,
}

T = TypeVar("T", Vertex, Edge, VertexSet, Graph, Commit)


def namespace_for(obj_or_type) -> str:
    """Blob-store namespace holding objects of this kind."""
    return NAMESPACES[kind_of(obj_or_type)]


@dataclass
class MaterializedGraph:
    """A persisted graph rebuilt in memory, with the digests it came from."""

    graph: WorkingGraph
    vertex_digests: dict[int, Digest] = field(default_factory=dict)
    edge_digests: dict[EdgeKey, Digest] = field(default_factory=dict)
    edges: dict[EdgeKey, Edge] = field(default_factory=dict)


class GraphObjectModel:
    """Stores and loads vertices, edges, vertex sets and graphs."""

    def __init__(self, store: ObjectStore, strict: bool = False):
        """Initialize the object model.

        Args:
            store: Backing object store
            strict: Validate that referenced objects exist on write
        """
        self.store = store
        self.strict = strict

    def put(self, obj: HashedObject) -> Digest:
        """Encode and store any hashed object under its kind's namespace."""
        return self.store.put(encode(obj), namespace_for(obj))

    def get(self, digest: Digest, cls: type[T]) -> T:
        """Load and decode an object of a known type."""
        return decode(self.store.get(digest, namespace_for(cls)), expected=cls)

    def _require(self, digests: Iterable[Digest], namespace: str, referrer: Digest | None = None) -> None:
        for digest in digests:
            if not self.store.contains(digest, namespace):
                raise DanglingReference(digest, namespace, referrer)

    # ─────────────────────────────────────────────────────────────────────────
    # Vertices
    # ─────────────────────────────────────────────────────────────────────────

    def store_vertex(self, vertex: Vertex) -> Digest:
        return self.put(vertex)

    def store_vertices(
        self, vertices: Iterable[Vertex], max_workers: int | None = None
    ) -> list[Digest]:
        """Store several unrelated vertices; digests come back in input order."""
        return self.store.put_many(
            [encode(v) for v in vertices], VERTEX_NAMESPACE, max_workers=max_workers
        )

    def load_vertex(self, digest: Digest) -> Vertex:
        return self.get(digest, Vertex)

    # ─────────────────────────────────────────────────────────────────────────
    # Edges
    # ─────────────────────────────────────────────────────────────────────────

    def store_edge(
        self, tail: Digest, head: Digest, attributes: Attributes | None = None
    ) -> Digest:
        """Store an edge between two vertex versions.

        The endpoints need not exist yet unless the model is strict; storing
        them first is the caller's responsibility.
        """
        if self.strict:
            self._require((tail, head), VERTEX_NAMESPACE)
        return self.put(Edge(tail_digest=tail, head_digest=head, attributes=attributes or {}))

    def load_edge(self, digest: Digest) -> Edge:
        """Load an edge, checking that both endpoint vertices are present.

        Raises:
            NotFound: No edge with that digest
            DanglingReference: An endpoint vertex is missing from the store
        """
        edge = self.get(digest, Edge)
        self._require((edge.tail_digest, edge.head_digest), VERTEX_NAMESPACE, referrer=digest)
        return edge

    @staticmethod
    def rehash_edge(
        old_edge: Edge,
        new_tail: Digest | None = None,
        new_head: Digest | None = None,
    ) -> Edge:
        """Derive the edge that points at the new version of a mutated endpoint.

        Pure: nothing is stored. The caller stores the result and swaps the
        old edge digest for the new one in the graph's edge list.
        """
        return Edge(
            tail_digest=new_tail if new_tail is not None else old_edge.tail_digest,
            head_digest=new_head if new_head is not None else old_edge.head_digest,
            attributes=old_edge.attributes,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Vertex sets and graphs
    # ─────────────────────────────────────────────────────────────────────────

    def store_vertex_set(self, digests: Iterable[Digest]) -> Digest:
        vertex_set = VertexSet(digests=list(digests))
        if self.strict:
            self._require(vertex_set.digests, VERTEX_NAMESPACE)
        return self.put(vertex_set)

    def load_vertex_set(self, digest: Digest) -> VertexSet:
        return self.get(digest, VertexSet)

    def store_graph(
        self, vertex_digests: Iterable[Digest], edge_digests: Iterable[Digest]
    ) -> Digest:
        graph = Graph(vertex_digests=list(vertex_digests), edge_digests=list(edge_digests))
        if self.strict:
            self._require(graph.vertex_digests, VERTEX_NAMESPACE)
            self._require(graph.edge_digests, EDGE_NAMESPACE)
        digest = self.put(graph)
        logger.debug(
            f"Stored graph {digest.short()}: {len(graph.vertex_digests)} vertices, "
            f"{len(graph.edge_digests)} edges"
        )
        return digest

    def load_graph(self, digest: Digest) -> Graph:
        return self.get(digest, Graph)

    def verify_graph(self, digest: Digest) -> Graph:
        """Load a graph and check every object it references, transitively.

        Raises:
            NotFound: The graph itself is missing
            DanglingReference: A referenced vertex or edge is missing
        """
        graph = self.load_graph(digest)
        self._require(graph.vertex_digests, VERTEX_NAMESPACE, referrer=digest)
        self._require(graph.edge_digests, EDGE_NAMESPACE, referrer=digest)
        members = set(graph.vertex_digests)
        for edge_digest in graph.edge_digests:
            edge = self.load_edge(edge_digest)
            for endpoint in (edge.tail_digest, edge.head_digest):
                if endpoint not in members:
                    raise DanglingReference(endpoint, VERTEX_NAMESPACE, referrer=edge_digest)
        return graph

    def materialize(self, digest: Digest) -> MaterializedGraph:
        """Rebuild a working graph from a persisted graph.

        Raises:
            DanglingReference: An edge points at a vertex version that is
                not a member of this graph, or at a missing object
        """
        graph = self.load_graph(digest)
        result = MaterializedGraph(graph=WorkingGraph())
        id_by_digest: dict[Digest, int] = {}

        for vertex_digest in graph.vertex_digests:
            try:
                vertex = self.load_vertex(vertex_digest)
            except LookupError as e:
                raise DanglingReference(vertex_digest, VERTEX_NAMESPACE, referrer=digest) from e
            result.graph.add_vertex(vertex.vertex_id, vertex.attributes)
            result.vertex_digests[vertex.vertex_id] = vertex_digest
            id_by_digest[vertex_digest] = vertex.vertex_id

        for edge_digest in graph.edge_digests:
            try:
                edge = self.load_edge(edge_digest)
            except DanglingReference:
                raise
            except LookupError as e:
                raise DanglingReference(edge_digest, EDGE_NAMESPACE, referrer=digest) from e
            ends = []
            for endpoint in (edge.tail_digest, edge.head_digest):
                if endpoint not in id_by_digest:
                    raise DanglingReference(endpoint, VERTEX_NAMESPACE, referrer=edge_digest)
                ends.append(id_by_digest[endpoint])
            key = (ends[0], ends[1])
            result.graph.add_edge(key[0], key[1], edge.attributes)
            result.edge_digests[key] = edge_digest
            result.edges[key] = edge

        return result
