"""Shared test fixtures and helpers for histograph tests."""

import tempfile
from pathlib import Path

import pytest

from histograph.commands import AddEdge, AddVertex
from histograph.history import History
from histograph.models import CommitMetadata
from histograph.mutation import MutationEngine
from histograph.objects import GraphObjectModel
from histograph.repository import Repository
from histograph.store import ObjectStore


# --- Fixtures ---


@pytest.fixture
def temp_dir():
    """Provide a temporary directory, cleaned up after the test."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def store():
    """Provide an in-memory object store."""
    return ObjectStore()


@pytest.fixture
def objects(store):
    return GraphObjectModel(store)


@pytest.fixture
def engine(objects):
    """Provide a mutation engine over an empty in-memory store."""
    return MutationEngine(objects)


@pytest.fixture
def populated_engine(engine):
    """Provide an engine holding the graph 1 -> 2 -> 3, persisted.

    Vertex 1 carries attributes so that attribute changes can be tested.
    """
    engine.apply_all([
        AddVertex(vertex_id=1),
        AddVertex(vertex_id=2),
        AddVertex(vertex_id=3),
        AddEdge(from_vertex=1, to_vertex=2),
        AddEdge(from_vertex=2, to_vertex=3),
    ])
    return engine


@pytest.fixture
def history(objects):
    """Provide a history engine sharing the object model with `engine`."""
    return History(objects)


@pytest.fixture
def repo(temp_dir):
    """Provide a fresh on-disk repository (sqlite backend)."""
    repository = Repository.init(temp_dir / ".histograph")
    yield repository
    repository.close()


# --- Helper Functions (not fixtures) ---


def meta(message: str, timestamp: int = 1_700_000_000) -> CommitMetadata:
    """Helper to build deterministic commit metadata.

    Args:
        message: Commit message
        timestamp: Epoch seconds; fixed by default so commit ids are stable

    Returns:
        A CommitMetadata instance for testing.
    """
    return CommitMetadata(author="test", message=message, timestamp=timestamp)


def commit_graph(engine: MutationEngine, history: History, commands, message: str):
    """Apply commands, persist, and commit on top of HEAD.

    Returns:
        The new commit id.
    """
    graph_digest = engine.apply_all(commands)
    return history.commit_head(graph_digest, meta(message))
