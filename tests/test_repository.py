"""Tests for the on-disk repository."""

import pytest

from histograph.commands import AddEdge, AddVertex, RemoveVertex, SetVertexAttributes
from histograph.config import RepositoryConfig
from histograph.errors import (
    DirtyWorkingGraph,
    HistographError,
    NothingToCommit,
    RepositoryNotFound,
    StorageError,
)
from histograph.models import Commit, Vertex
from histograph.repository import Repository


def test_init_creates_layout(temp_dir):
    repo_dir = temp_dir / ".histograph"
    with Repository.init(repo_dir):
        pass
    assert (repo_dir / "config.json").exists()
    assert (repo_dir / "refs.json").exists()
    assert (repo_dir / "objects.db").exists()


def test_init_twice(temp_dir):
    repo_dir = temp_dir / ".histograph"
    Repository.init(repo_dir).close()
    with pytest.raises(StorageError):
        Repository.init(repo_dir)
    Repository.init(repo_dir, exist_ok=True).close()


def test_open_missing(temp_dir):
    with pytest.raises(RepositoryNotFound):
        Repository.open(temp_dir / "nothing")


def test_apply_and_show(repo):
    repo.apply([AddVertex(vertex_id=1), AddVertex(vertex_id=2), AddEdge(from_vertex=1, to_vertex=2)])
    repo.apply(AddVertex(vertex_id=3))
    view = repo.show()
    assert view.vertices == [1, 2, 3]
    assert view.edges == [(1, 2)]


def test_working_graph_survives_reopen(temp_dir):
    repo_dir = temp_dir / ".histograph"
    with Repository.init(repo_dir) as repo:
        repo.apply([AddVertex(vertex_id=1), AddVertex(vertex_id=2)])
        repo.apply(SetVertexAttributes(vertex_id=2, attributes={"n": "two"}))

    with Repository.open(repo_dir) as repo:
        assert repo.show().vertices == [1, 2]
        assert repo.graph.vertex_attributes(2) == {"n": "two"}
        assert repo.is_dirty()


def test_commit_and_log(repo):
    repo.apply(AddVertex(vertex_id=1))
    c1 = repo.commit("first", author="ada", timestamp=100)
    repo.apply(AddVertex(vertex_id=2))
    c2 = repo.commit("second", timestamp=200)

    log = repo.log()
    assert [cid for cid, _ in log] == [c2, c1]
    assert log[1][1].metadata.author == "ada"
    assert log[0][1].parent_ids == [c1]
    assert not repo.is_dirty()


def test_nothing_to_commit(repo):
    with pytest.raises(NothingToCommit):
        repo.commit("empty")
    repo.apply(AddVertex(vertex_id=1))
    repo.commit("one")
    with pytest.raises(NothingToCommit):
        repo.commit("again")
    repo.commit("allowed", allow_empty=True)
    assert len(repo.log()) == 2


def test_status(repo):
    st = repo.status()
    assert st["branch"] == "master"
    assert st["head"] is None
    assert not st["dirty"]

    repo.apply(AddVertex(vertex_id=1))
    st = repo.status()
    assert st["dirty"]
    assert st["changes"]["vertices"]["missing"] == [1]

    repo.commit("one")
    assert not repo.status()["dirty"]


def test_checkout_refuses_dirty_graph(repo):
    repo.apply(AddVertex(vertex_id=1))
    c1 = repo.commit("one")
    repo.branch_create("feature")
    repo.apply(AddVertex(vertex_id=2))

    with pytest.raises(DirtyWorkingGraph):
        repo.checkout("feature")

    repo.checkout("feature", force=True)
    assert repo.show().vertices == [1]
    assert repo.history.current_branch() == "feature"
    assert repo.history.head_commit() == c1


def test_branch_workflow(repo):
    repo.apply(AddVertex(vertex_id=1))
    base = repo.commit("base")
    repo.branch_create("feature")
    repo.checkout("feature")
    repo.apply(AddVertex(vertex_id=2))
    feature = repo.commit("feature work")

    repo.checkout("master")
    assert repo.show().vertices == [1]
    repo.checkout("feature")
    assert repo.show().vertices == [1, 2]

    assert repo.branches() == {"feature": feature, "master": base}


def test_rebase_current_branch(repo):
    repo.apply(AddVertex(vertex_id=1))
    repo.commit("base")
    repo.branch_create("feature")

    repo.apply(AddVertex(vertex_id=2))
    upstream = repo.commit("upstream")

    repo.checkout("feature")
    repo.apply(AddVertex(vertex_id=10))
    repo.commit("f1")

    new_ids = repo.rebase("master")
    assert len(new_ids) == 1
    replayed = repo.history.load_commit(new_ids[0])
    assert replayed.parent_ids == [upstream]
    # Replay keeps the graph state of the original commit
    assert repo.show().vertices == [1, 10]
    assert not repo.is_dirty()


def test_reset_soft_and_hard(repo):
    repo.apply(AddVertex(vertex_id=1))
    c1 = repo.commit("one")
    repo.apply(AddVertex(vertex_id=2))
    repo.commit("two")

    repo.reset(c1)
    assert repo.history.head_commit() == c1
    assert repo.show().vertices == [1, 2]
    assert repo.is_dirty()

    repo.reset(c1, hard=True)
    assert repo.show().vertices == [1]
    assert not repo.is_dirty()


def test_diff_against_working_graph(repo):
    repo.apply([AddVertex(vertex_id=1), AddVertex(vertex_id=2)])
    c1 = repo.commit("one")
    repo.apply([RemoveVertex(vertex_id=2), AddVertex(vertex_id=3)])

    result = repo.diff("HEAD")
    assert result.extra_vertices == [2]
    assert result.missing_vertices == [3]

    c2 = repo.commit("two")
    assert repo.diff(c1, c2).missing_vertices == [3]


def test_refs_survive_reopen(temp_dir):
    repo_dir = temp_dir / ".histograph"
    with Repository.init(repo_dir) as repo:
        repo.apply(AddVertex(vertex_id=1))
        c1 = repo.commit("one")
        repo.tag_create("v1")

    with Repository.open(repo_dir) as repo:
        assert repo.tags() == {"v1": c1}
        assert repo.history.head_commit() == c1
        assert repo.show().vertices == [1]
        assert [e.action for e in repo.reflog()] == ["commit", "tag_create"]


def test_cat_object(repo):
    repo.apply(AddVertex(vertex_id=1))
    commit_id = repo.commit("one")
    commit = repo.cat_object("commit", commit_id.hex())
    assert isinstance(commit, Commit)
    vertex = repo.cat_object("vertex", repo.engine.vertex_digest(1))
    assert vertex == Vertex(vertex_id=1)
    with pytest.raises(ValueError):
        repo.cat_object("blob", commit_id)


def test_verify_clean_repository(repo):
    repo.apply([AddVertex(vertex_id=1), AddVertex(vertex_id=2), AddEdge(from_vertex=1, to_vertex=2)])
    repo.commit("one")
    assert repo.verify() == []


def test_verify_detects_corruption(temp_dir):
    repo_dir = temp_dir / ".histograph"
    with Repository.init(repo_dir, RepositoryConfig(backend="file")) as repo:
        repo.apply(AddVertex(vertex_id=1))
        repo.commit("one")
        vertex_digest = repo.engine.vertex_digest(1)

    (repo_dir / "objects" / "vertex" / vertex_digest.hex()).write_bytes(b"garbage")

    with Repository.open(repo_dir) as repo:
        problems = repo.verify()
    assert any(vertex_digest.hex() in p for p in problems)


@pytest.mark.parametrize("backend", ["file", "sqlite"])
def test_backends_agree_on_digests(temp_dir, backend):
    with Repository.init(temp_dir / backend, RepositoryConfig(backend=backend)) as repo:
        graph = repo.apply([AddVertex(vertex_id=1), AddVertex(vertex_id=2)])
    reference = Repository.in_memory()
    assert reference.apply([AddVertex(vertex_id=1), AddVertex(vertex_id=2)]) == graph


def test_in_memory_repository():
    repo = Repository.in_memory()
    repo.apply(AddVertex(vertex_id=1))
    repo.commit("one", timestamp=0)
    assert repo.repo_dir is None
    assert len(repo.log()) == 1
    repo.close()


def test_failed_checkout_keeps_refs(temp_dir):
    repo_dir = temp_dir / ".histograph"
    with Repository.init(repo_dir, RepositoryConfig(backend="file")) as repo:
        repo.apply(AddVertex(vertex_id=1))
        c1 = repo.commit("one")
        repo.apply(AddVertex(vertex_id=2))
        c2 = repo.commit("two")
        missing = repo.engine.vertex_digest(2)
        repo.reset(c1, hard=True)
        reflog_size = len(repo.reflog())

        (repo_dir / "objects" / "vertex" / missing.hex()).unlink()

        with pytest.raises(HistographError):
            repo.checkout(c2.hex())
        with pytest.raises(HistographError):
            repo.reset(c2, hard=True)

        assert repo.history.current_branch() == "master"
        assert repo.history.head_commit() == c1
        assert repo.show().vertices == [1]
        assert len(repo.reflog()) == reflog_size

    with Repository.open(repo_dir) as repo:
        assert repo.history.current_branch() == "master"
        assert repo.history.head_commit() == c1


def test_garbled_working_file_falls_back_to_head(temp_dir):
    repo_dir = temp_dir / ".histograph"
    with Repository.init(repo_dir) as repo:
        repo.apply(AddVertex(vertex_id=1))
        repo.commit("one")

    (repo_dir / "WORKING").write_text("not a digest\n")

    with Repository.open(repo_dir) as repo:
        assert repo.show().vertices == [1]
        assert not repo.is_dirty()
        assert repo.verify() == []
