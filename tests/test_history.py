"""Tests for the history engine: commits, refs, checkout, reset and rebase."""

import threading

import pytest

from conftest import commit_graph, meta
from histograph.addressing import address
from histograph.commands import AddEdge, AddVertex, RemoveVertex
from histograph.errors import (
    AmbiguousRef,
    BranchExists,
    BranchNotFound,
    CheckedOutBranch,
    DanglingReference,
    EmptyParentList,
    InvalidRefName,
    NonFastForward,
    RebaseConflict,
    RefNotFound,
    StaleRef,
    TagExists,
)
from histograph.history import History, replay
from histograph.models import Commit, Digest
from histograph.mutation import MutationEngine
from histograph.objects import GraphObjectModel
from histograph.refs import Head, JsonRefStore, MemoryRefStore, RefTable
from histograph.store import ObjectStore


@pytest.fixture
def linear(engine, history):
    """master: c1 (vertex 1) <- c2 (+vertex 2) <- c3 (+edge 1->2)."""
    c1 = commit_graph(engine, history, [AddVertex(vertex_id=1)], "one")
    c2 = commit_graph(engine, history, [AddVertex(vertex_id=2)], "two")
    c3 = commit_graph(engine, history, [AddEdge(from_vertex=1, to_vertex=2)], "edge")
    return c1, c2, c3


# ─────────────────────────────────────────────────────────────────────────────
# Commits
# ─────────────────────────────────────────────────────────────────────────────


def test_root_commit(engine, history):
    graph = engine.apply(AddVertex(vertex_id=1))
    commit_id = history.commit(graph, [], meta("root"))
    commit = history.load_commit(commit_id)
    assert commit.is_root
    assert commit.graph_digest == graph
    assert commit_id == address(commit)


def test_commit_ids_are_deterministic():
    """Identical content, parents and metadata give the same id in separate stores."""
    ids = []
    for _ in range(2):
        objects = GraphObjectModel(ObjectStore())
        engine = MutationEngine(objects)
        history = History(objects)
        graph = engine.apply_all([AddVertex(vertex_id=1), AddVertex(vertex_id=2)])
        root = history.commit(graph, [], meta("a"))
        ids.append(history.commit(graph, [root], meta("b")))
    assert ids[0] == ids[1]


def test_metadata_changes_commit_id(engine, history):
    graph = engine.apply(AddVertex(vertex_id=1))
    assert history.commit(graph, [], meta("a")) != history.commit(graph, [], meta("b"))


def test_commit_requires_stored_graph(history):
    with pytest.raises(DanglingReference):
        history.commit(Digest(b"\x01" * 32))


def test_commit_requires_stored_parents(engine, history):
    graph = engine.apply(AddVertex(vertex_id=1))
    with pytest.raises(DanglingReference):
        history.commit(graph, [Digest(b"\x02" * 32)])


def test_parent_policy(engine, objects):
    history = History(objects, require_parents=True)
    graph = engine.apply(AddVertex(vertex_id=1))
    with pytest.raises(EmptyParentList):
        history.commit(graph, [])


def test_commit_head_creates_branch(engine, history):
    assert history.head_commit() is None
    c1 = commit_graph(engine, history, [AddVertex(vertex_id=1)], "first")
    assert history.branches() == {"master": c1}
    assert history.head_commit() == c1
    assert history.refs.reflog[-1].action == "commit"


def test_commit_head_on_detached_head(linear, engine, history):
    c1, _, c3 = linear
    history.checkout(c1)
    c4 = commit_graph(engine, history, [RemoveVertex(vertex_id=1)], "detached")
    assert history.refs.head == Head(branch=None, commit=c4)
    assert history.branches()["master"] == c3


def test_log_newest_first(linear, history):
    c1, c2, c3 = linear
    assert [cid for cid, _ in history.log()] == [c3, c2, c1]
    assert [cid for cid, _ in history.log(limit=2)] == [c3, c2]


def test_ancestry(linear, history):
    c1, c2, c3 = linear
    assert history.is_ancestor(c1, c3)
    assert not history.is_ancestor(c3, c1)
    assert history.ancestors(c2) == {c1, c2}


def test_merge_base(linear, engine, history):
    c1, c2, c3 = linear
    history.branch_create("side", at=c2)
    history.checkout("side")
    engine.load(history.load_commit(c2).graph_digest)
    side = commit_graph(engine, history, [AddVertex(vertex_id=7)], "side")
    assert history.merge_base(c3, side) == c2


# ─────────────────────────────────────────────────────────────────────────────
# Resolution
# ─────────────────────────────────────────────────────────────────────────────


def test_resolve_names_and_ids(linear, history):
    c1, c2, c3 = linear
    history.tag_create("v1", at=c1)
    assert history.resolve("HEAD") == c3
    assert history.resolve("master") == c3
    assert history.resolve("v1") == c1
    assert history.resolve(c2.hex()) == c2
    assert history.resolve(c2.hex()[:12]) == c2
    assert history.resolve(c2) == c2


def test_resolve_unknown(linear, history):
    with pytest.raises(RefNotFound):
        history.resolve("nope")
    with pytest.raises(RefNotFound):
        history.resolve("abc")  # too short for a prefix


def test_resolve_head_on_unborn_branch(history):
    with pytest.raises(RefNotFound):
        history.resolve("HEAD")


def test_resolve_ambiguous_prefix(engine, history, monkeypatch):
    graph = engine.apply(AddVertex(vertex_id=1))
    ids = [history.commit(graph, [], meta(f"c{i}")) for i in range(40)]
    # 40 ids over 16 hex digits: some first digit is shared
    by_first = {}
    for commit_id in ids:
        by_first.setdefault(commit_id.hex()[0], []).append(commit_id)
    shared, group = next((p, g) for p, g in by_first.items() if len(g) > 1)

    with pytest.raises(RefNotFound):
        history.resolve(shared)  # below the minimum prefix length

    monkeypatch.setattr("histograph.history.MIN_PREFIX_LENGTH", 1)
    with pytest.raises(AmbiguousRef) as exc_info:
        history.resolve(shared)
    assert sorted(exc_info.value.candidates) == sorted(group)


# ─────────────────────────────────────────────────────────────────────────────
# Branches and tags
# ─────────────────────────────────────────────────────────────────────────────


def test_branch_create_and_list(linear, history):
    c1, _, c3 = linear
    assert history.branch_create("feature", at=c1) == c1
    assert history.branches() == {"feature": c1, "master": c3}


def test_branch_create_errors(linear, history):
    with pytest.raises(BranchExists):
        history.branch_create("master")
    with pytest.raises(InvalidRefName):
        history.branch_create("HEAD")
    with pytest.raises(InvalidRefName):
        history.branch_create("bad..name")


def test_branch_move_fast_forward(linear, history):
    c1, _, c3 = linear
    history.branch_create("feature", at=c1)
    assert history.branch_move("feature", c3) == c3


def test_branch_move_rejects_non_fast_forward(linear, history):
    c1, _, c3 = linear
    with pytest.raises(NonFastForward):
        history.branch_move("master", c1)
    assert history.branch_move("master", c1, force=True) == c1


def test_branch_move_with_stale_expectation(linear, history):
    c1, c2, c3 = linear
    history.branch_create("feature", at=c1)
    with pytest.raises(StaleRef):
        history.branch_move("feature", c3, expected=c2)


def test_branch_delete(linear, history):
    c1, _, _ = linear
    history.branch_create("old", at=c1)
    assert history.branch_delete("old") == c1
    assert "old" not in history.branches()
    # The commit itself is untouched
    assert history.load_commit(c1).metadata.message == "one"
    with pytest.raises(BranchNotFound):
        history.branch_delete("old")


def test_cannot_delete_checked_out_branch(linear, history):
    with pytest.raises(CheckedOutBranch):
        history.branch_delete("master")


def test_tags_are_immutable(linear, history):
    c1, c2, _ = linear
    history.tag_create("v1", at=c1)
    with pytest.raises(TagExists):
        history.tag_create("v1", at=c2)
    assert history.tags() == {"v1": c1}


def test_compare_and_swap_under_contention(linear, history):
    """Concurrent movers of one branch: exactly one CAS from a given value wins."""
    c1, c2, c3 = linear
    history.branch_create("race", at=c1)
    results = []

    def mover(target):
        results.append(history.refs.compare_and_swap("race", c1, target))

    threads = [threading.Thread(target=mover, args=(t,)) for t in (c2, c3) * 5]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert results.count(True) == 1


def test_independent_ref_tables(objects, engine):
    """Two histories over one store do not share refs."""
    a = History(objects, RefTable.new())
    b = History(objects, RefTable.new("main"))
    commit_graph(engine, a, [AddVertex(vertex_id=1)], "a")
    assert b.branches() == {}
    assert b.current_branch() == "main"


# ─────────────────────────────────────────────────────────────────────────────
# Checkout and reset
# ─────────────────────────────────────────────────────────────────────────────


def test_checkout_branch_and_commit(linear, history):
    c1, _, c3 = linear
    history.branch_create("feature", at=c1)

    graph = history.checkout("feature")
    assert graph == history.load_commit(c1).graph_digest
    assert history.current_branch() == "feature"

    history.checkout(c3)
    assert history.refs.head.is_detached
    assert history.head_commit() == c3


def test_checkout_head_is_noop(linear, history):
    _, _, c3 = linear
    reflog_size = len(history.refs.reflog)
    assert history.checkout("HEAD") == history.load_commit(c3).graph_digest
    assert len(history.refs.reflog) == reflog_size


def test_reset_moves_branch_backwards(linear, history):
    c1, _, _ = linear
    graph = history.reset(c1)
    assert history.branches()["master"] == c1
    assert graph == history.load_commit(c1).graph_digest
    assert history.refs.reflog[-1].action == "reset"


# ─────────────────────────────────────────────────────────────────────────────
# Rebase
# ─────────────────────────────────────────────────────────────────────────────


def _diverge(engine, history):
    """base <- m1 on master; base <- f1 <- f2 on feature. HEAD on master."""
    base = commit_graph(engine, history, [AddVertex(vertex_id=1)], "base")
    history.branch_create("feature")
    m1 = commit_graph(engine, history, [AddVertex(vertex_id=2)], "m1")

    history.checkout("feature")
    engine.load(history.load_commit(base).graph_digest)
    f1 = commit_graph(engine, history, [AddVertex(vertex_id=10)], "f1")
    f2 = commit_graph(engine, history, [AddVertex(vertex_id=11)], "f2")
    history.checkout("master")
    return base, m1, f1, f2


def test_rebase_replays_unique_commits(engine, history):
    base, m1, f1, f2 = _diverge(engine, history)

    new_ids = history.rebase("feature", m1)

    assert len(new_ids) == 2
    n1, n2 = (history.load_commit(c) for c in new_ids)
    assert n1.graph_digest == history.load_commit(f1).graph_digest
    assert n2.graph_digest == history.load_commit(f2).graph_digest
    assert n1.parent_ids == [m1]
    assert n2.parent_ids == [new_ids[0]]
    assert n1.metadata == history.load_commit(f1).metadata
    assert history.branches()["feature"] == new_ids[1]

    # Originals are untouched
    assert history.load_commit(f1).parent_ids == [base]


def test_rebase_fast_forward(linear, history):
    c1, _, c3 = linear
    history.branch_create("behind", at=c1)
    assert history.rebase("behind", c3) == []
    assert history.branches()["behind"] == c3


def test_rebase_onto_own_base_is_stable(engine, history):
    base, _, f1, f2 = _diverge(engine, history)
    assert history.rebase("feature", base) == [f1, f2]


def test_rebase_unknown_branch(linear, history):
    with pytest.raises(BranchNotFound):
        history.rebase("ghost", "master")


def test_rebase_refuses_merge_commits(engine, history):
    base, m1, f1, f2 = _diverge(engine, history)
    graph = history.load_commit(f2).graph_digest
    merge = history.commit(graph, [f2, m1], meta("merge"))
    history.branch_create("merged", at=merge)
    with pytest.raises(RebaseConflict) as exc_info:
        history.rebase("merged", base)
    assert exc_info.value.commit == merge


def test_rebase_conflict_on_broken_graph(engine, objects, history):
    base = commit_graph(engine, history, [AddVertex(vertex_id=1)], "base")
    # Graph referencing a vertex digest that was never stored
    broken_graph = objects.store_graph([Digest(b"\x09" * 32)], [])
    broken = history.commit(broken_graph, [base], meta("broken"))
    history.branch_create("broken", at=broken)
    other = commit_graph(engine, history, [AddVertex(vertex_id=2)], "other")

    with pytest.raises(RebaseConflict):
        history.rebase("broken", other)
    assert history.branches()["broken"] == broken


def test_replay_is_pure(engine, history):
    base, m1, f1, f2 = _diverge(engine, history)
    chain = [(f1, history.load_commit(f1)), (f2, history.load_commit(f2))]
    replayed = replay(chain, m1, address)
    for new_id, commit in replayed:
        assert isinstance(commit, Commit)
        assert not history._store.contains(new_id, "commit")


# ─────────────────────────────────────────────────────────────────────────────
# Ref persistence
# ─────────────────────────────────────────────────────────────────────────────


def test_memory_ref_store_roundtrip(linear, history):
    store = MemoryRefStore()
    assert store.load() is None
    store.save(history.refs)
    loaded = store.load()
    assert loaded.branches == history.refs.branches
    assert loaded.head == history.refs.head
    assert len(loaded.reflog) == len(history.refs.reflog)
    assert loaded is not history.refs


def test_json_ref_store(linear, history, temp_dir):
    c1, _, _ = linear
    history.tag_create("v1", at=c1)
    history.checkout(c1)
    store = JsonRefStore(temp_dir / "refs.json")
    store.save(history.refs)

    loaded = store.load()
    assert loaded.tags == {"v1": c1}
    assert loaded.head == Head(branch=None, commit=c1)
    assert loaded.reflog[-1].action == "checkout"
