"""History engine: a content-addressed commit DAG over graph digests.

Commits are immutable and keyed by their own digest. Branches, tags and
HEAD live in an explicit RefTable; every "move" only repoints a name.
Rebase is a linear replay: the replayed commits keep their graph state
and metadata and only change ancestry.
"""

from __future__ import annotations

import logging
import re
from collections import deque
from typing import Callable, Iterable, Iterator

from .errors import (
    AmbiguousRef,
    BranchExists,
    BranchNotFound,
    CheckedOutBranch,
    DanglingReference,
    EmptyParentList,
    InvalidRefName,
    NonFastForward,
    NotFound,
    RebaseConflict,
    RefNotFound,
    StaleRef,
    TagExists,
)
from .models import DIGEST_SIZE, Commit, CommitMetadata, Digest, validate_ref_name
from .objects import COMMIT_NAMESPACE, GRAPH_NAMESPACE, GraphObjectModel
from .refs import Head, RefTable

logger = logging.getLogger(__name__)

MIN_PREFIX_LENGTH = 4
_HEX_PATTERN = re.compile(r"^[0-9a-fA-F]+$")

Ref = str | Digest
CommitEntry = tuple[Digest, Commit]


def replay(
    chain: Iterable[CommitEntry],
    onto: Digest,
    address: Callable[[Commit], Digest],
) -> list[CommitEntry]:
    """Re-parent a linear chain of commits onto another commit.

    Pure: builds new Commit values (same graph digest, same metadata) and
    their ids, stores nothing and touches no ref.

    Args:
        chain: Commits to replay, oldest first
        onto: New parent of the oldest commit
        address: Digest function for commits

    Returns:
        (new_id, new_commit) pairs, oldest first
    """
    replayed: list[CommitEntry] = []
    parent = onto
    for _, commit in chain:
        new_commit = commit.with_parents([parent])
        parent = address(new_commit)
        replayed.append((parent, new_commit))
    return replayed


class History:
    """Commit DAG with branches, tags, checkout, reset and rebase."""

    def __init__(
        self,
        objects: GraphObjectModel,
        refs: RefTable | None = None,
        require_parents: bool = False,
    ):
        """Initialize the history engine.

        Args:
            objects: Object model sharing the object store with the graphs
            refs: Ref table to operate on (default: new, HEAD on master)
            require_parents: Reject root commits with EmptyParentList
        """
        self.objects = objects
        self.refs = refs if refs is not None else RefTable.new()
        self.require_parents = require_parents

    @property
    def _store(self):
        return self.objects.store

    # ─────────────────────────────────────────────────────────────────────────
    # Commits
    # ─────────────────────────────────────────────────────────────────────────

    def commit(
        self,
        graph_digest: Digest,
        parents: Iterable[Digest] = (),
        metadata: CommitMetadata | None = None,
    ) -> Digest:
        """Record a commit and return its id. Moves no ref.

        Raises:
            EmptyParentList: No parents while the policy requires one
            DanglingReference: The graph or a parent commit is not stored
        """
        parents = list(parents)
        if not parents and self.require_parents:
            raise EmptyParentList()
        if not self._store.contains(graph_digest, GRAPH_NAMESPACE):
            raise DanglingReference(graph_digest, GRAPH_NAMESPACE)
        for parent in parents:
            if not self._store.contains(parent, COMMIT_NAMESPACE):
                raise DanglingReference(parent, COMMIT_NAMESPACE)

        commit = Commit(
            graph_digest=graph_digest,
            parent_ids=parents,
            metadata=metadata or CommitMetadata(),
        )
        commit_id = self.objects.put(commit)
        logger.debug(
            f"Commit {commit_id.short()} graph={graph_digest.short()} "
            f"parents={[p.short() for p in parents]}"
        )
        return commit_id

    def load_commit(self, commit_id: Digest) -> Commit:
        return self.objects.get(commit_id, Commit)

    def head_commit(self) -> Digest | None:
        """Commit HEAD points at, or None on an unborn branch."""
        head = self.refs.head
        if head.is_detached:
            return head.commit
        return self.refs.branches.get(head.branch)

    def current_branch(self) -> str | None:
        """Name of the checked-out branch, None when detached."""
        return self.refs.head.branch

    def commit_head(
        self, graph_digest: Digest, metadata: CommitMetadata | None = None
    ) -> Digest:
        """Commit on top of HEAD and advance it.

        The checked-out branch moves by compare-and-swap, so a concurrent
        move of the same branch fails with StaleRef instead of being lost.
        The first commit on an unborn branch creates the branch.
        """
        metadata = metadata or CommitMetadata()
        head = self.refs.head
        parent = self.head_commit()
        commit_id = self.commit(graph_digest, [parent] if parent else [], metadata)

        if head.is_detached:
            self.refs.set_head(Head(branch=None, commit=commit_id))
            self.refs.record("HEAD", parent, commit_id, "commit", metadata.message)
        else:
            if not self.refs.compare_and_swap(head.branch, parent, commit_id):
                raise StaleRef(head.branch, parent, self.refs.branches.get(head.branch))
            self.refs.record(head.branch, parent, commit_id, "commit", metadata.message)
        return commit_id

    # ─────────────────────────────────────────────────────────────────────────
    # Resolution and traversal
    # ─────────────────────────────────────────────────────────────────────────

    def resolve(self, ref: Ref) -> Digest:
        """Resolve HEAD, a branch, a tag, a full commit id or a unique prefix.

        Raises:
            RefNotFound: Nothing matches
            AmbiguousRef: A hex prefix matches several commits
        """
        if isinstance(ref, Digest):
            if not self._store.contains(ref, COMMIT_NAMESPACE):
                raise RefNotFound(ref.hex())
            return ref

        if ref == "HEAD":
            commit_id = self.head_commit()
            if commit_id is None:
                raise RefNotFound("HEAD")
            return commit_id

        if ref in self.refs.branches:
            return self.refs.branches[ref]
        if ref in self.refs.tags:
            return self.refs.tags[ref]

        if len(ref) >= MIN_PREFIX_LENGTH and _HEX_PATTERN.match(ref):
            prefix = ref.lower()
            if len(prefix) == 2 * DIGEST_SIZE:
                digest = Digest.from_hex(prefix)
                if self._store.contains(digest, COMMIT_NAMESPACE):
                    return digest
            else:
                matches = [
                    d for d in self._store.digests(COMMIT_NAMESPACE)
                    if d.hex().startswith(prefix)
                ]
                if len(matches) == 1:
                    return matches[0]
                if len(matches) > 1:
                    raise AmbiguousRef(ref, matches)

        raise RefNotFound(ref)

    def walk(self, start: Digest) -> Iterator[CommitEntry]:
        """Breadth-first over the DAG from start, parents in order, each once."""
        seen = {start}
        queue = deque([start])
        while queue:
            commit_id = queue.popleft()
            commit = self.load_commit(commit_id)
            yield commit_id, commit
            for parent in commit.parent_ids:
                if parent not in seen:
                    seen.add(parent)
                    queue.append(parent)

    def log(self, ref: Ref = "HEAD", limit: int | None = None) -> list[CommitEntry]:
        """Commits reachable from ref, newest first."""
        entries = []
        for entry in self.walk(self.resolve(ref)):
            if limit is not None and len(entries) >= limit:
                break
            entries.append(entry)
        return entries

    def ancestors(self, commit_id: Digest) -> set[Digest]:
        """Every commit reachable from commit_id, itself included."""
        return {cid for cid, _ in self.walk(commit_id)}

    def is_ancestor(self, ancestor: Digest, descendant: Digest) -> bool:
        return any(cid == ancestor for cid, _ in self.walk(descendant))

    def merge_base(self, a: Digest, b: Digest) -> Digest | None:
        """Nearest commit reachable from both, by breadth-first order from b."""
        reachable = self.ancestors(a)
        for commit_id, _ in self.walk(b):
            if commit_id in reachable:
                return commit_id
        return None

    # ─────────────────────────────────────────────────────────────────────────
    # Branches
    # ─────────────────────────────────────────────────────────────────────────

    def _check_name(self, name: str) -> None:
        valid, message = validate_ref_name(name)
        if not valid:
            raise InvalidRefName(name, message)

    def branch_create(self, name: str, at: Ref | None = None) -> Digest:
        """Create a branch at a commit (default: HEAD).

        Raises:
            InvalidRefName: Name fails validation
            BranchExists: Name already taken
        """
        self._check_name(name)
        if name in self.refs.branches:
            raise BranchExists(name)
        target = self.resolve(at if at is not None else "HEAD")
        if not self.refs.compare_and_swap(name, None, target):
            raise BranchExists(name)
        self.refs.record(name, None, target, "branch_create")
        return target

    def branch_move(
        self,
        name: str,
        to: Ref,
        force: bool = False,
        expected: Digest | None = None,
    ) -> Digest:
        """Repoint a branch.

        Args:
            name: Branch to move
            to: New target
            force: Allow moves that are not fast-forwards
            expected: Fail with StaleRef unless the branch is here right now

        Raises:
            BranchNotFound: No such branch
            NonFastForward: Target does not descend from the current commit
            StaleRef: The branch moved concurrently
        """
        current = self.refs.branches.get(name)
        if current is None:
            raise BranchNotFound(name)
        target = self.resolve(to)
        if expected is not None and current != expected:
            raise StaleRef(name, expected, current)
        if not force and not self.is_ancestor(current, target):
            raise NonFastForward(name, current, target)
        if not self.refs.compare_and_swap(name, current, target):
            raise StaleRef(name, current, self.refs.branches.get(name))
        self.refs.record(name, current, target, "branch_move")
        return target

    def branch_delete(self, name: str) -> Digest:
        """Delete a branch and return the commit it pointed at.

        Commits stay in the store; only the name goes away.
        """
        current = self.refs.branches.get(name)
        if current is None:
            raise BranchNotFound(name)
        if self.refs.head.branch == name:
            raise CheckedOutBranch(name)
        if not self.refs.compare_and_swap(name, current, None):
            raise StaleRef(name, current, self.refs.branches.get(name))
        self.refs.record(name, current, None, "branch_delete")
        return current

    def branches(self) -> dict[str, Digest]:
        return dict(sorted(self.refs.branches.items()))

    # ─────────────────────────────────────────────────────────────────────────
    # Tags
    # ─────────────────────────────────────────────────────────────────────────

    def tag_create(self, name: str, at: Ref | None = None) -> Digest:
        """Create an immutable tag at a commit (default: HEAD).

        Raises:
            TagExists: A tag with that name already exists
        """
        self._check_name(name)
        if name in self.refs.tags:
            raise TagExists(name)
        target = self.resolve(at if at is not None else "HEAD")
        if not self.refs.add_tag(name, target):
            raise TagExists(name)
        self.refs.record(f"tag:{name}", None, target, "tag_create")
        return target

    def tags(self) -> dict[str, Digest]:
        return dict(sorted(self.refs.tags.items()))

    # ─────────────────────────────────────────────────────────────────────────
    # Checkout and reset
    # ─────────────────────────────────────────────────────────────────────────

    def checkout(self, ref: Ref) -> Digest:
        """Move HEAD to a branch (attached) or any other ref (detached).

        Returns:
            Graph digest of the checked-out commit
        """
        if ref == "HEAD":
            return self.load_commit(self.resolve("HEAD")).graph_digest

        old = self.head_commit()
        if isinstance(ref, str) and ref in self.refs.branches:
            commit_id = self.refs.branches[ref]
            self.refs.set_head(Head(branch=ref))
        else:
            commit_id = self.resolve(ref)
            self.refs.set_head(Head(branch=None, commit=commit_id))

        self.refs.record("HEAD", old, commit_id, "checkout", f"moving to {ref}")
        return self.load_commit(commit_id).graph_digest

    def reset(self, target: Ref) -> Digest:
        """Point the checked-out branch (or detached HEAD) at target.

        Returns:
            Graph digest of the target commit
        """
        commit_id = self.resolve(target)
        head = self.refs.head
        old = self.head_commit()
        if head.is_detached:
            self.refs.set_head(Head(branch=None, commit=commit_id))
            self.refs.record("HEAD", old, commit_id, "reset", f"to {target}")
        else:
            if not self.refs.compare_and_swap(head.branch, old, commit_id):
                raise StaleRef(head.branch, old, self.refs.branches.get(head.branch))
            self.refs.record(head.branch, old, commit_id, "reset", f"to {target}")
        return self.load_commit(commit_id).graph_digest

    # ─────────────────────────────────────────────────────────────────────────
    # Rebase
    # ─────────────────────────────────────────────────────────────────────────

    def unique_chain(self, head_id: Digest, onto_id: Digest) -> list[CommitEntry]:
        """First-parent chain from head_id down to the first commit reachable
        from onto_id, oldest first.

        Raises:
            RebaseConflict: The chain contains a merge commit
        """
        base = self.ancestors(onto_id)
        chain: list[CommitEntry] = []
        current: Digest | None = head_id
        while current is not None and current not in base:
            commit = self.load_commit(current)
            if commit.is_merge:
                raise RebaseConflict(
                    f"Cannot replay merge commit {current.short()} linearly", commit=current
                )
            chain.append((current, commit))
            current = commit.parent_ids[0] if commit.parent_ids else None
        chain.reverse()
        return chain

    def rebase(self, branch: str, onto: Ref) -> list[Digest]:
        """Replay the commits unique to `branch` on top of `onto`.

        Returns:
            New commit ids, oldest first. Empty when nothing was unique; the
            branch then fast-forwards to `onto`.

        Raises:
            BranchNotFound: No such branch
            RebaseConflict: A merge commit in the way, or a replayed graph
                that no longer passes referential integrity checks
            StaleRef: The branch moved while rebasing
        """
        head_id = self.refs.branches.get(branch)
        if head_id is None:
            raise BranchNotFound(branch)
        onto_id = self.resolve(onto)

        chain = self.unique_chain(head_id, onto_id)
        for commit_id, commit in chain:
            try:
                self.objects.verify_graph(commit.graph_digest)
            except (DanglingReference, NotFound) as e:
                raise RebaseConflict(
                    f"Commit {commit_id.short()} references an unreachable graph: {e}",
                    commit=commit_id,
                ) from e

        replayed = replay(chain, onto_id, self._store.addresser.address)
        for _, commit in replayed:
            self.objects.put(commit)

        new_head = replayed[-1][0] if replayed else onto_id
        if not self.refs.compare_and_swap(branch, head_id, new_head):
            raise StaleRef(branch, head_id, self.refs.branches.get(branch))
        self.refs.record(branch, head_id, new_head, "rebase", f"onto {onto_id.short()}")
        logger.info(f"Rebased {branch}: replayed {len(replayed)} commits onto {onto_id.short()}")
        return [commit_id for commit_id, _ in replayed]
