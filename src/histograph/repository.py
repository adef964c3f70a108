"""Repository - wires storage, object model, mutation engine and history.

On disk a repository is a directory (default ``.histograph``):

    config.json   RepositoryConfig
    objects.db    object database (or objects/ for the file backend)
    refs.json     branches, tags, HEAD and reflog
    WORKING       digest of the last persisted working graph
    histograph.log
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable

from .addressing import ContentAddresser
from .blobstore import MemoryBlobStore, open_blob_store
from .codec import decode
from .commands import GraphCommand
from .config import REPO_DIR_NAME, RepositoryConfig
from .diff import StructureDiff, diff
from .errors import (
    CodecError,
    DirtyWorkingGraph,
    HistographError,
    NothingToCommit,
    RefNotFound,
    RepositoryNotFound,
    StorageError,
)
from .graph import WorkingGraph
from .history import CommitEntry, History, Ref
from .models import Commit, CommitMetadata, Digest, GraphView, RefLogEntry, utc_now
from .mutation import MutationEngine
from .objects import NAMESPACES, GraphObjectModel, namespace_for
from .refs import JsonRefStore, MemoryRefStore, RefStore, RefTable
from .store import ObjectStore

logger = logging.getLogger(__name__)

REFS_FILE = "refs.json"
WORKING_FILE = "WORKING"


class Repository:
    """A historized graph: one working graph plus its commit history."""

    def __init__(
        self,
        repo_dir: Path | None,
        config: RepositoryConfig,
        store: ObjectStore,
        ref_store: RefStore,
    ):
        """Use ``Repository.init``, ``Repository.open`` or ``Repository.in_memory``."""
        self.repo_dir = Path(repo_dir) if repo_dir is not None else None
        self.config = config
        self.store = store
        self.objects = GraphObjectModel(store, strict=config.strict)
        self.engine = MutationEngine(self.objects, max_workers=config.max_workers)
        self._ref_store = ref_store

        refs = ref_store.load() or RefTable.new(config.default_branch)
        self.history = History(self.objects, refs, require_parents=config.require_parents)
        self._load_working()

    # ─────────────────────────────────────────────────────────────────────────
    # Construction
    # ─────────────────────────────────────────────────────────────────────────

    @classmethod
    def init(
        cls,
        path: Path | None = None,
        config: RepositoryConfig | None = None,
        exist_ok: bool = False,
    ) -> Repository:
        """Create a repository directory and open it.

        Args:
            path: Repository directory (default: ./.histograph)
            config: Settings to store (default: RepositoryConfig())
            exist_ok: Open an existing repository instead of failing

        Raises:
            StorageError: The directory already holds a repository
        """
        repo_dir = Path(path) if path is not None else Path.cwd() / REPO_DIR_NAME
        config_path = repo_dir / "config.json"
        if config_path.exists():
            if not exist_ok:
                raise StorageError(f"Repository already exists at {repo_dir}")
            return cls.open(repo_dir)

        try:
            repo_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create {repo_dir}: {e}") from e
        config = config or RepositoryConfig()
        config.save(repo_dir)
        JsonRefStore(repo_dir / REFS_FILE).save(RefTable.new(config.default_branch))
        logger.info(f"Initialized repository at {repo_dir} ({config.backend}, {config.hash_algorithm})")
        return cls.open(repo_dir)

    @classmethod
    def open(cls, path: Path) -> Repository:
        """Open an existing repository directory.

        Raises:
            RepositoryNotFound: No config.json in the directory
        """
        repo_dir = Path(path)
        if not (repo_dir / "config.json").exists():
            raise RepositoryNotFound(repo_dir)
        config = RepositoryConfig.load(repo_dir)
        store = ObjectStore(
            open_blob_store(config.backend, repo_dir),
            ContentAddresser(config.hash_algorithm),
            verify_reads=config.verify_reads,
        )
        return cls(repo_dir, config, store, JsonRefStore(repo_dir / REFS_FILE))

    @classmethod
    def in_memory(cls, config: RepositoryConfig | None = None) -> Repository:
        """Repository with no directory; everything is lost on close."""
        config = config or RepositoryConfig(backend="memory")
        store = ObjectStore(
            MemoryBlobStore(),
            ContentAddresser(config.hash_algorithm),
            verify_reads=config.verify_reads,
        )
        return cls(None, config, store, MemoryRefStore())

    def close(self) -> None:
        self._save_refs()
        self.store.close()

    def __enter__(self) -> Repository:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @property
    def refs(self) -> RefTable:
        return self.history.refs

    def _save_refs(self) -> None:
        self._ref_store.save(self.history.refs)

    @contextmanager
    def _moving_refs(self):
        """Undo ref changes made in the block if it raises."""
        saved = self.refs.snapshot()
        try:
            yield
        except Exception:
            self.refs.restore(saved)
            raise

    # ─────────────────────────────────────────────────────────────────────────
    # Working graph
    # ─────────────────────────────────────────────────────────────────────────

    def _working_path(self) -> Path | None:
        return self.repo_dir / WORKING_FILE if self.repo_dir is not None else None

    def _load_working(self) -> None:
        """Restore the working graph: WORKING file first, else HEAD's graph."""
        path = self._working_path()
        if path is not None and path.exists():
            text = path.read_text().strip()
            if text:
                try:
                    self.engine.load(Digest.from_hex(text))
                    return
                except (HistographError, ValueError) as e:
                    logger.warning(f"Working graph {text[:16]!r} unavailable ({e}); using HEAD")

        try:
            head_graph = self.head_graph_digest()
            if head_graph is not None:
                self.engine.load(head_graph)
        except HistographError as e:
            # Leave an empty working graph so fsck can still run
            logger.warning(f"HEAD graph unavailable ({e}); starting from an empty graph")
            self.engine.clear()

    def _save_working(self) -> None:
        path = self._working_path()
        if path is None:
            return
        digest = self.engine.head
        try:
            path.write_text(digest.hex() if digest is not None else "")
        except OSError as e:
            raise StorageError(f"Cannot write {path}: {e}") from e

    def apply(self, commands: GraphCommand | Iterable[GraphCommand]) -> Digest:
        """Apply commands atomically to the working graph and persist it.

        Returns:
            Digest of the new working graph
        """
        if hasattr(commands, "op"):
            commands = [commands]
        digest = self.engine.apply_all(commands)
        self._save_working()
        return digest

    @property
    def graph(self) -> WorkingGraph:
        return self.engine.graph

    def show(self, ref: Ref | None = None) -> GraphView:
        """Contents of the working graph, or of a committed graph."""
        if ref is None:
            return self.engine.show()
        return self.graph_at(ref).view()

    def graph_at(self, ref: Ref) -> WorkingGraph:
        """Working-graph copy of the graph committed at ref."""
        commit = self.history.load_commit(self.history.resolve(ref))
        return self.objects.materialize(commit.graph_digest).graph

    def head_graph_digest(self) -> Digest | None:
        """Graph digest of the HEAD commit, None on an unborn branch."""
        head = self.history.head_commit()
        if head is None:
            return None
        return self.history.load_commit(head).graph_digest

    def is_dirty(self) -> bool:
        """True if the working graph differs from HEAD's graph."""
        head_graph = self.head_graph_digest()
        if head_graph is None:
            return not self.engine.graph.is_empty()
        if self.engine.has_pending_changes:
            return True
        return self.engine.head != head_graph

    def status(self) -> dict:
        """Branch, HEAD and a summary of uncommitted changes."""
        head = self.history.head_commit()
        changes = self.diff("HEAD") if head is not None else diff(WorkingGraph(), self.graph)
        return {
            "branch": self.history.current_branch(),
            "detached": self.refs.head.is_detached,
            "head": head.hex() if head is not None else None,
            "working": self.engine.head.hex() if self.engine.head is not None else None,
            "dirty": self.is_dirty(),
            "vertex_count": self.graph.vertex_count(),
            "edge_count": self.graph.edge_count(),
            "changes": changes.to_summary(),
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Commits
    # ─────────────────────────────────────────────────────────────────────────

    def commit(
        self,
        message: str = "",
        author: str | None = None,
        timestamp: int | None = None,
        allow_empty: bool = False,
    ) -> Digest:
        """Commit the working graph on top of HEAD.

        Raises:
            NothingToCommit: Working graph equals HEAD's graph and not allow_empty
        """
        if not allow_empty and not self.is_dirty():
            raise NothingToCommit()

        graph_digest = self.engine.persist() if (
            self.engine.head is None or self.engine.has_pending_changes
        ) else self.engine.head
        metadata = CommitMetadata(
            author=author if author is not None else self.config.effective_author(),
            message=message,
            timestamp=timestamp if timestamp is not None else int(utc_now().timestamp()),
        )
        commit_id = self.history.commit_head(graph_digest, metadata)
        self._save_refs()
        self._save_working()
        logger.info(f"Committed {commit_id.short()}: {message}")
        return commit_id

    def log(self, ref: Ref = "HEAD", limit: int | None = None) -> list[CommitEntry]:
        return self.history.log(ref, limit)

    def reflog(self) -> list[RefLogEntry]:
        return list(self.refs.reflog)

    # ─────────────────────────────────────────────────────────────────────────
    # Branches and tags
    # ─────────────────────────────────────────────────────────────────────────

    def branches(self) -> dict[str, Digest]:
        return self.history.branches()

    def tags(self) -> dict[str, Digest]:
        return self.history.tags()

    def branch_create(self, name: str, at: Ref | None = None) -> Digest:
        target = self.history.branch_create(name, at)
        self._save_refs()
        return target

    def branch_move(self, name: str, to: Ref, force: bool = False) -> Digest:
        target = self.history.branch_move(name, to, force=force)
        self._save_refs()
        return target

    def branch_delete(self, name: str) -> Digest:
        target = self.history.branch_delete(name)
        self._save_refs()
        return target

    def tag_create(self, name: str, at: Ref | None = None) -> Digest:
        target = self.history.tag_create(name, at)
        self._save_refs()
        return target

    # ─────────────────────────────────────────────────────────────────────────
    # Moving HEAD
    # ─────────────────────────────────────────────────────────────────────────

    def checkout(self, ref: Ref, force: bool = False) -> Digest:
        """Move HEAD and load the target's graph into the working graph.

        Raises:
            DirtyWorkingGraph: Uncommitted changes and not force
        """
        if not force and self.is_dirty():
            raise DirtyWorkingGraph(str(ref))
        with self._moving_refs():
            graph_digest = self.history.checkout(ref)
            self.engine.load(graph_digest)
        self._save_refs()
        self._save_working()
        return graph_digest

    def reset(self, target: Ref, hard: bool = False) -> Digest:
        """Point HEAD's branch at target.

        A soft reset keeps the working graph, which then shows up as changes
        against the new HEAD; a hard reset replaces it with target's graph.
        """
        with self._moving_refs():
            graph_digest = self.history.reset(target)
            if hard:
                self.engine.load(graph_digest)
        if hard:
            self._save_working()
        self._save_refs()
        return graph_digest

    def rebase(self, onto: Ref, branch: str | None = None) -> list[Digest]:
        """Replay `branch` (default: the checked-out one) onto `onto`.

        Raises:
            RefNotFound: No branch given while HEAD is detached
            DirtyWorkingGraph: Rebasing the checked-out branch with changes
        """
        current = self.history.current_branch()
        branch = branch or current
        if branch is None:
            raise RefNotFound("HEAD", kind="Branch for detached HEAD")
        checked_out = branch == current
        if checked_out and self.is_dirty():
            raise DirtyWorkingGraph(str(onto))

        with self._moving_refs():
            new_ids = self.history.rebase(branch, onto)
            if checked_out:
                self.engine.load(self.head_graph_digest())
        if checked_out:
            self._save_working()
        self._save_refs()
        return new_ids

    # ─────────────────────────────────────────────────────────────────────────
    # Inspection
    # ─────────────────────────────────────────────────────────────────────────

    def diff(self, a: Ref = "HEAD", b: Ref | None = None) -> StructureDiff:
        """Diff from commit a to commit b, or to the working graph if b is None."""
        g1 = self.graph_at(a)
        g2 = self.graph_at(b) if b is not None else self.graph
        return diff(g1, g2)

    def cat_object(self, kind: str, digest: Digest | str):
        """Load one stored object by namespace name ("vertex", "commit"...)."""
        if kind not in NAMESPACES.values():
            raise ValueError(f"Unknown object kind '{kind}'. Use one of: {', '.join(NAMESPACES.values())}")
        digest = Digest.coerce(digest)
        return decode(self.store.get(digest, kind))

    def verify(self) -> list[str]:
        """Check every stored object and everything reachable from refs.

        Returns:
            Problem descriptions; empty when the repository is consistent
        """
        problems: list[str] = []
        addresser = self.store.addresser

        for namespace in NAMESPACES.values():
            for digest in self.store.digests(namespace):
                data = self.store.blobs.read(namespace, digest.hex())
                if data is None:
                    continue
                actual = addresser.digest(data)
                if actual != digest:
                    problems.append(f"{namespace} {digest}: content hashes to {actual}")
                    continue
                try:
                    obj = decode(data)
                except CodecError as e:
                    problems.append(f"{namespace} {digest}: {e}")
                    continue
                if namespace_for(obj) != namespace:
                    problems.append(f"{namespace} {digest}: holds a {namespace_for(obj)} object")

        tips: dict[str, Digest] = {}
        for name, target in self.refs.branches.items():
            tips[f"branch {name}"] = target
        for name, target in self.refs.tags.items():
            tips[f"tag {name}"] = target
        head = self.history.head_commit()
        if head is not None:
            tips["HEAD"] = head

        checked: set[Digest] = set()
        for label, tip in tips.items():
            try:
                for commit_id, commit in self.history.walk(tip):
                    if commit_id in checked:
                        continue
                    checked.add(commit_id)
                    self._verify_commit(commit_id, commit, problems)
            except HistographError as e:
                problems.append(f"{label}: {e}")

        if self.engine.head is not None:
            try:
                self.objects.verify_graph(self.engine.head)
            except HistographError as e:
                problems.append(f"working graph: {e}")

        logger.info(f"Verified {len(checked)} commits, {len(problems)} problems")
        return problems

    def _verify_commit(self, commit_id: Digest, commit: Commit, problems: list[str]) -> None:
        try:
            self.objects.verify_graph(commit.graph_digest)
        except HistographError as e:
            problems.append(f"commit {commit_id.short()}: {e}")
