"""Named pointers into the commit DAG: branches, tags, HEAD and the reflog.

The ref table is an explicit value owned by whoever holds it and passed
into the history engine, never ambient global state, so several histories
can live in one process. Branch moves go through compare-and-swap.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

from .errors import StorageError
from .models import Digest, RefAction, RefLogEntry

logger = logging.getLogger(__name__)

DEFAULT_BRANCH = "master"


@dataclass
class Head:
    """Current position: attached to a branch, or detached at a commit."""

    branch: str | None = DEFAULT_BRANCH
    commit: Digest | None = None  # only set when detached

    @property
    def is_detached(self) -> bool:
        return self.branch is None

    def to_dict(self) -> dict:
        if self.branch is not None:
            return {"branch": self.branch}
        return {"commit": self.commit.hex() if self.commit is not None else None}

    @classmethod
    def from_dict(cls, data: dict) -> Head:
        if data.get("branch"):
            return cls(branch=data["branch"])
        commit = data.get("commit")
        return cls(branch=None, commit=Digest.from_hex(commit) if commit else None)


@dataclass
class RefTable:
    """Branch and tag tables (name -> commit id), HEAD and the reflog."""

    branches: dict[str, Digest] = field(default_factory=dict)
    tags: dict[str, Digest] = field(default_factory=dict)
    head: Head = field(default_factory=Head)
    reflog: list[RefLogEntry] = field(default_factory=list)

    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    @classmethod
    def new(cls, default_branch: str = DEFAULT_BRANCH) -> RefTable:
        """Empty table with HEAD on an unborn default branch."""
        return cls(head=Head(branch=default_branch))

    def compare_and_swap(self, name: str, expected: Digest | None, new: Digest | None) -> bool:
        """Point branch `name` at `new` only if it currently points at `expected`.

        None as expected means "branch must not exist"; None as new deletes it.
        Returns False, changing nothing, when the branch moved meanwhile.
        """
        with self._lock:
            if self.branches.get(name) != expected:
                return False
            if new is None:
                self.branches.pop(name, None)
            else:
                self.branches[name] = new
            return True

    def add_tag(self, name: str, target: Digest) -> bool:
        """Create a tag. Tags are write-once: returns False if the name is taken."""
        with self._lock:
            if name in self.tags:
                return False
            self.tags[name] = target
            return True

    def set_head(self, head: Head) -> None:
        with self._lock:
            self.head = head

    def record(
        self,
        ref: str,
        old: Digest | None,
        new: Digest | None,
        action: RefAction,
        message: str = "",
    ) -> RefLogEntry:
        """Append a reflog entry."""
        entry = RefLogEntry(ref=ref, old=old, new=new, action=action, message=message)
        with self._lock:
            self.reflog.append(entry)
        logger.debug(f"{action} {ref}: {old.short() if old else '-'} -> {new.short() if new else '-'}")
        return entry

    def snapshot(self) -> RefTable:
        """Detached copy of the current refs, for ``restore``."""
        with self._lock:
            return RefTable(
                branches=dict(self.branches),
                tags=dict(self.tags),
                head=Head(branch=self.head.branch, commit=self.head.commit),
                reflog=list(self.reflog),
            )

    def restore(self, snapshot: RefTable) -> None:
        """Put back refs taken with ``snapshot``, undoing later moves."""
        with self._lock:
            self.branches = dict(snapshot.branches)
            self.tags = dict(snapshot.tags)
            self.head = Head(branch=snapshot.head.branch, commit=snapshot.head.commit)
            self.reflog = list(snapshot.reflog)

    def to_dict(self) -> dict:
        """Serialize for JSON storage."""
        with self._lock:
            return {
                "head": self.head.to_dict(),
                "branches": {n: d.hex() for n, d in sorted(self.branches.items())},
                "tags": {n: d.hex() for n, d in sorted(self.tags.items())},
                "reflog": [e.model_dump(mode="json") for e in self.reflog],
            }

    @classmethod
    def from_dict(cls, data: dict) -> RefTable:
        """Deserialize from JSON."""
        return cls(
            branches={n: Digest.from_hex(h) for n, h in data.get("branches", {}).items()},
            tags={n: Digest.from_hex(h) for n, h in data.get("tags", {}).items()},
            head=Head.from_dict(data.get("head", {"branch": DEFAULT_BRANCH})),
            reflog=[RefLogEntry.model_validate(e) for e in data.get("reflog", [])],
        )


# ─────────────────────────────────────────────────────────────────────────────
# Persistence
# ─────────────────────────────────────────────────────────────────────────────


class RefStore(ABC):
    """Loads and saves a ref table."""

    @abstractmethod
    def load(self) -> RefTable | None:
        """Return the saved table, or None if nothing was saved yet."""

    @abstractmethod
    def save(self, table: RefTable) -> None:
        """Persist the table."""


class MemoryRefStore(RefStore):
    """Keeps a serialized copy in memory; loading returns an independent table."""

    def __init__(self):
        self._data: dict | None = None

    def load(self) -> RefTable | None:
        return RefTable.from_dict(self._data) if self._data is not None else None

    def save(self, table: RefTable) -> None:
        self._data = json.loads(json.dumps(table.to_dict()))


class JsonRefStore(RefStore):
    """Ref table as a JSON file, replaced atomically on save."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> RefTable | None:
        if not self.path.exists():
            return None
        try:
            return RefTable.from_dict(json.loads(self.path.read_text()))
        except OSError as e:
            raise StorageError(f"Cannot read refs from {self.path}: {e}") from e

    def save(self, table: RefTable) -> None:
        content = json.dumps(table.to_dict(), indent=2)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".refs-", suffix=".tmp")
            with os.fdopen(fd, "w") as f:
                f.write(content)
            os.replace(tmp_name, self.path)
        except OSError as e:
            raise StorageError(f"Cannot write refs to {self.path}: {e}") from e
