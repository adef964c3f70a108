"""Error taxonomy for histograph.

Every error carries the value that identifies what went wrong (vertex id,
edge pair, digest, ref name) so callers can report it without re-deriving
context. Lookup-style failures also derive from LookupError, invalid
requests from ValueError.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import Digest


class HistographError(Exception):
    """Base class for all histograph errors."""


# ─────────────────────────────────────────────────────────────────────────────
# Codec
# ─────────────────────────────────────────────────────────────────────────────


class CodecError(HistographError, ValueError):
    """Canonical bytes could not be decoded."""

    kind = "corrupt"

    def __init__(self, message: str, offset: int = 0):
        super().__init__(f"{message} (at byte {offset})")
        self.offset = offset


class TruncatedInput(CodecError):
    """Input ended before a field was complete."""

    kind = "truncated"


class CorruptInput(CodecError):
    """Input is malformed or not in canonical form."""

    kind = "corrupt"


# ─────────────────────────────────────────────────────────────────────────────
# Storage
# ─────────────────────────────────────────────────────────────────────────────


class NotFound(HistographError, LookupError):
    """No object with this digest exists in the namespace."""

    def __init__(self, digest: Digest, namespace: str):
        super().__init__(f"Object {digest} not found in '{namespace}'")
        self.digest = digest
        self.namespace = namespace


class IntegrityError(HistographError):
    """Stored bytes do not hash to the key they are stored under."""

    def __init__(self, digest: Digest, actual: Digest, namespace: str):
        super().__init__(
            f"Object {digest} in '{namespace}' hashes to {actual}"
        )
        self.digest = digest
        self.actual = actual
        self.namespace = namespace


class StorageError(HistographError):
    """The blob store failed at the I/O level (disk full, permissions...)."""


class DanglingReference(HistographError, LookupError):
    """An object references a digest that is missing from the store."""

    def __init__(self, digest: Digest, namespace: str, referrer: Digest | None = None):
        where = f" (referenced by {referrer})" if referrer is not None else ""
        super().__init__(f"Dangling reference to {namespace} {digest}{where}")
        self.digest = digest
        self.namespace = namespace
        self.referrer = referrer


# ─────────────────────────────────────────────────────────────────────────────
# Working graph
# ─────────────────────────────────────────────────────────────────────────────


class DuplicateVertex(HistographError, ValueError):
    def __init__(self, vertex_id: int):
        super().__init__(f"Vertex {vertex_id} already exists")
        self.vertex_id = vertex_id


class UnknownVertex(HistographError, LookupError):
    def __init__(self, vertex_id: int):
        super().__init__(f"Vertex {vertex_id} does not exist")
        self.vertex_id = vertex_id


class DuplicateEdge(HistographError, ValueError):
    def __init__(self, from_vertex: int, to_vertex: int):
        super().__init__(f"Edge ({from_vertex}, {to_vertex}) already exists")
        self.from_vertex = from_vertex
        self.to_vertex = to_vertex


class UnknownEdge(HistographError, LookupError):
    def __init__(self, from_vertex: int, to_vertex: int):
        super().__init__(f"Edge ({from_vertex}, {to_vertex}) does not exist")
        self.from_vertex = from_vertex
        self.to_vertex = to_vertex


# ─────────────────────────────────────────────────────────────────────────────
# History
# ─────────────────────────────────────────────────────────────────────────────


class InvalidRefName(HistographError, ValueError):
    def __init__(self, name: str, reason: str):
        super().__init__(f"Invalid ref name '{name}': {reason}")
        self.name = name
        self.reason = reason


class RefNotFound(HistographError, LookupError):
    def __init__(self, ref: str, kind: str = "Ref"):
        super().__init__(f"{kind} '{ref}' not found")
        self.ref = ref


class AmbiguousRef(HistographError, ValueError):
    def __init__(self, ref: str, candidates: list[Digest]):
        super().__init__(
            f"Ref '{ref}' is ambiguous ({len(candidates)} matching commits)"
        )
        self.ref = ref
        self.candidates = candidates


class BranchNotFound(RefNotFound):
    def __init__(self, name: str):
        super().__init__(name, kind="Branch")


class BranchExists(HistographError, ValueError):
    def __init__(self, name: str):
        super().__init__(f"Branch '{name}' already exists")
        self.name = name


class CheckedOutBranch(HistographError, ValueError):
    def __init__(self, name: str):
        super().__init__(
            f"Cannot delete branch '{name}' while it is checked out. "
            "Checkout a different branch first."
        )
        self.name = name


class TagExists(HistographError, ValueError):
    def __init__(self, name: str):
        super().__init__(f"Tag '{name}' already exists")
        self.name = name


class NonFastForward(HistographError, ValueError):
    def __init__(self, name: str, current: Digest, target: Digest):
        super().__init__(
            f"Moving branch '{name}' from {current.short()} to {target.short()} "
            "is not a fast-forward"
        )
        self.name = name
        self.current = current
        self.target = target


class StaleRef(HistographError):
    """A compare-and-swap on a branch lost against a concurrent move."""

    def __init__(self, name: str, expected: Digest | None, actual: Digest | None):
        super().__init__(
            f"Branch '{name}' moved: expected {expected}, found {actual}"
        )
        self.name = name
        self.expected = expected
        self.actual = actual


class EmptyParentList(HistographError, ValueError):
    def __init__(self):
        super().__init__("Commit requires at least one parent")


class RebaseConflict(HistographError):
    """Linear replay cannot preserve referential integrity."""

    def __init__(self, message: str, commit: Digest | None = None):
        super().__init__(message)
        self.commit = commit


# ─────────────────────────────────────────────────────────────────────────────
# Repository
# ─────────────────────────────────────────────────────────────────────────────


class NothingToCommit(HistographError):
    def __init__(self):
        super().__init__("Nothing to commit, working graph matches HEAD")


class DirtyWorkingGraph(HistographError):
    def __init__(self, ref: str):
        super().__init__(
            f"Working graph has uncommitted changes; commit them or use force "
            f"to check out '{ref}'"
        )
        self.ref = ref


class RepositoryNotFound(HistographError, LookupError):
    def __init__(self, path):
        super().__init__(
            f"Not a histograph repository: {path}\nRun 'histograph init' first."
        )
        self.path = path
