"""Core data models for histograph.

Uses Pydantic v2 for validation, ULID for sortable reflog IDs.
Every object that is hashed is frozen: a mutation always builds a new
object with a new digest, nothing is updated in place.
"""

import re
from datetime import datetime, timezone
from typing import Annotated, Any, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, GetCoreSchemaHandler, field_validator
from pydantic_core import core_schema
from ulid import ULID

DIGEST_SIZE = 32
MAX_VERTEX_ID = 2**64 - 1


def generate_id() -> str:
    """Generate a ULID (sortable, unique identifier)."""
    return str(ULID())


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


class Digest(bytes):
    """Fixed-width content address.

    A plain ``bytes`` subclass, so ordering is lexicographic over the raw
    bytes and digests can be used directly as dict keys. The hex form is
    what the blob store uses as its lookup key.
    """

    __slots__ = ()

    def __new__(cls, value: bytes) -> "Digest":
        if len(value) != DIGEST_SIZE:
            raise ValueError(f"Digest must be {DIGEST_SIZE} bytes, got {len(value)}")
        return super().__new__(cls, value)

    @classmethod
    def from_hex(cls, text: str) -> "Digest":
        """Parse a lowercase or uppercase hex digest."""
        try:
            raw = bytes.fromhex(text)
        except ValueError as e:
            raise ValueError(f"Invalid digest '{text}'") from e
        return cls(raw)

    @classmethod
    def coerce(cls, value: Any) -> "Digest":
        """Accept a Digest, raw bytes or a hex string."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            return cls.from_hex(value)
        if isinstance(value, (bytes, bytearray, memoryview)):
            return cls(bytes(value))
        raise ValueError(f"Cannot build a Digest from {type(value).__name__}")

    def short(self, length: int = 7) -> str:
        """Abbreviated hex form for display."""
        return self.hex()[:length]

    def __str__(self) -> str:
        return self.hex()

    def __repr__(self) -> str:
        return f"Digest('{self.hex()}')"

    @classmethod
    def __get_pydantic_core_schema__(
        cls, source_type: Any, handler: GetCoreSchemaHandler
    ) -> core_schema.CoreSchema:
        return core_schema.no_info_plain_validator_function(
            cls.coerce,
            serialization=core_schema.plain_serializer_function_ser_schema(
                lambda d: d.hex(), when_used="json"
            ),
        )


VertexId = Annotated[int, Field(ge=0, le=MAX_VERTEX_ID)]


def _require_utf8(value: str) -> str:
    # Lone surrogates are valid str values but have no utf-8 encoding
    try:
        value.encode("utf-8")
    except UnicodeEncodeError as e:
        raise ValueError(f"Text cannot be encoded as utf-8: {e.reason}") from e
    return value


Text = Annotated[str, AfterValidator(_require_utf8)]
Attributes = dict[Text, Text]


class _HashedModel(BaseModel):
    """Base for content-addressed objects."""

    model_config = ConfigDict(frozen=True)


class Vertex(_HashedModel):
    """A vertex version.

    The vertex id is stable across attribute changes; the digest is not.
    A vertex never stores edge information.
    """

    vertex_id: VertexId
    attributes: Attributes = Field(default_factory=dict)

    def with_attributes(self, attributes: Attributes) -> "Vertex":
        """Return the next version of this vertex."""
        return Vertex(vertex_id=self.vertex_id, attributes=dict(attributes))


class Edge(_HashedModel):
    """A directed edge between two vertex *versions*.

    Endpoints are digests of serialized Vertex objects, not vertex ids, so
    an edge goes stale as soon as either endpoint changes content.
    """

    tail_digest: Digest
    head_digest: Digest
    attributes: Attributes = Field(default_factory=dict)


class VertexSet(_HashedModel):
    """Membership of a graph's vertex set at one history point."""

    digests: list[Digest] = Field(default_factory=list)

    @field_validator("digests")
    @classmethod
    def _deduplicate(cls, value: list[Digest]) -> list[Digest]:
        # First occurrence wins, insertion order is kept
        return list(dict.fromkeys(value))


class Graph(_HashedModel):
    """Persisted graph state: ordered vertex and edge digests.

    Order is insertion order. It only matters for reproducible hashing.
    """

    vertex_digests: list[Digest] = Field(default_factory=list)
    edge_digests: list[Digest] = Field(default_factory=list)


class CommitMetadata(_HashedModel):
    """Descriptive part of a commit. Hashed along with the rest."""

    author: Text = ""
    message: Text = ""
    timestamp: int = Field(default=0, ge=-(2**63), le=2**63 - 1)  # epoch seconds
    extra: Attributes = Field(default_factory=dict)


class Commit(_HashedModel):
    """A node of the commit DAG. Its id is the digest of its canonical bytes."""

    graph_digest: Digest
    parent_ids: list[Digest] = Field(default_factory=list)
    metadata: CommitMetadata = Field(default_factory=CommitMetadata)

    @property
    def is_root(self) -> bool:
        return not self.parent_ids

    @property
    def is_merge(self) -> bool:
        return len(self.parent_ids) >= 2

    def with_parents(self, parent_ids: list[Digest]) -> "Commit":
        """Same content and metadata, different ancestry."""
        return Commit(
            graph_digest=self.graph_digest,
            parent_ids=list(parent_ids),
            metadata=self.metadata,
        )


class GraphView(BaseModel):
    """Displayable graph contents, as returned by ``show``."""

    vertices: list[int] = Field(default_factory=list)
    edges: list[tuple[int, int]] = Field(default_factory=list)

    def to_summary(self) -> dict:
        """Return a compact summary of this view."""
        return {
            "vertex_count": len(self.vertices),
            "edge_count": len(self.edges),
        }


# ─────────────────────────────────────────────────────────────────────────────
# Refs
# ─────────────────────────────────────────────────────────────────────────────

RESERVED_REF_NAMES = ("HEAD", "")
_REF_NAME_PATTERN = re.compile(r"^[A-Za-z0-9._/-]+$")

RefAction = Literal[
    "branch_create",
    "branch_move",
    "branch_delete",
    "tag_create",
    "commit",
    "checkout",
    "rebase",
    "reset",
]


def validate_ref_name(name: str) -> tuple[bool, str | None]:
    """Validate a branch or tag name.

    Returns:
        (is_valid, message); message describes the problem
    """
    if name in RESERVED_REF_NAMES:
        return False, f"'{name}' is a reserved name"

    if not _REF_NAME_PATTERN.match(name):
        return False, "Use only letters, digits, '.', '_', '-' and '/'"

    if name.startswith(("-", "/")) or name.endswith(("/", ".", ".lock")):
        return False, "Name cannot start with '-' or '/' nor end with '/', '.' or '.lock'"

    if ".." in name or "//" in name:
        return False, "Name cannot contain '..' or '//'"

    return True, None


class RefLogEntry(BaseModel):
    """One ref change, append-only."""

    id: str = Field(default_factory=generate_id)
    ts: datetime = Field(default_factory=utc_now)
    ref: str  # branch name, "tag:<name>" or "HEAD"
    old: Digest | None = None
    new: Digest | None = None
    action: RefAction
    message: str = ""
