"""Canonical binary codec.

The bytes produced here are the hashing input for every object, so the
layout must never change for a given (kind, version) pair. Changing it
silently changes every digest; bump FORMAT_VERSION for the kind instead.

Layout (big-endian, no padding):

    header      kind:u8 version:u8
    string      len:u32 utf-8 bytes
    attributes  count:u32 (key:string value:string)*   keys strictly increasing
    digest      32 raw bytes
    digests     count:u32 digest*

    Vertex      header vertex_id:u64 attributes
    Edge        header tail:digest head:digest attributes
    VertexSet   header digests                        no duplicates
    Graph       header vertices:digests edges:digests
    Commit      header graph:digest parents:digests author:string
                message:string timestamp:i64 extra:attributes
"""

import struct
from enum import IntEnum
from typing import Union

from .errors import CorruptInput, TruncatedInput
from .models import (
    DIGEST_SIZE,
    Commit,
    CommitMetadata,
    Digest,
    Edge,
    Graph,
    Vertex,
    VertexSet,
)

FORMAT_VERSION = 1

_U8 = struct.Struct(">B")
_U32 = struct.Struct(">I")
_U64 = struct.Struct(">Q")
_I64 = struct.Struct(">q")


class ObjectKind(IntEnum):
    VERTEX = 1
    EDGE = 2
    VERTEX_SET = 3
    GRAPH = 4
    COMMIT = 5


HashedObject = Union[Vertex, Edge, VertexSet, Graph, Commit]

_KIND_BY_TYPE: dict[type, ObjectKind] = {
    Vertex: ObjectKind.VERTEX,
    Edge: ObjectKind.EDGE,
    VertexSet: ObjectKind.VERTEX_SET,
    Graph: ObjectKind.GRAPH,
    Commit: ObjectKind.COMMIT,
}


def kind_of(obj_or_type) -> ObjectKind:
    """Object kind for an instance or a model class."""
    cls = obj_or_type if isinstance(obj_or_type, type) else type(obj_or_type)
    try:
        return _KIND_BY_TYPE[cls]
    except KeyError:
        raise TypeError(f"{cls.__name__} has no canonical encoding") from None


# ─────────────────────────────────────────────────────────────────────────────
# Encoding
# ─────────────────────────────────────────────────────────────────────────────


class _Writer:
    def __init__(self, kind: ObjectKind):
        self.buf = bytearray()
        self.buf += _U8.pack(kind)
        self.buf += _U8.pack(FORMAT_VERSION)

    def u32(self, value: int) -> None:
        self.buf += _U32.pack(value)

    def u64(self, value: int) -> None:
        self.buf += _U64.pack(value)

    def i64(self, value: int) -> None:
        self.buf += _I64.pack(value)

    def string(self, value: str) -> None:
        try:
            raw = value.encode("utf-8")
        except UnicodeEncodeError as e:
            raise CorruptInput(f"String is not encodable as utf-8: {e.reason}", len(self.buf)) from e
        self.u32(len(raw))
        self.buf += raw

    def attributes(self, mapping: dict[str, str]) -> None:
        # Python str ordering is code point ordering, same as utf-8 byte order
        self.u32(len(mapping))
        for key in sorted(mapping):
            self.string(key)
            self.string(mapping[key])

    def digest(self, value: Digest) -> None:
        self.buf += value

    def digests(self, values: list[Digest]) -> None:
        self.u32(len(values))
        for value in values:
            self.digest(value)


def encode(obj: HashedObject) -> bytes:
    """Serialize a domain object to its canonical bytes.

    Deterministic: equal logical content always yields identical bytes,
    whatever the attribute insertion order.
    """
    kind = kind_of(obj)
    w = _Writer(kind)

    if kind is ObjectKind.VERTEX:
        w.u64(obj.vertex_id)
        w.attributes(obj.attributes)
    elif kind is ObjectKind.EDGE:
        w.digest(obj.tail_digest)
        w.digest(obj.head_digest)
        w.attributes(obj.attributes)
    elif kind is ObjectKind.VERTEX_SET:
        w.digests(obj.digests)
    elif kind is ObjectKind.GRAPH:
        w.digests(obj.vertex_digests)
        w.digests(obj.edge_digests)
    elif kind is ObjectKind.COMMIT:
        w.digest(obj.graph_digest)
        w.digests(obj.parent_ids)
        w.string(obj.metadata.author)
        w.string(obj.metadata.message)
        w.i64(obj.metadata.timestamp)
        w.attributes(obj.metadata.extra)

    return bytes(w.buf)


# ─────────────────────────────────────────────────────────────────────────────
# Decoding
# ─────────────────────────────────────────────────────────────────────────────


class _Reader:
    def __init__(self, data: bytes):
        self.data = memoryview(data)
        self.pos = 0

    def take(self, size: int) -> bytes:
        end = self.pos + size
        if end > len(self.data):
            raise TruncatedInput(
                f"Needed {size} bytes, {len(self.data) - self.pos} left", self.pos
            )
        chunk = self.data[self.pos:end].tobytes()
        self.pos = end
        return chunk

    def u8(self) -> int:
        return _U8.unpack(self.take(1))[0]

    def u32(self) -> int:
        return _U32.unpack(self.take(4))[0]

    def u64(self) -> int:
        return _U64.unpack(self.take(8))[0]

    def i64(self) -> int:
        return _I64.unpack(self.take(8))[0]

    def string(self) -> str:
        start = self.pos
        raw = self.take(self.u32())
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise CorruptInput(f"Invalid utf-8 string: {e.reason}", start) from e

    def attributes(self) -> dict[str, str]:
        count = self.u32()
        mapping: dict[str, str] = {}
        previous: str | None = None
        for _ in range(count):
            start = self.pos
            key = self.string()
            if previous is not None and key <= previous:
                raise CorruptInput(
                    f"Attribute keys out of canonical order at '{key}'", start
                )
            mapping[key] = self.string()
            previous = key
        return mapping

    def digest(self) -> Digest:
        return Digest(self.take(DIGEST_SIZE))

    def digests(self) -> list[Digest]:
        count = self.u32()
        # Reject absurd counts before allocating
        if count * DIGEST_SIZE > len(self.data) - self.pos:
            raise TruncatedInput(
                f"Sequence of {count} digests exceeds remaining input", self.pos
            )
        return [self.digest() for _ in range(count)]

    def finish(self) -> None:
        if self.pos != len(self.data):
            raise CorruptInput(
                f"{len(self.data) - self.pos} trailing bytes after object", self.pos
            )


def decode(data: bytes, expected: type | None = None) -> HashedObject:
    """Parse canonical bytes back into a domain object.

    Args:
        data: Canonical bytes as produced by ``encode``
        expected: Optional model class; a different kind is corrupt input

    Raises:
        TruncatedInput: Input ended before an object was complete
        CorruptInput: Anything else that is not canonical bytes
    """
    r = _Reader(data)
    raw_kind = r.u8()
    try:
        kind = ObjectKind(raw_kind)
    except ValueError:
        raise CorruptInput(f"Unknown object kind {raw_kind}", 0) from None

    version = r.u8()
    if version != FORMAT_VERSION:
        raise CorruptInput(f"Unsupported {kind.name.lower()} format version {version}", 1)

    if expected is not None and kind_of(expected) is not kind:
        raise CorruptInput(
            f"Expected {expected.__name__}, found {kind.name.lower()}", 0
        )

    if kind is ObjectKind.VERTEX:
        obj = Vertex(vertex_id=r.u64(), attributes=r.attributes())
    elif kind is ObjectKind.EDGE:
        obj = Edge(tail_digest=r.digest(), head_digest=r.digest(), attributes=r.attributes())
    elif kind is ObjectKind.VERTEX_SET:
        start = r.pos
        digests = r.digests()
        if len(set(digests)) != len(digests):
            raise CorruptInput("Duplicate digest in vertex set", start)
        obj = VertexSet(digests=digests)
    elif kind is ObjectKind.GRAPH:
        obj = Graph(vertex_digests=r.digests(), edge_digests=r.digests())
    else:
        graph_digest = r.digest()
        parent_ids = r.digests()
        metadata = CommitMetadata(
            author=r.string(),
            message=r.string(),
            timestamp=r.i64(),
            extra=r.attributes(),
        )
        obj = Commit(graph_digest=graph_digest, parent_ids=parent_ids, metadata=metadata)

    r.finish()
    return obj
