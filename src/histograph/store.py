"""Content-addressed object store.

Wraps a BlobStore: bytes go in, the digest of those bytes comes out and
becomes the key. No update, no delete. Storing identical bytes twice is a
no-op returning the same digest.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, Iterator

from .addressing import ContentAddresser
from .blobstore import BlobStore, MemoryBlobStore
from .errors import IntegrityError, NotFound
from .models import Digest

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "blob"


class ObjectStore:
    """Write-once store keyed by content digest.

    Safe to share between threads: all writes are idempotent puts keyed by
    content, so no two writers can disagree about what a key holds.
    """

    def __init__(
        self,
        blobs: BlobStore | None = None,
        addresser: ContentAddresser | None = None,
        verify_reads: bool = False,
    ):
        """Initialize object store.

        Args:
            blobs: Backing blob store (default: in-memory)
            addresser: Digest function (default: SHA-256)
            verify_reads: Re-hash bytes on every get and fail on mismatch
        """
        self.blobs = blobs if blobs is not None else MemoryBlobStore()
        self.addresser = addresser or ContentAddresser()
        self.verify_reads = verify_reads

    def put(self, data: bytes, namespace: str = DEFAULT_NAMESPACE) -> Digest:
        """Store bytes under their digest and return the digest."""
        digest = self.addresser.digest(data)
        if self.blobs.write(namespace, digest.hex(), data):
            logger.debug(f"Stored {namespace}/{digest.short()} ({len(data)} bytes)")
        return digest

    def put_many(
        self,
        blobs: Iterable[bytes],
        namespace: str = DEFAULT_NAMESPACE,
        max_workers: int | None = None,
    ) -> list[Digest]:
        """Store independent blobs, in parallel when max_workers > 1.

        Digests come back in input order.
        """
        blobs = list(blobs)
        if len(blobs) <= 1 or not max_workers or max_workers <= 1:
            return [self.put(data, namespace) for data in blobs]
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            return list(pool.map(lambda data: self.put(data, namespace), blobs))

    def get(self, digest: Digest, namespace: str = DEFAULT_NAMESPACE) -> bytes:
        """Fetch bytes by digest.

        Raises:
            NotFound: No object with that digest in the namespace
            IntegrityError: verify_reads is on and the bytes do not match
        """
        data = self.blobs.read(namespace, digest.hex())
        if data is None:
            raise NotFound(digest, namespace)
        if self.verify_reads:
            actual = self.addresser.digest(data)
            if actual != digest:
                raise IntegrityError(digest, actual, namespace)
        return data

    def contains(self, digest: Digest, namespace: str = DEFAULT_NAMESPACE) -> bool:
        return self.blobs.exists(namespace, digest.hex())

    def digests(self, namespace: str = DEFAULT_NAMESPACE) -> Iterator[Digest]:
        """Iterate stored digests of a namespace in lexicographic order."""
        for key in self.blobs.keys(namespace):
            try:
                yield Digest.from_hex(key)
            except ValueError:
                logger.warning(f"Skipping foreign key {namespace}/{key}")

    def close(self) -> None:
        self.blobs.close()
