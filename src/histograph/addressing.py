"""Content addressing: digest(bytes) and address(object).

``address(obj) == digest(encode(obj))`` is the only source of object
identity in histograph.
"""

import hashlib
from typing import Any, Callable

from .codec import HashedObject, encode
from .models import DIGEST_SIZE, Digest

DEFAULT_ALGORITHM = "sha256"

_ALGORITHMS: dict[str, Callable[[bytes], Any]] = {
    "sha256": hashlib.sha256,
    "sha3_256": hashlib.sha3_256,
    "blake2b": lambda data: hashlib.blake2b(data, digest_size=DIGEST_SIZE),
}

ALGORITHMS = tuple(_ALGORITHMS)


class ContentAddresser:
    """Computes fixed-length digests over canonical bytes. Stateless."""

    def __init__(self, algorithm: str = DEFAULT_ALGORITHM):
        if algorithm not in _ALGORITHMS:
            raise ValueError(
                f"Unknown hash algorithm '{algorithm}'. Use one of: {', '.join(ALGORITHMS)}"
            )
        self.algorithm = algorithm
        self._hash = _ALGORITHMS[algorithm]

    def digest(self, data: bytes) -> Digest:
        return Digest(self._hash(data).digest())

    def address(self, obj: HashedObject) -> Digest:
        return self.digest(encode(obj))

    def __repr__(self) -> str:
        return f"ContentAddresser({self.algorithm!r})"


_default = ContentAddresser()


def digest(data: bytes) -> Digest:
    """SHA-256 digest of raw bytes."""
    return _default.digest(data)


def address(obj: HashedObject) -> Digest:
    """SHA-256 digest of an object's canonical bytes."""
    return _default.address(obj)
