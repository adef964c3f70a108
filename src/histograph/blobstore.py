"""Raw blob storage backends.

A blob store maps (namespace, hex key) to opaque bytes and knows nothing
about digests or encodings. Namespaces partition objects by kind
(vertex/, edge/, vertexvec/, graph/, commit/). Writes are write-once:
writing an existing key is a no-op, so concurrent writers of identical
content converge to one stored copy without locking.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterator

from .errors import StorageError

logger = logging.getLogger(__name__)

BACKENDS = ("sqlite", "file", "memory")


class BlobStore(ABC):
    """Key-value boundary consumed by the object store."""

    @abstractmethod
    def write(self, namespace: str, key: str, data: bytes) -> bool:
        """Store bytes under key. Returns False if the key already existed."""

    @abstractmethod
    def read(self, namespace: str, key: str) -> bytes | None:
        """Return stored bytes, or None if the key is absent."""

    @abstractmethod
    def exists(self, namespace: str, key: str) -> bool:
        """Check whether key is present."""

    @abstractmethod
    def keys(self, namespace: str) -> Iterator[str]:
        """Iterate all keys of a namespace, in sorted order."""

    def close(self) -> None:
        """Release resources. Default: nothing to release."""


class MemoryBlobStore(BlobStore):
    """Dict-backed store, for tests and throwaway repositories."""

    def __init__(self):
        self._data: dict[str, dict[str, bytes]] = {}

    def write(self, namespace: str, key: str, data: bytes) -> bool:
        bucket = self._data.setdefault(namespace, {})
        if key in bucket:
            return False
        # setdefault is atomic under the GIL: first writer wins, others no-op
        blob = bytes(data)
        return bucket.setdefault(key, blob) is blob

    def read(self, namespace: str, key: str) -> bytes | None:
        return self._data.get(namespace, {}).get(key)

    def exists(self, namespace: str, key: str) -> bool:
        return key in self._data.get(namespace, {})

    def keys(self, namespace: str) -> Iterator[str]:
        return iter(sorted(self._data.get(namespace, {})))

    def __len__(self) -> int:
        return sum(len(bucket) for bucket in self._data.values())


class FileBlobStore(BlobStore):
    """One directory per namespace, one file per blob named by its key.

    Files are written to a temporary name and renamed into place, so a
    reader never sees a partial blob and two writers of the same key
    simply replace identical content.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create object directory {self.root}: {e}") from e

    def _path(self, namespace: str, key: str) -> Path:
        return self.root / namespace / key

    def write(self, namespace: str, key: str, data: bytes) -> bool:
        path = self._path(namespace, key)
        if path.exists():
            return False

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{key[:8]}-", suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise StorageError(f"Cannot write {namespace}/{key}: {e}") from e
        return True

    def read(self, namespace: str, key: str) -> bytes | None:
        try:
            return self._path(namespace, key).read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"Cannot read {namespace}/{key}: {e}") from e

    def exists(self, namespace: str, key: str) -> bool:
        return self._path(namespace, key).is_file()

    def keys(self, namespace: str) -> Iterator[str]:
        directory = self.root / namespace
        if not directory.is_dir():
            return iter(())
        return iter(sorted(
            p.name for p in directory.iterdir()
            if p.is_file() and not p.name.startswith(".")
        ))


class SQLiteBlobStore(BlobStore):
    """Blob store backed by a single SQLite database.

    Each thread gets its own connection; SQLite serializes writers and
    INSERT OR IGNORE makes duplicate puts no-ops.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path):
        """Initialize blob store.

        Args:
            db_path: Path to objects.db
        """
        self.db_path = Path(db_path)
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._init_db()
        except (OSError, sqlite3.Error) as e:
            raise StorageError(f"Cannot open object database {self.db_path}: {e}") from e

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create this thread's database connection."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(str(self.db_path), timeout=30.0, check_same_thread=False)
            # Enable WAL mode for better concurrency
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA busy_timeout=30000")
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    def _init_db(self) -> None:
        """Initialize database schema."""
        conn = self._get_conn()

        conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                created_at TEXT DEFAULT (datetime('now'))
            )
        """)

        version = conn.execute("SELECT version FROM schema_version").fetchone()
        if version is None:
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (self.SCHEMA_VERSION,)
            )
        elif version[0] != self.SCHEMA_VERSION:
            logger.warning(f"Object database schema version {version[0]} detected, expected {self.SCHEMA_VERSION}")

        conn.executescript("""
            CREATE TABLE IF NOT EXISTS objects (
                namespace TEXT NOT NULL,
                key TEXT NOT NULL,
                data BLOB NOT NULL,
                created_at TEXT DEFAULT (datetime('now')),
                PRIMARY KEY (namespace, key)
            );
        """)
        conn.commit()

    def write(self, namespace: str, key: str, data: bytes) -> bool:
        conn = self._get_conn()
        try:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO objects (namespace, key, data) VALUES (?, ?, ?)",
                (namespace, key, sqlite3.Binary(data)),
            )
            conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Cannot write {namespace}/{key}: {e}") from e
        return cursor.rowcount == 1

    def read(self, namespace: str, key: str) -> bytes | None:
        try:
            row = self._get_conn().execute(
                "SELECT data FROM objects WHERE namespace = ? AND key = ?",
                (namespace, key),
            ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Cannot read {namespace}/{key}: {e}") from e
        return bytes(row[0]) if row is not None else None

    def exists(self, namespace: str, key: str) -> bool:
        row = self._get_conn().execute(
            "SELECT 1 FROM objects WHERE namespace = ? AND key = ?",
            (namespace, key),
        ).fetchone()
        return row is not None

    def keys(self, namespace: str) -> Iterator[str]:
        cursor = self._get_conn().execute(
            "SELECT key FROM objects WHERE namespace = ? ORDER BY key", (namespace,)
        )
        return (row[0] for row in cursor.fetchall())

    def count(self, namespace: str | None = None) -> int:
        """Count stored blobs, optionally within one namespace."""
        conn = self._get_conn()
        if namespace is None:
            return conn.execute("SELECT COUNT(*) FROM objects").fetchone()[0]
        return conn.execute(
            "SELECT COUNT(*) FROM objects WHERE namespace = ?", (namespace,)
        ).fetchone()[0]

    def close(self) -> None:
        """Close every connection opened by this store.

        Forces a WAL checkpoint first so the main database file is complete.
        """
        with self._connections_lock:
            connections, self._connections = self._connections, []
        for i, conn in enumerate(connections):
            if i == 0:
                conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            conn.close()
        self._local = threading.local()


def open_blob_store(backend: str, repo_dir: Path) -> BlobStore:
    """Build the blob store configured for a repository directory."""
    if backend == "sqlite":
        return SQLiteBlobStore(repo_dir / "objects.db")
    if backend == "file":
        return FileBlobStore(repo_dir / "objects")
    if backend == "memory":
        return MemoryBlobStore()
    raise ValueError(f"Unknown backend '{backend}'. Use one of: {', '.join(BACKENDS)}")
