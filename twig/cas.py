"""
Content-Addressed Store (CAS)

The foundational storage layer. Blobs and commits are stored exactly
once, addressed by their SHA-256 hash:

- Automatic deduplication (re-staging an unchanged file costs nothing)
- Integrity verification (an id is a pure function of the content)
- Append-only history (nothing is ever rewritten in place)

There are two keyspaces:

    objects         permanent blobs and commits, separated by type
    staged_objects  transient blobs added but not yet committed

A staged blob is promoted into ``objects`` when the commit that includes
it is finalized, and its transient copy is dropped at that point.
"""

import hashlib
import logging
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)

# Length of a full hex SHA-256 digest. Anything shorter is a prefix.
HASH_LENGTH = 64


class ObjectType(Enum):
    BLOB = "blob"  # One file: path + contents
    COMMIT = "commit"  # History node: metadata + file mapping + parents


@dataclass(frozen=True)
class CASObject:
    """An immutable content-addressed object."""

    hash: str
    type: ObjectType
    data: bytes
    size: int


class ContentStoreLimitError(ValueError):
    """Raised when a store operation exceeds configured limits."""


def content_hash(content: bytes, obj_type: ObjectType) -> str:
    """
    Hash content with type prefix (like git does) so a blob and a
    commit with the same bytes never share an id.
    """
    header = f"{obj_type.value}:{len(content)}:".encode()
    return hashlib.sha256(header + content).hexdigest()


class ContentStore:
    """
    SQLite-backed content-addressed store.

    The same connection also carries the ref and index tables owned by
    CommitGraph and StagingIndex, so a single ``batch()`` makes a whole
    repository operation atomic.

    Thread Safety:
        Not safe for concurrent use. One process, one Repository.
    """

    # Default: 100 MB max blob size
    # Note: 0 or missing value uses DEFAULT_MAX_BLOB_SIZE
    DEFAULT_MAX_BLOB_SIZE = 100 * 1024 * 1024

    def __init__(self, db_path: Path, max_blob_size: int = 0):
        self.db_path = db_path
        self.max_blob_size = max_blob_size if max_blob_size > 0 else self.DEFAULT_MAX_BLOB_SIZE
        self.conn = sqlite3.connect(str(db_path))
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA synchronous=NORMAL")
        self._in_batch = False
        self._closed = False
        self._init_tables()

    def _init_tables(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS objects (
                hash TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                data BLOB NOT NULL,
                size INTEGER NOT NULL,
                created_at REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_objects_type
                ON objects(type);

            CREATE TABLE IF NOT EXISTS staged_objects (
                hash TEXT PRIMARY KEY,
                data BLOB NOT NULL,
                size INTEGER NOT NULL,
                created_at REAL NOT NULL
            );
        """)
        self.conn.commit()

    # ── Batch Transactions ────────────────────────────────────────

    @contextmanager
    def batch(self):
        """Context manager for batched writes — single commit at the end."""
        if self._in_batch:
            yield  # nested: pass through
            return
        self._in_batch = True
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            yield
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        finally:
            self._in_batch = False

    def flush(self):
        """Commit pending writes unless a batch is open."""
        if not self._in_batch:
            self.conn.commit()

    # ── Core Operations ───────────────────────────────────────────

    def hash_content(self, content: bytes, obj_type: ObjectType) -> str:
        return content_hash(content, obj_type)

    def store(self, content: bytes, obj_type: ObjectType) -> str:
        """
        Store content and return its hash. Idempotent — storing
        the same content twice is a no-op that returns the same hash.
        """
        content_hash = self.hash_content(content, obj_type)

        if self.exists(content_hash):
            return content_hash

        if obj_type == ObjectType.BLOB:
            self.check_size(content)

        self.conn.execute(
            """INSERT OR IGNORE INTO objects
               (hash, type, data, size, created_at) VALUES (?, ?, ?, ?, ?)""",
            (content_hash, obj_type.value, content, len(content), time.time()),
        )
        self.flush()
        return content_hash

    def retrieve(self, content_hash: str, obj_type: ObjectType | None = None) -> CASObject | None:
        """Retrieve a permanent object by its hash, optionally restricted to one type."""
        row = self.conn.execute(
            "SELECT hash, type, data, size FROM objects WHERE hash = ?", (content_hash,)
        ).fetchone()

        if row is None:
            return None
        if obj_type is not None and row[1] != obj_type.value:
            return None

        return CASObject(
            hash=row[0],
            type=ObjectType(row[1]),
            data=row[2],
            size=row[3],
        )

    def exists(self, content_hash: str) -> bool:
        row = self.conn.execute("SELECT 1 FROM objects WHERE hash = ?", (content_hash,)).fetchone()
        return row is not None

    def resolve_prefix(self, key: str, obj_type: ObjectType = ObjectType.COMMIT) -> str | None:
        """
        Resolve an abbreviated id to a full hash.

        Full-length keys are returned as-is when present. Shorter keys
        must match exactly one stored object of ``obj_type``; an
        ambiguous or unknown prefix resolves to None.
        """
        if not key:
            return None
        if len(key) >= HASH_LENGTH:
            return key if self.retrieve(key, obj_type) is not None else None

        escaped = key.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        rows = self.conn.execute(
            "SELECT hash FROM objects WHERE type = ? AND hash LIKE ? ESCAPE '\\' LIMIT 2",
            (obj_type.value, escaped + "%"),
        ).fetchall()
        if len(rows) != 1:
            if len(rows) > 1:
                logger.debug("Ambiguous %s prefix %r", obj_type.value, key)
            return None
        return rows[0][0]

    def hashes(self, obj_type: ObjectType) -> list[str]:
        """All permanent hashes of one type, sorted."""
        rows = self.conn.execute(
            "SELECT hash FROM objects WHERE type = ? ORDER BY hash", (obj_type.value,)
        ).fetchall()
        return [r[0] for r in rows]

    # ── Staging Keyspace ──────────────────────────────────────────

    def stage_blob(self, content: bytes) -> str:
        """Write a blob to the transient keyspace and return its hash."""
        self.check_size(content)
        content_hash = self.hash_content(content, ObjectType.BLOB)
        self.conn.execute(
            """INSERT OR IGNORE INTO staged_objects
               (hash, data, size, created_at) VALUES (?, ?, ?, ?)""",
            (content_hash, content, len(content), time.time()),
        )
        self.flush()
        return content_hash

    def retrieve_staged(self, content_hash: str) -> CASObject | None:
        row = self.conn.execute(
            "SELECT hash, data, size FROM staged_objects WHERE hash = ?", (content_hash,)
        ).fetchone()
        if row is None:
            return None
        return CASObject(hash=row[0], type=ObjectType.BLOB, data=row[1], size=row[2])

    def discard_staged(self, content_hash: str):
        """Drop a transient blob. Missing hashes are ignored."""
        self.conn.execute("DELETE FROM staged_objects WHERE hash = ?", (content_hash,))
        self.flush()

    def promote_staged(self, content_hash: str) -> str:
        """
        Move a transient blob into permanent storage.

        A hash that was already promoted (or stored directly) is left
        alone; only a hash known to neither keyspace is an error.
        """
        obj = self.retrieve_staged(content_hash)
        if obj is None:
            if self.exists(content_hash):
                return content_hash
            raise KeyError(f"Staged blob not found: {content_hash}")
        stored = self.store(obj.data, ObjectType.BLOB)
        self.conn.execute("DELETE FROM staged_objects WHERE hash = ?", (content_hash,))
        self.flush()
        return stored

    def clear_staged(self) -> int:
        """Remove every transient blob. Returns how many were dropped."""
        cur = self.conn.execute("DELETE FROM staged_objects")
        self.flush()
        return cur.rowcount

    def check_size(self, content: bytes):
        """Raise ContentStoreLimitError if ``content`` is over the blob limit."""
        if len(content) > self.max_blob_size:
            raise ContentStoreLimitError(
                f"Blob size {len(content)} bytes exceeds limit of {self.max_blob_size} bytes"
            )

    # ── Statistics ────────────────────────────────────────────────

    def stats(self) -> dict:
        """Storage statistics."""
        row = self.conn.execute("SELECT COUNT(*), COALESCE(SUM(size), 0) FROM objects").fetchone()
        by_type = {}
        for row2 in self.conn.execute(
            "SELECT type, COUNT(*), COALESCE(SUM(size), 0) FROM objects GROUP BY type"
        ):
            by_type[row2[0]] = {"count": row2[1], "bytes": row2[2]}
        staged = self.conn.execute("SELECT COUNT(*) FROM staged_objects").fetchone()

        return {
            "total_objects": row[0],
            "total_bytes": row[1],
            "by_type": by_type,
            "staged_objects": staged[0],
        }

    def close(self):
        """Close the SQLite connection. Safe to call multiple times."""
        if self._closed:
            return
        self._closed = True
        self.conn.close()
