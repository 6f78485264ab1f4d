"""
Commit Graph & Refs

History is a DAG of immutable commits. Each commit records the complete
tracked-file mapping (filename -> blob hash), so "the state of the project
at this point" is a single lookup rather than a replay of changes.

Only two kinds of state are mutable, and both live in small tables next
to the object store rather than inside any commit:

- branch refs     name -> commit hash
- repo state      HEAD, the active branch, and HEAD's tracked mapping

Every move of HEAD or a branch ref rewrites the tracked mapping in the
same call, so the three never disagree once a batch commits.
"""

import json
import logging
import time
from collections import deque
from dataclasses import dataclass, field

from .cas import ContentStore, ObjectType, content_hash
from .errors import (
    BranchExistsError,
    CurrentBranchError,
    NotFoundError,
    RemoteError,
    UnknownBranchError,
)

logger = logging.getLogger(__name__)

INITIAL_MESSAGE = "initial commit"


@dataclass(frozen=True)
class Blob:
    """A snapshot of one file: its repository-relative path and bytes."""
    path: str
    content: bytes

    def encode(self) -> bytes:
        # Paths cannot contain NUL, so the first NUL ends the path.
        return self.path.encode("utf-8") + b"\0" + self.content

    @classmethod
    def decode(cls, data: bytes) -> "Blob":
        path, _, content = data.partition(b"\0")
        return cls(path=path.decode("utf-8"), content=content)

    @property
    def id(self) -> str:
        return content_hash(self.encode(), ObjectType.BLOB)


@dataclass(frozen=True)
class Commit:
    """
    An immutable history node.

    The id is a hash over every field, so two commits are the same
    object only if timestamp, message, branch, file mapping and both
    parents all match.
    """
    timestamp: float
    message: str
    branch: str
    files: dict[str, str] = field(default_factory=dict)
    parent: str | None = None
    merge_parent: str | None = None

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "message": self.message,
            "branch": self.branch,
            "files": dict(self.files),
            "parent": self.parent,
            "merge_parent": self.merge_parent,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Commit":
        return cls(
            timestamp=d["timestamp"],
            message=d["message"],
            branch=d["branch"],
            files=dict(d.get("files", {})),
            parent=d.get("parent"),
            merge_parent=d.get("merge_parent"),
        )

    def encode(self) -> bytes:
        """Canonical encoding: sorted keys, no whitespace."""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":")).encode()

    @property
    def id(self) -> str:
        return content_hash(self.encode(), ObjectType.COMMIT)

    @property
    def parents(self) -> list[str]:
        return [p for p in (self.parent, self.merge_parent) if p is not None]

    @property
    def is_merge(self) -> bool:
        return self.merge_parent is not None


class CommitGraph:
    """
    Manages commits, branch refs and HEAD.

    This is the history half of the repository. It handles:
    - Creating and persisting commits
    - Resolving full ids and abbreviated prefixes
    - Ancestor walks (both parents) and split-point distances
    - Branch creation, deletion and repointing
    - The tracked-file mapping and named remotes
    """

    def __init__(self, store: ContentStore):
        self.store = store
        # Share the store's connection so one batch covers refs and objects
        self.conn = store.conn
        self._cache: dict[str, Commit] = {}
        self._init_tables()

    def _init_tables(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS branches (
                name TEXT PRIMARY KEY,
                head TEXT NOT NULL,
                created_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS repo_state (
                key TEXT PRIMARY KEY,
                value TEXT
            );

            CREATE TABLE IF NOT EXISTS tracked_files (
                path TEXT PRIMARY KEY,
                blob_hash TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS remotes (
                name TEXT PRIMARY KEY,
                path TEXT NOT NULL,
                created_at REAL NOT NULL
            );
        """)
        self.conn.commit()

    # ── Commit Creation ───────────────────────────────────────────

    def initialize(self, branch: str) -> Commit:
        """Write the root commit and make ``branch`` point at it."""
        if self.head() is not None:
            raise ValueError("History already initialized")
        self._validate_branch_name(branch)
        return self.create_commit(INITIAL_MESSAGE, None, {}, branch)

    def create_commit(
        self,
        message: str,
        parent: str | None,
        files: dict[str, str],
        branch: str,
        merge_parent: str | None = None,
        timestamp: float | None = None,
    ) -> Commit:
        """
        Build and persist a commit, then point HEAD and ``branch`` at it.

        The tracked mapping is replaced with ``files`` and ``branch``
        becomes the active branch, all inside one batch.
        """
        commit = Commit(
            timestamp=time.time() if timestamp is None else timestamp,
            message=message,
            branch=branch,
            files=dict(files),
            parent=parent,
            merge_parent=merge_parent,
        )
        with self.store.batch():
            commit_id = self.store.store(commit.encode(), ObjectType.COMMIT)
            self._set_branch(branch, commit_id)
            self._set_state("head", commit_id)
            self._set_state("current_branch", branch)
            self._set_tracking(commit.files)
        self._cache[commit_id] = commit
        logger.info("Created commit %s on %s: %s", commit_id[:12], branch, message)
        return commit

    # ── Lookup ────────────────────────────────────────────────────

    def get_commit(self, commit_id: str) -> Commit | None:
        """Get a commit by full id, or None."""
        cached = self._cache.get(commit_id)
        if cached is not None:
            return cached
        obj = self.store.retrieve(commit_id, ObjectType.COMMIT)
        if obj is None:
            return None
        commit = Commit.from_dict(json.loads(obj.data.decode()))
        self._cache[commit_id] = commit
        return commit

    def resolve(self, id_or_prefix: str) -> str:
        """Resolve a full id or unique prefix to a full commit id."""
        full = self.store.resolve_prefix(id_or_prefix, ObjectType.COMMIT)
        if full is None:
            raise NotFoundError("No commit with that id exists.")
        return full

    def lookup(self, id_or_prefix: str) -> Commit:
        """Get a commit by id or unique prefix; raises NotFoundError."""
        commit = self.get_commit(self.resolve(id_or_prefix))
        if commit is None:
            raise NotFoundError("No commit with that id exists.")
        return commit

    def head_commit(self) -> Commit:
        head = self.head()
        if head is None:
            raise NotFoundError("Repository has no commits")
        return self.lookup(head)

    # ── Traversal ─────────────────────────────────────────────────

    def ancestor_distances(self, commit_id: str) -> dict[str, int]:
        """
        Fewest parent steps from ``commit_id`` to every ancestor.

        Breadth-first over both the primary and the merge parent, so the
        first time a node is reached is along a shortest path. A node is
        never expanded twice, which bounds the walk on reconverging
        history. The commit itself is at distance 0.
        """
        distances = {commit_id: 0}
        queue = deque([commit_id])
        while queue:
            current = queue.popleft()
            commit = self.get_commit(current)
            if commit is None:
                logger.warning("Missing commit %s during ancestor walk", current)
                continue
            for parent in commit.parents:
                if parent not in distances:
                    distances[parent] = distances[current] + 1
                    queue.append(parent)
        return distances

    def ancestors(self, commit_id: str) -> list[str]:
        """All ancestors of a commit (itself first), nearest first."""
        return list(self.ancestor_distances(commit_id))

    def is_ancestor(self, ancestor_id: str, commit_id: str) -> bool:
        return ancestor_id in self.ancestor_distances(commit_id)

    def first_parent_chain(self, commit_id: str) -> list[tuple[str, Commit]]:
        """Commits from ``commit_id`` back to the root along primary parents."""
        chain = []
        current = commit_id
        seen = set()
        while current is not None and current not in seen:
            seen.add(current)
            commit = self.get_commit(current)
            if commit is None:
                logger.warning("Missing commit %s in first-parent chain", current)
                break
            chain.append((current, commit))
            current = commit.parent
        return chain

    def all_commits(self) -> list[tuple[str, Commit]]:
        """Every stored commit, newest first."""
        commits = [(h, self.get_commit(h)) for h in self.store.hashes(ObjectType.COMMIT)]
        commits.sort(key=lambda pair: (pair[1].timestamp, pair[0]), reverse=True)
        return commits

    def find_by_message(self, message: str) -> list[str]:
        """Ids of every commit whose message is exactly ``message``."""
        return [h for h, c in self.all_commits() if c.message == message]

    # ── Branches ──────────────────────────────────────────────────

    @staticmethod
    def _validate_branch_name(name: str):
        """Validate a branch name before it becomes a ref."""
        if not name or not name.strip():
            raise ValueError("Branch name cannot be empty")
        if "\0" in name:
            raise ValueError(f"Branch name contains null byte: {name!r}")
        if name != name.strip():
            raise ValueError(f"Branch name has surrounding whitespace: {name!r}")

    def create_branch(self, name: str) -> str:
        """Create a branch pointing at HEAD. Returns the commit it points at."""
        self._validate_branch_name(name)
        if self.get_branch_head(name) is not None:
            raise BranchExistsError(name)
        head = self.head()
        if head is None:
            raise NotFoundError("Repository has no commits")
        self._set_branch(name, head)
        self.store.flush()
        logger.info("Created branch %s at %s", name, head[:12])
        return head

    def delete_branch(self, name: str):
        """Delete a branch ref. Commits it pointed at are kept."""
        if self.get_branch_head(name) is None:
            raise UnknownBranchError(name)
        if name == self.current_branch():
            raise CurrentBranchError("Cannot remove the current branch.")
        self.conn.execute("DELETE FROM branches WHERE name = ?", (name,))
        self.store.flush()
        logger.info("Deleted branch %s", name)

    def get_branch_head(self, name: str) -> str | None:
        row = self.conn.execute(
            "SELECT head FROM branches WHERE name = ?", (name,)
        ).fetchone()
        return row[0] if row else None

    def list_branches(self) -> list[dict]:
        rows = self.conn.execute(
            "SELECT name, head, created_at FROM branches ORDER BY name"
        ).fetchall()
        return [{"name": r[0], "head": r[1], "created_at": r[2]} for r in rows]

    def repoint(self, branch: str, commit_id: str, switch: bool = False):
        """
        Move ``branch`` and HEAD to ``commit_id`` and track its files.

        With ``switch=True`` the active branch becomes ``branch``; this is
        how a branch checkout lands. Without it, ``branch`` must already be
        the active branch (reset, fast-forward).
        """
        commit = self.get_commit(commit_id)
        if commit is None:
            raise NotFoundError(f"No commit with that id exists: {commit_id}")
        if not switch and branch != self.current_branch():
            raise CurrentBranchError(
                f"Cannot move HEAD with branch {branch!r}; it is not checked out"
            )
        with self.store.batch():
            self._set_branch(branch, commit_id)
            self._set_state("head", commit_id)
            if switch:
                self._set_state("current_branch", branch)
            self._set_tracking(commit.files)
        logger.info("Moved %s and HEAD to %s", branch, commit_id[:12])

    # ── Repository State ──────────────────────────────────────────

    def head(self) -> str | None:
        return self._get_state("head")

    def current_branch(self) -> str | None:
        return self._get_state("current_branch")

    def tracked_files(self) -> dict[str, str]:
        rows = self.conn.execute(
            "SELECT path, blob_hash FROM tracked_files ORDER BY path"
        ).fetchall()
        return {r[0]: r[1] for r in rows}

    def _get_state(self, key: str) -> str | None:
        row = self.conn.execute(
            "SELECT value FROM repo_state WHERE key = ?", (key,)
        ).fetchone()
        return row[0] if row else None

    def _set_state(self, key: str, value: str | None):
        self.conn.execute(
            "INSERT OR REPLACE INTO repo_state (key, value) VALUES (?, ?)", (key, value)
        )
        self.store.flush()

    def _set_branch(self, name: str, commit_id: str):
        self.conn.execute(
            """INSERT INTO branches (name, head, created_at) VALUES (?, ?, ?)
               ON CONFLICT(name) DO UPDATE SET head = excluded.head""",
            (name, commit_id, time.time()),
        )
        self.store.flush()

    def _set_tracking(self, files: dict[str, str]):
        self.conn.execute("DELETE FROM tracked_files")
        self.conn.executemany(
            "INSERT INTO tracked_files (path, blob_hash) VALUES (?, ?)",
            sorted(files.items()),
        )
        self.store.flush()

    # ── Remotes ───────────────────────────────────────────────────

    def add_remote(self, name: str, path: str):
        """Record a named remote. Nothing is contacted."""
        if not name or not path:
            raise RemoteError("Remote name and path are required.")
        if name in self.remotes():
            raise RemoteError("A remote with that name already exists.")
        self.conn.execute(
            "INSERT INTO remotes (name, path, created_at) VALUES (?, ?, ?)",
            (name, path, time.time()),
        )
        self.store.flush()

    def remove_remote(self, name: str):
        if name not in self.remotes():
            raise RemoteError("A remote with that name does not exist.")
        self.conn.execute("DELETE FROM remotes WHERE name = ?", (name,))
        self.store.flush()

    def remotes(self) -> dict[str, str]:
        rows = self.conn.execute("SELECT name, path FROM remotes ORDER BY name").fetchall()
        return {r[0]: r[1] for r in rows}
