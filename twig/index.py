"""
Staging Index

Pending changes layered on top of HEAD's tracked mapping:

    staged_add     path -> blob hash   new or changed content
    staged_remove  path                 drop from tracking

A path is never in both. Staging content identical to what HEAD tracks
simply un-stages the path, so the index only ever holds real changes.

Staged blobs live in the store's transient keyspace until the commit
that includes them promotes them to permanent storage.
"""

import logging

from .cas import ContentStore
from .errors import EmptyCommitError, EmptyMessageError, NoOpError, NotFoundError
from .state import Blob, Commit, CommitGraph
from .workspace import WorkingTree

logger = logging.getLogger(__name__)


class StagingIndex:
    """The add/remove buffer between the working tree and the next commit."""

    def __init__(self, store: ContentStore, graph: CommitGraph, tree: WorkingTree):
        self.store = store
        self.graph = graph
        self.tree = tree
        self.conn = store.conn
        self._init_tables()

    def _init_tables(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS staged_add (
                path TEXT PRIMARY KEY,
                blob_hash TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS staged_remove (
                path TEXT PRIMARY KEY
            );
        """)
        self.conn.commit()

    # ── Queries ───────────────────────────────────────────────────

    def staged_additions(self) -> dict[str, str]:
        rows = self.conn.execute(
            "SELECT path, blob_hash FROM staged_add ORDER BY path"
        ).fetchall()
        return {r[0]: r[1] for r in rows}

    def staged_removals(self) -> list[str]:
        rows = self.conn.execute("SELECT path FROM staged_remove ORDER BY path").fetchall()
        return [r[0] for r in rows]

    def is_empty(self) -> bool:
        add = self.conn.execute("SELECT 1 FROM staged_add LIMIT 1").fetchone()
        rm = self.conn.execute("SELECT 1 FROM staged_remove LIMIT 1").fetchone()
        return add is None and rm is None

    # ── Mutations ─────────────────────────────────────────────────

    def stage(self, path: str) -> str | None:
        """
        Stage the working-tree version of ``path``.

        Returns the staged blob hash, or None when the content matches
        HEAD and the path ended up un-staged.
        """
        path = self.tree.normalize(path)
        if not self.tree.exists(path):
            raise NotFoundError("File does not exist.")

        blob = Blob(path=path, content=self.tree.read_file(path))
        blob_hash = blob.id
        previous = self.staged_additions().get(path)

        with self.store.batch():
            self.conn.execute("DELETE FROM staged_remove WHERE path = ?", (path,))

            if self.graph.tracked_files().get(path) == blob_hash:
                if previous is not None:
                    self._drop_addition(path, previous)
                logger.debug("%s matches HEAD; nothing staged", path)
                return None

            if previous is not None and previous != blob_hash:
                self.store.discard_staged(previous)
            self.store.stage_blob(blob.encode())
            self.conn.execute(
                "INSERT OR REPLACE INTO staged_add (path, blob_hash) VALUES (?, ?)",
                (path, blob_hash),
            )

        logger.debug("Staged %s as %s", path, blob_hash[:12])
        return blob_hash

    def remove(self, path: str):
        """
        Un-stage ``path`` and, if it is tracked, stage it for removal.

        A tracked file is also deleted from the working tree.
        """
        path = self.tree.normalize(path)
        tracked = path in self.graph.tracked_files()
        staged = self.staged_additions().get(path)

        if not tracked and staged is None:
            raise NoOpError("No reason to remove the file.")

        with self.store.batch():
            if staged is not None:
                self._drop_addition(path, staged)
            if tracked:
                self.conn.execute(
                    "INSERT OR IGNORE INTO staged_remove (path) VALUES (?)", (path,)
                )
                # Last step so a failed delete rolls the index back too
                self.tree.delete_file(path)

        logger.debug("Removed %s (tracked=%s)", path, tracked)

    def commit(self, message: str, merge_parent: str | None = None, allow_empty: bool = False) -> Commit:
        """
        Fold the index into a new commit on the current branch.

        New mapping = HEAD's tracked files, overlaid with staged_add,
        minus staged_remove. The index is empty afterwards.
        """
        if not message:
            raise EmptyMessageError()
        if self.is_empty() and not allow_empty:
            raise EmptyCommitError()

        additions = self.staged_additions()
        removals = self.staged_removals()

        files = self.graph.tracked_files()
        files.update(additions)
        for path in removals:
            files.pop(path, None)

        with self.store.batch():
            for blob_hash in additions.values():
                self.store.promote_staged(blob_hash)
            commit = self.graph.create_commit(
                message=message,
                parent=self.graph.head(),
                files=files,
                branch=self.graph.current_branch(),
                merge_parent=merge_parent,
            )
            self.clear()

        return commit

    def clear(self):
        """Discard every pending change and transient blob."""
        with self.store.batch():
            self.conn.execute("DELETE FROM staged_add")
            self.conn.execute("DELETE FROM staged_remove")
            self.store.clear_staged()

    def _drop_addition(self, path: str, blob_hash: str):
        self.conn.execute("DELETE FROM staged_add WHERE path = ?", (path,))
        self.store.discard_staged(blob_hash)
