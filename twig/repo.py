"""
Repository

The high-level API that the CLI (and any other caller) talks to. It
ties together the content store, commit graph, staging index, working
tree and merge engine behind one explicit handle:

    repo = Repository.init("/path/to/project")

    (repo.root / "notes.txt").write_text("hello")
    repo.add("notes.txt")
    repo.commit("Add notes")

    repo.branch("experiment")
    repo.checkout_branch("experiment")
    ...
    repo.checkout_branch("master")
    result = repo.merge("experiment")

Every operation reads what it needs, validates, and only then touches
the working directory; the durable state is written in one batch.
"""

import json
import logging
import time
from pathlib import Path

from .cas import ContentStore
from .errors import CurrentBranchError, NotFoundError, UnknownBranchError
from .index import StagingIndex
from .merge import MergeEngine, MergeResult
from .state import Blob, Commit, CommitGraph
from .workspace import WorkingTree

logger = logging.getLogger(__name__)

REPO_DIR_NAME = ".twig"
DEFAULT_BRANCH = "master"
CONFIG_VERSION = 1
KNOWN_CONFIG_KEYS = frozenset({"version", "default_branch", "created_at", "max_blob_size"})


class NotARepository(ValueError):
    """Raised when a command is run outside a Twig repository."""
    def __init__(self, start_path):
        super().__init__(
            f"Not inside a Twig repository (searched from {start_path})\n"
            f"  Run 'twig init' to create one, or use '-C <path>' to specify a directory."
        )


class Repository:
    """
    A Twig repository.

    Stores all data in a .twig directory at the repository root. The
    root itself is the working directory.
    """

    def __init__(self, root: Path):
        self.root = Path(root).resolve()
        self.twig_dir = self.root / REPO_DIR_NAME
        self.db_path = self.twig_dir / "store.db"

        if not self.twig_dir.exists():
            raise ValueError(
                f"Not a Twig repository: {self.root}\n"
                f"Run `twig init` to create one."
            )

        config = self._read_config()
        self._validate_config(config)
        self.config = config

        max_blob_size = config.get("max_blob_size", 0)
        if max_blob_size < 0:
            raise ValueError(
                f"Invalid config: max_blob_size must be >= 0, got {max_blob_size}\n"
                f"  Use 0 for default limit ({ContentStore.DEFAULT_MAX_BLOB_SIZE} bytes)"
            )

        self.store = ContentStore(self.db_path, max_blob_size=max_blob_size)
        self.graph = CommitGraph(self.store)
        self.tree = WorkingTree(self.root, self.store, REPO_DIR_NAME)
        self.index = StagingIndex(self.store, self.graph, self.tree)
        self.merger = MergeEngine(self.graph, self.index, self.tree)

    @classmethod
    def init(cls, path: Path, default_branch: str = DEFAULT_BRANCH) -> "Repository":
        """
        Initialize a new repository with a single root commit.

        Existing files in the directory are left alone and untracked.
        """
        root = Path(path).resolve()
        twig_dir = root / REPO_DIR_NAME

        if twig_dir.exists():
            raise ValueError(
                f"A Twig version-control system already exists in {root}"
            )

        twig_dir.mkdir(parents=True)
        (twig_dir / "config.json").write_text(json.dumps({
            "version": CONFIG_VERSION,
            "default_branch": default_branch,
            "created_at": time.time(),
            "max_blob_size": ContentStore.DEFAULT_MAX_BLOB_SIZE,
        }, indent=2))

        repo = cls(root)
        repo.graph.initialize(default_branch)
        logger.info("Initialized repository at %s on branch %s", root, default_branch)
        return repo

    # ── Staging & Committing ──────────────────────────────────────

    def add(self, path) -> str | None:
        """Stage a file. Returns its blob hash, or None if it matches HEAD."""
        return self.index.stage(path)

    def rm(self, path):
        """Un-stage a file, and stage it for removal if tracked."""
        self.index.remove(path)

    def commit(self, message: str) -> Commit:
        return self.index.commit(message)

    # ── Checkout & Reset ──────────────────────────────────────────

    def checkout_branch(self, name: str) -> dict:
        """
        Switch to another branch.

        The working tree is reconciled onto the branch tip, the branch
        becomes active, and the staging index is cleared.
        """
        if name == self.graph.current_branch():
            raise CurrentBranchError("No need to checkout the current branch.")
        target_id = self.graph.get_branch_head(name)
        if target_id is None:
            raise UnknownBranchError(name)

        summary = self._reconcile(target_id)
        with self.store.batch():
            self.graph.repoint(name, target_id, switch=True)
            self.index.clear()
        return {"branch": name, "head": target_id, **summary}

    def checkout_file(self, path, commit_id: str | None = None):
        """
        Restore one file from HEAD or another commit.

        HEAD, the active branch and the index are left as they are.
        """
        commit = self.graph.lookup(commit_id) if commit_id else self.graph.head_commit()
        self.tree.restore_file(commit, self.tree.normalize(path))

    def reset(self, commit_id: str) -> dict:
        """Move the current branch and HEAD to any commit, reconciling the tree."""
        full_id = self.graph.resolve(commit_id)
        summary = self._reconcile(full_id)
        branch = self.graph.current_branch()
        with self.store.batch():
            self.graph.repoint(branch, full_id)
            self.index.clear()
        return {"branch": branch, "head": full_id, **summary}

    def _reconcile(self, commit_id: str) -> dict:
        target = self.graph.lookup(commit_id)
        return self.tree.apply(target.files, self.graph.tracked_files())

    # ── Branches ──────────────────────────────────────────────────

    def branch(self, name: str) -> str:
        return self.graph.create_branch(name)

    def rm_branch(self, name: str):
        self.graph.delete_branch(name)

    def branches(self) -> list[dict]:
        return self.graph.list_branches()

    def current_branch(self) -> str:
        return self.graph.current_branch()

    def head(self) -> str | None:
        return self.graph.head()

    # ── Merge ─────────────────────────────────────────────────────

    def merge(self, other_branch: str) -> MergeResult:
        return self.merger.merge(other_branch)

    # ── Query Operations ──────────────────────────────────────────

    def log(self) -> list[dict]:
        """First-parent history from HEAD back to the root commit."""
        head = self.graph.head()
        if head is None:
            return []
        return [self._commit_entry(cid, c) for cid, c in self.graph.first_parent_chain(head)]

    def global_log(self) -> list[dict]:
        """Every commit ever made, newest first."""
        return [self._commit_entry(cid, c) for cid, c in self.graph.all_commits()]

    def find_commits(self, message: str) -> list[str]:
        ids = self.graph.find_by_message(message)
        if not ids:
            raise NotFoundError("Found no commit with that message.")
        return ids

    def show(self, commit_id: str) -> dict:
        full_id = self.graph.resolve(commit_id)
        return self._commit_entry(full_id, self.graph.lookup(full_id))

    def status(self) -> dict:
        """
        Branches plus the state of every interesting file.

        ``modified`` entries carry a `` (modified)`` or `` (deleted)``
        suffix for changes that exist on disk but are not staged.
        """
        tracked = self.graph.tracked_files()
        staged_add = self.index.staged_additions()
        staged_remove = set(self.index.staged_removals())
        on_disk = set(self.tree.list_files())

        def working_hash(path):
            return Blob(path=path, content=self.tree.read_file(path)).id

        staged, removed, modified, untracked = [], [], [], []
        for path in sorted(on_disk | set(tracked) | set(staged_add) | staged_remove):
            present = path in on_disk
            if path in staged_remove:
                (untracked if present else removed).append(path)
            elif path in staged_add:
                if not present:
                    modified.append(f"{path} (deleted)")
                elif working_hash(path) != staged_add[path]:
                    modified.append(f"{path} (modified)")
                else:
                    staged.append(path)
            elif path in tracked:
                if not present:
                    modified.append(f"{path} (deleted)")
                elif working_hash(path) != tracked[path]:
                    modified.append(f"{path} (modified)")
            else:
                untracked.append(path)

        return {
            "root": str(self.root),
            "head": self.graph.head(),
            "current_branch": self.graph.current_branch(),
            "branches": [b["name"] for b in self.graph.list_branches()],
            "staged": staged,
            "removed": removed,
            "modified": modified,
            "untracked": untracked,
        }

    def _commit_entry(self, commit_id: str, commit: Commit) -> dict:
        return {
            "id": commit_id,
            "message": commit.message,
            "branch": commit.branch,
            "timestamp": commit.timestamp,
            "parent": commit.parent,
            "merge_parent": commit.merge_parent,
            "files": dict(commit.files),
        }

    # ── Remotes ───────────────────────────────────────────────────

    def add_remote(self, name: str, path: str):
        self.graph.add_remote(name, path)

    def remove_remote(self, name: str):
        self.graph.remove_remote(name)

    def remotes(self) -> dict[str, str]:
        return self.graph.remotes()

    # ── Helpers ───────────────────────────────────────────────────

    def _read_config(self) -> dict:
        """Read repository configuration."""
        config_path = self.twig_dir / "config.json"
        if config_path.exists():
            return json.loads(config_path.read_text())
        return {}

    @staticmethod
    def _validate_config(config: dict) -> None:
        """Validate config version and warn on unknown keys."""
        repo_version = config.get("version")
        if repo_version is not None and repo_version > CONFIG_VERSION:
            raise ValueError(
                f"Repository config version {repo_version} is newer than "
                f"this version of Twig ({CONFIG_VERSION}). "
                f"Please upgrade Twig to open this repository."
            )

        unknown_keys = set(config.keys()) - KNOWN_CONFIG_KEYS
        if unknown_keys:
            logger.warning("Unknown config keys (ignored): %s", ", ".join(sorted(unknown_keys)))

    @classmethod
    def find(cls, start_path: Path | None = None) -> "Repository":
        """Find a repository by walking up from the given path."""
        path = Path(start_path or Path.cwd()).resolve()
        while True:
            if (path / REPO_DIR_NAME).exists():
                return cls(path)
            parent = path.parent
            if parent == path:
                break
            path = parent
        raise NotARepository(start_path or Path.cwd())

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False

    def close(self):
        self.store.close()
