"""
Working Tree

The only place the engine touches user files. Everything else works on
hashes and mappings; this module turns a commit's mapping into files on
disk without ever silently destroying data the user has not committed.

The working tree IS the repository root (like git). The .twig directory
inside it is never read as user content and never written.

Reconciliation contract (checkout, reset, fast-forward):

    1. Obstruction check   every path the target tracks that is not
                           tracked now must not exist on disk
    2. Pre-load            every target blob is read from the store
    3. Delete              paths tracked now but absent from the target
    4. Write               every target file, atomically

Steps 1 and 2 can fail; 3 and 4 only run after both passed, so a failed
operation leaves the directory exactly as it was found.
"""

from __future__ import annotations

import logging
import os
import tempfile
import time
from pathlib import Path, PurePosixPath

from .cas import ContentStore, ObjectType
from .errors import FileNotInCommitError, NotFoundError, UntrackedObstructionError
from .state import Blob, Commit

logger = logging.getLogger(__name__)


def _replace_with_retry(src: Path, dst: Path):
    """Replace dst with src, retrying on Windows PermissionError.

    On Windows, antivirus or indexing services can briefly lock files,
    causing ``PermissionError`` on rename.  We retry up to 5 times with
    exponential backoff.  On POSIX, any error is raised immediately.
    """
    if os.name == "nt":
        for attempt in range(5):
            try:
                src.replace(dst)
                return
            except PermissionError:
                if attempt == 4:
                    raise
                time.sleep(0.01 * (2 ** attempt))
    else:
        src.replace(dst)


def _atomic_write(path: Path, content: bytes):
    """
    Write bytes to a file atomically via write-to-temp + rename.

    A reader never sees a half-written working file, even if the
    process dies mid-write.
    """
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        _replace_with_retry(Path(tmp_path), path)
    except Exception:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class WorkingTree:
    """
    Applies commit file mappings to the directory at ``root``.

    Paths handed in and out are repository-relative POSIX strings
    (``"src/app.py"``), the same keys commits use.
    """

    # Directories skipped when listing untracked files
    DEFAULT_IGNORE = frozenset({
        ".twig", ".git", ".svn", ".hg",
        "__pycache__", "node_modules", ".DS_Store",
    })

    def __init__(self, root: Path, store: ContentStore, repo_dir_name: str = ".twig"):
        self.root = root
        self.store = store
        self.repo_dir_name = repo_dir_name

    # ── Paths ─────────────────────────────────────────────────────

    def normalize(self, path: str | Path) -> str:
        """
        Turn a user-supplied path into a repository-relative key.

        Absolute paths are accepted when they point inside the root.
        Anything that escapes the root or reaches into .twig is rejected.
        """
        candidate = Path(path)
        if candidate.is_absolute():
            try:
                candidate = candidate.resolve().relative_to(self.root.resolve())
            except ValueError:
                raise ValueError(f"Path is outside the repository: {path}") from None
        rel = PurePosixPath(candidate.as_posix())
        parts = [p for p in rel.parts if p not in ("", ".")]
        if not parts:
            raise ValueError(f"Invalid path: {path!r}")
        if ".." in parts:
            raise ValueError(f"Path escapes the repository: {path}")
        if parts[0] == self.repo_dir_name:
            raise ValueError(f"Path is inside {self.repo_dir_name}: {path}")
        if any("\0" in p for p in parts):
            raise ValueError(f"Path contains null byte: {path!r}")
        return "/".join(parts)

    def abspath(self, path: str) -> Path:
        return self.root / path

    # ── File Access ───────────────────────────────────────────────

    def exists(self, path: str) -> bool:
        return self.abspath(path).is_file()

    def read_file(self, path: str) -> bytes:
        fp = self.abspath(path)
        if not fp.is_file():
            raise NotFoundError(f"File does not exist: {path}")
        return fp.read_bytes()

    def write_file(self, path: str, content: bytes):
        fp = self.abspath(path)
        if fp.is_dir():
            raise ValueError(f"A directory is in the way of {path}")
        fp.parent.mkdir(parents=True, exist_ok=True)
        _atomic_write(fp, content)
        logger.debug("Wrote %s (%d bytes)", path, len(content))

    def delete_file(self, path: str) -> bool:
        """Delete a working file and any parent directories it leaves empty."""
        fp = self.abspath(path)
        if not (fp.is_file() or fp.is_symlink()):
            return False
        fp.unlink()
        self._cleanup_empty_parents(fp.parent)
        logger.debug("Deleted %s", path)
        return True

    def list_files(self) -> list[str]:
        """Every regular file under the root, skipping ignored directories."""
        found = []
        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames[:] = sorted(d for d in dirnames if d not in self.DEFAULT_IGNORE)
            base = Path(dirpath)
            for name in filenames:
                if name in self.DEFAULT_IGNORE:
                    continue
                fp = base / name
                if fp.is_symlink():
                    continue
                found.append(fp.relative_to(self.root).as_posix())
        return sorted(found)

    def blob_content(self, blob_hash: str) -> bytes:
        """Contents of a blob, looked up in permanent then staged storage."""
        obj = self.store.retrieve(blob_hash, ObjectType.BLOB) or self.store.retrieve_staged(blob_hash)
        if obj is None:
            raise NotFoundError(f"Blob not found: {blob_hash}")
        return Blob.decode(obj.data).content

    # ── Reconciliation ────────────────────────────────────────────

    def find_obstructions(self, target_files: dict[str, str], tracked: dict[str, str]) -> list[str]:
        """Untracked files (or directories) on disk that the target would overwrite."""
        return sorted(
            path for path in target_files
            if (path not in tracked and self.exists(path)) or self.abspath(path).is_dir()
        )

    def check_obstructions(self, target_files: dict[str, str], tracked: dict[str, str]):
        obstructions = self.find_obstructions(target_files, tracked)
        if obstructions:
            raise UntrackedObstructionError(obstructions)

    def apply(self, target_files: dict[str, str], tracked: dict[str, str]) -> dict:
        """
        Make the working tree match ``target_files``.

        Raises UntrackedObstructionError (or NotFoundError for a missing
        blob) before anything is touched. Returns a summary of what was
        removed and written.
        """
        self.check_obstructions(target_files, tracked)

        contents = {path: self.blob_content(h) for path, h in target_files.items()}

        removed = []
        for path in sorted(set(tracked) - set(target_files)):
            if self.delete_file(path):
                removed.append(path)

        for path in sorted(contents):
            self.write_file(path, contents[path])

        return {
            "removed": removed,
            "written": sorted(contents),
        }

    def restore_file(self, commit: Commit, path: str):
        """Overwrite one working file with its version in ``commit``."""
        blob_hash = commit.files.get(path)
        if blob_hash is None:
            raise FileNotInCommitError(path, commit.id)
        self.write_file(path, self.blob_content(blob_hash))

    # ── Helpers ───────────────────────────────────────────────────

    def _cleanup_empty_parents(self, dir_path: Path):
        """Remove empty parent directories up to the root."""
        current = dir_path
        stop_resolved = self.root.resolve()
        while current != self.root and current.exists():
            try:
                current.resolve().relative_to(stop_resolved)
            except ValueError:
                break
            if current.resolve() == stop_resolved:
                break
            try:
                if not any(current.iterdir()):
                    current.rmdir()
                    current = current.parent
                else:
                    break
            except OSError:
                break
