"""Merge engine — split point, fast-forward and three-way file-level merge.

Public API
----------
Pure functions (no I/O):

- :func:`classify`: decide what to do with one path given its blob hash
  at the split point, on the current side and on the other side.
- :func:`conflict_content`: render a conflict block for two versions.

Graph helpers:

- :func:`find_split_point`: lowest common ancestor of two commits.

Orchestration:

- :class:`MergeEngine`: runs the preconditions, picks up-to-date /
  fast-forward / three-way, and folds the result into a merge commit.

A conflict is not an error. Both versions are written into the file
between markers, the file is staged, and the merge commit is created
anyway; the caller finds the conflicted paths on :class:`MergeResult`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from .errors import SelfMergeError, UncommittedChangesError, UnknownBranchError
from .index import StagingIndex
from .state import Blob, CommitGraph
from .workspace import WorkingTree

logger = logging.getLogger(__name__)

CONFLICT_START = b"<<<<<<< HEAD\n"
CONFLICT_SEP = b"=======\n"
CONFLICT_END = b">>>>>>>\n"


class MergeStatus(Enum):
    UP_TO_DATE = "up_to_date"  # Other branch already in history
    FAST_FORWARD = "fast_forward"  # Current branch moved to the other tip
    MERGED = "merged"  # New merge commit created


class MergeAction(Enum):
    KEEP = "keep"  # Nothing to do
    TAKE_OTHER = "take_other"  # Check out and stage the other side's file
    REMOVE = "remove"  # Stage for removal
    CONFLICT = "conflict"  # Both sides changed it differently


@dataclass
class MergeResult:
    """Outcome of a merge.

    Attributes:
        status:       Which of the three merge paths was taken.
        branch:       The branch that was merged into.
        other_branch: The branch that was merged in.
        split_point:  Commit id of the common ancestor.
        commit_id:    New merge commit (MERGED) or new HEAD (FAST_FORWARD).
        conflicts:    Paths written with conflict markers, sorted.
    """
    status: MergeStatus
    branch: str
    other_branch: str
    split_point: str | None = None
    commit_id: str | None = None
    conflicts: list[str] = field(default_factory=list)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "branch": self.branch,
            "other_branch": self.other_branch,
            "split_point": self.split_point,
            "commit_id": self.commit_id,
            "conflicts": list(self.conflicts),
        }


# ── Pure Functions ─────────────────────────────────────────────────


def classify(split: str | None, ours: str | None, theirs: str | None) -> MergeAction:
    """Three-way decision for one path.

    Each argument is the path's blob hash in that snapshot, or None when
    the path is absent there. Blob ids cover path and content, so hash
    equality is content equality for a fixed path.
    """
    ours_changed = ours != split
    theirs_changed = theirs != split

    if not ours_changed:
        if not theirs_changed:
            return MergeAction.KEEP
        return MergeAction.TAKE_OTHER if theirs is not None else MergeAction.REMOVE

    if not theirs_changed or ours == theirs:
        return MergeAction.KEEP

    return MergeAction.CONFLICT


def conflict_content(ours: bytes | None, theirs: bytes | None) -> bytes:
    """Both versions between conflict markers; an absent side is empty."""
    return CONFLICT_START + (ours or b"") + CONFLICT_SEP + (theirs or b"") + CONFLICT_END


def find_split_point(graph: CommitGraph, a: str, b: str) -> str | None:
    """Lowest common ancestor of commits ``a`` and ``b``.

    Ancestor distances follow both parents of merge commits. Among the
    common ancestors the one with the fewest total steps from both tips
    wins; ties go to the one nearer ``a``, then to the smaller id so the
    result never depends on traversal order.
    """
    dist_a = graph.ancestor_distances(a)
    dist_b = graph.ancestor_distances(b)
    common = set(dist_a) & set(dist_b)
    if not common:
        return None
    return min(common, key=lambda c: (dist_a[c] + dist_b[c], dist_a[c], c))


# ── Orchestration ──────────────────────────────────────────────────


class MergeEngine:
    """Merges another branch's tip into the current branch."""

    def __init__(self, graph: CommitGraph, index: StagingIndex, tree: WorkingTree):
        self.graph = graph
        self.index = index
        self.tree = tree
        self.store = graph.store

    def check(self, other_branch: str) -> str:
        """Run the merge preconditions in order. Returns the other tip."""
        if not self.index.is_empty():
            raise UncommittedChangesError()

        other_head = self.graph.get_branch_head(other_branch)
        if other_head is None:
            raise UnknownBranchError(other_branch)

        if other_branch == self.graph.current_branch():
            raise SelfMergeError()

        other = self.graph.lookup(other_head)
        self.tree.check_obstructions(other.files, self.graph.tracked_files())
        return other_head

    def merge(self, other_branch: str) -> MergeResult:
        other_head = self.check(other_branch)
        branch = self.graph.current_branch()
        head = self.graph.head()

        split = find_split_point(self.graph, head, other_head)
        result = MergeResult(
            status=MergeStatus.MERGED,
            branch=branch,
            other_branch=other_branch,
            split_point=split,
        )

        if split == other_head:
            result.status = MergeStatus.UP_TO_DATE
            logger.info("%s is already contained in %s", other_branch, branch)
            return result

        if split == head:
            self._fast_forward(branch, other_head)
            result.status = MergeStatus.FAST_FORWARD
            result.commit_id = other_head
            return result

        with self.store.batch():
            result.conflicts = self._three_way(head, other_head, split)
            commit = self.index.commit(
                f"Merged {other_branch} into {branch}.",
                merge_parent=other_head,
                allow_empty=True,
            )
        result.commit_id = commit.id
        if result.conflicts:
            logger.warning(
                "Merge of %s into %s left %d conflict(s): %s",
                other_branch, branch, len(result.conflicts), ", ".join(result.conflicts),
            )
        else:
            logger.info("Merged %s into %s as %s", other_branch, branch, commit.id[:12])
        return result

    def _fast_forward(self, branch: str, other_head: str):
        target = self.graph.lookup(other_head)
        tracked = self.graph.tracked_files()
        self.tree.apply(target.files, tracked)
        with self.store.batch():
            self.graph.repoint(branch, other_head)
            self.index.clear()
        logger.info("Fast-forwarded %s to %s", branch, other_head[:12])

    def _three_way(self, head: str, other_head: str, split: str | None) -> list[str]:
        """Apply every path's decision to the tree and index. Returns conflicts."""
        ours = self.graph.lookup(head).files
        other = self.graph.lookup(other_head)
        theirs = other.files
        base = self.graph.lookup(split).files if split is not None else {}

        # Plan first, reading every blob and checking every size, so nothing
        # is written if one is missing or too large
        plan = []
        for path in sorted(set(ours) | set(theirs) | set(base)):
            action = classify(base.get(path), ours.get(path), theirs.get(path))
            if action == MergeAction.KEEP:
                continue
            content = None
            if action == MergeAction.TAKE_OTHER:
                content = self.tree.blob_content(theirs[path])
            elif action == MergeAction.CONFLICT:
                content = conflict_content(
                    self.tree.blob_content(ours[path]) if path in ours else None,
                    self.tree.blob_content(theirs[path]) if path in theirs else None,
                )
            if content is not None:
                self.store.check_size(Blob(path=path, content=content).encode())
            plan.append((path, action, content))

        conflicts = []
        with self.store.batch():
            for path, action, content in plan:
                logger.debug("merge %s: %s", path, action.value)
                if action == MergeAction.REMOVE:
                    self.index.remove(path)
                    continue
                self.tree.write_file(path, content)
                self.index.stage(path)
                if action == MergeAction.CONFLICT:
                    conflicts.append(path)
        return conflicts
