"""
Twig — local version control

A single-user version-control engine: content-addressed snapshots,
branches as movable refs over an immutable commit DAG, a staging index,
and three-way merges with conflict markers.
"""

__version__ = "0.1.0"

__all__ = [
    # Core
    "Repository",
    "NotARepository",
    # Content-addressed store
    "ContentStore",
    "CASObject",
    "ObjectType",
    "ContentStoreLimitError",
    # History
    "Blob",
    "Commit",
    "CommitGraph",
    # Merge
    "MergeResult",
    "MergeStatus",
]


# Lazy imports, resolved on first access
def __getattr__(name):
    if name in ("Repository", "NotARepository"):
        from .repo import NotARepository, Repository

        return Repository if name == "Repository" else NotARepository
    if name in ("ContentStore", "CASObject", "ObjectType", "ContentStoreLimitError"):
        from .cas import CASObject, ContentStore, ContentStoreLimitError, ObjectType

        return {
            "ContentStore": ContentStore,
            "CASObject": CASObject,
            "ObjectType": ObjectType,
            "ContentStoreLimitError": ContentStoreLimitError,
        }[name]
    if name in ("Blob", "Commit", "CommitGraph"):
        from .state import Blob, Commit, CommitGraph

        return {"Blob": Blob, "Commit": Commit, "CommitGraph": CommitGraph}[name]
    if name in ("MergeResult", "MergeStatus"):
        from .merge import MergeResult, MergeStatus

        return MergeResult if name == "MergeResult" else MergeStatus
    raise AttributeError(f"module 'twig' has no attribute {name!r}")
