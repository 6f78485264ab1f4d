"""
Errors

Every precondition failure the engine can report. All of them are
ValueErrors so callers that only care about "bad request" can catch one
type, and none of them are retried: the user has to fix the situation
(commit first, pick another name, move the file out of the way).

Merge conflicts are not errors. They are recorded in file
content and reported on the MergeResult, not raised.
"""


class TwigError(ValueError):
    """Base class for engine errors."""


class NotFoundError(TwigError):
    """An id, prefix, file or name could not be resolved."""


class NoOpError(TwigError):
    """The requested change would not do anything."""


class EmptyCommitError(TwigError):
    """Commit attempted with nothing staged."""

    def __init__(self):
        super().__init__("No changes added to the commit.")


class EmptyMessageError(TwigError):
    """Commit attempted without a message."""

    def __init__(self):
        super().__init__("Please enter a commit message.")


class UncommittedChangesError(TwigError):
    """Merge attempted while the staging index is dirty."""

    def __init__(self):
        super().__init__("You have uncommitted changes.")


class UnknownBranchError(NotFoundError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"A branch with that name does not exist: {name!r}")


class BranchExistsError(TwigError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"A branch with that name already exists: {name!r}")


class CurrentBranchError(TwigError):
    """The operation is not allowed on the checked-out branch."""


class SelfMergeError(TwigError):
    def __init__(self):
        super().__init__("Cannot merge a branch with itself.")


class UntrackedObstructionError(TwigError):
    """
    A destructive working-tree operation would overwrite untracked files.

    Raised before anything on disk is touched.
    """

    def __init__(self, paths: list[str]):
        self.paths = sorted(paths)
        super().__init__(
            "There is an untracked file in the way; delete it or add it first: "
            + ", ".join(self.paths)
        )


class FileNotInCommitError(NotFoundError):
    def __init__(self, path: str, commit_id: str):
        self.path = path
        self.commit_id = commit_id
        super().__init__(f"File does not exist in that commit: {path}")


class RemoteError(TwigError):
    """Adding or removing a named remote failed."""
