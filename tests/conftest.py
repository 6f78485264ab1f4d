"""
Shared pytest configuration and fixtures.

On Windows CI runners, a spurious KeyboardInterrupt is delivered to the
main thread during long-running tests. All tests actually pass, but
pytest sees the KeyboardInterrupt and exits with code 1, so SIGINT is
ignored there.
"""

import os
import signal

import pytest

from twig.repo import Repository

_WINDOWS_CI = os.name == "nt" and os.environ.get("CI") == "true"


def pytest_configure(config):
    """Ignore SIGINT on Windows CI to prevent spurious KeyboardInterrupt."""
    if _WINDOWS_CI:
        try:
            signal.signal(signal.SIGINT, signal.SIG_IGN)
        except (OSError, ValueError):
            pass


@pytest.fixture
def repo(tmp_path):
    """Empty initialized repository on master."""
    r = Repository.init(tmp_path / "project")
    yield r
    r.close()


def write(repo, path, content):
    """Write a working file (str or bytes) and return its absolute path."""
    fp = repo.root / path
    fp.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, str):
        content = content.encode()
    fp.write_bytes(content)
    return fp


def read(repo, path) -> str:
    return (repo.root / path).read_text()


def commit_file(repo, path, content, message=None):
    """Write, stage and commit one file. Returns the new commit id."""
    write(repo, path, content)
    repo.add(path)
    return repo.commit(message or f"update {path}").id
