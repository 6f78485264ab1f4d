"""WorkingTree tests: paths, obstruction checks and reconciliation."""

import pytest

from conftest import commit_file, write
from twig.errors import FileNotInCommitError, NotFoundError, UntrackedObstructionError


@pytest.fixture
def tree(repo):
    return repo.tree


class TestNormalize:
    @pytest.mark.parametrize("raw,expected", [
        ("a.txt", "a.txt"),
        ("./a.txt", "a.txt"),
        ("sub/dir/a.txt", "sub/dir/a.txt"),
        ("sub//a.txt", "sub/a.txt"),
    ])
    def test_relative(self, tree, raw, expected):
        assert tree.normalize(raw) == expected

    @pytest.mark.parametrize("raw", ["../escape.txt", "sub/../../x", ".twig/store.db", ".", ""])
    def test_rejected(self, tree, raw):
        with pytest.raises(ValueError):
            tree.normalize(raw)


class TestFiles:
    def test_write_creates_parents(self, tree):
        tree.write_file("a/b/c.txt", b"deep")
        assert (tree.root / "a" / "b" / "c.txt").read_bytes() == b"deep"

    def test_write_leaves_no_temp_files(self, tree):
        tree.write_file("a.txt", b"x")
        assert [p.name for p in tree.root.iterdir() if p.name != ".twig"] == ["a.txt"]

    def test_read_missing(self, tree):
        with pytest.raises(NotFoundError):
            tree.read_file("missing.txt")

    def test_delete_cleans_empty_parents(self, tree):
        tree.write_file("a/b/c.txt", b"x")
        assert tree.delete_file("a/b/c.txt")
        assert not (tree.root / "a").exists()
        assert tree.root.exists()

    def test_delete_missing(self, tree):
        assert tree.delete_file("nothing.txt") is False

    def test_list_files_skips_repo_dir(self, repo, tree):
        write(repo, "a.txt", "a")
        write(repo, "sub/b.txt", "b")
        write(repo, "__pycache__/x.pyc", "c")
        assert tree.list_files() == ["a.txt", "sub/b.txt"]


class TestObstructions:
    def test_untracked_in_target_is_obstruction(self, tree):
        (tree.root / "a.txt").write_text("untracked")
        assert tree.find_obstructions({"a.txt": "h"}, {}) == ["a.txt"]

    def test_tracked_file_is_not_obstruction(self, tree):
        (tree.root / "a.txt").write_text("tracked")
        assert tree.find_obstructions({"a.txt": "h"}, {"a.txt": "old"}) == []

    def test_untracked_outside_target_is_fine(self, tree):
        (tree.root / "mine.txt").write_text("untracked")
        assert tree.find_obstructions({"a.txt": "h"}, {}) == []

    def test_directory_in_the_way(self, tree):
        (tree.root / "a.txt").mkdir()
        assert tree.find_obstructions({"a.txt": "h"}, {}) == ["a.txt"]

    def test_check_raises_with_paths(self, tree):
        (tree.root / "b.txt").write_text("x")
        (tree.root / "a.txt").write_text("y")
        with pytest.raises(UntrackedObstructionError) as exc:
            tree.check_obstructions({"a.txt": "h", "b.txt": "h"}, {})
        assert exc.value.paths == ["a.txt", "b.txt"]


class TestApply:
    def test_apply_writes_and_deletes(self, repo, tree):
        commit_file(repo, "old.txt", "old")
        empty = repo.graph.lookup(repo.graph.first_parent_chain(repo.head())[-1][0])
        target = repo.graph.head_commit()

        summary = tree.apply(empty.files, repo.graph.tracked_files())
        assert summary == {"removed": ["old.txt"], "written": []}
        assert not (repo.root / "old.txt").exists()

        summary = tree.apply(target.files, {})
        assert summary == {"removed": [], "written": ["old.txt"]}
        assert (repo.root / "old.txt").read_text() == "old"

    def test_obstruction_leaves_tree_untouched(self, repo, tree):
        commit_file(repo, "tracked.txt", "t")
        target = {"tracked.txt": repo.graph.tracked_files()["tracked.txt"], "clash.txt": "h"}
        (repo.root / "clash.txt").write_text("precious")

        with pytest.raises(UntrackedObstructionError):
            tree.apply(target, {})

        assert (repo.root / "clash.txt").read_text() == "precious"
        assert (repo.root / "tracked.txt").read_text() == "t"

    def test_missing_blob_fails_before_deleting(self, repo, tree):
        commit_file(repo, "a.txt", "a")
        with pytest.raises(NotFoundError):
            tree.apply({"b.txt": "0" * 64}, repo.graph.tracked_files())
        assert (repo.root / "a.txt").exists()

    def test_untracked_files_survive(self, repo, tree):
        commit_file(repo, "a.txt", "a")
        write(repo, "notes.txt", "mine")
        tree.apply({}, repo.graph.tracked_files())
        assert (repo.root / "notes.txt").read_text() == "mine"


class TestRestoreFile:
    def test_restore(self, repo, tree):
        commit_file(repo, "a.txt", "v1")
        write(repo, "a.txt", "scribbled")
        tree.restore_file(repo.graph.head_commit(), "a.txt")
        assert (repo.root / "a.txt").read_text() == "v1"

    def test_not_in_commit(self, repo, tree):
        with pytest.raises(FileNotInCommitError, match="File does not exist in that commit"):
            tree.restore_file(repo.graph.head_commit(), "a.txt")
