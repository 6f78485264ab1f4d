"""Merge engine tests: classification, split points and full merges."""

import json

import pytest

from conftest import commit_file, read, write
from twig.cas import ContentStoreLimitError
from twig.errors import (
    SelfMergeError,
    UncommittedChangesError,
    UnknownBranchError,
    UntrackedObstructionError,
)
from twig.merge import MergeAction, MergeStatus, classify, conflict_content, find_split_point
from twig.repo import Repository
from twig.state import Blob


class TestClassify:
    @pytest.mark.parametrize("split,ours,theirs,expected", [
        ("s", "s", "s", MergeAction.KEEP),
        ("s", "s", "t", MergeAction.TAKE_OTHER),
        ("s", "s", None, MergeAction.REMOVE),
        ("s", "o", "s", MergeAction.KEEP),
        ("s", None, "s", MergeAction.KEEP),
        ("s", "x", "x", MergeAction.KEEP),
        ("s", None, None, MergeAction.KEEP),
        ("s", "o", "t", MergeAction.CONFLICT),
        ("s", None, "t", MergeAction.CONFLICT),
        ("s", "o", None, MergeAction.CONFLICT),
        (None, None, "t", MergeAction.TAKE_OTHER),
        (None, "o", None, MergeAction.KEEP),
        (None, "o", "t", MergeAction.CONFLICT),
        (None, "x", "x", MergeAction.KEEP),
    ])
    def test_table(self, split, ours, theirs, expected):
        assert classify(split, ours, theirs) == expected


class TestConflictContent:
    def test_both_sides(self):
        assert conflict_content(b"mine\n", b"theirs\n") == (
            b"<<<<<<< HEAD\nmine\n=======\ntheirs\n>>>>>>>\n"
        )

    def test_absent_side_is_empty(self):
        assert conflict_content(None, b"theirs\n") == b"<<<<<<< HEAD\n=======\ntheirs\n>>>>>>>\n"
        assert conflict_content(b"mine\n", None) == b"<<<<<<< HEAD\nmine\n=======\n>>>>>>>\n"


@pytest.fixture
def forked(repo):
    """master and other both start from a commit tracking f, g and h."""
    write(repo, "f.txt", "f\n")
    write(repo, "g.txt", "g\n")
    write(repo, "h.txt", "h\n")
    for name in ("f.txt", "g.txt", "h.txt"):
        repo.add(name)
    repo.commit("base")
    repo.branch("other")
    return repo


class TestSplitPoint:
    def test_linear(self, forked):
        repo = forked
        base = repo.head()
        tip = commit_file(repo, "f.txt", "more\n")
        assert find_split_point(repo.graph, tip, base) == base

    def test_diverged(self, forked):
        repo = forked
        base = repo.head()
        mine = commit_file(repo, "f.txt", "master\n")
        repo.checkout_branch("other")
        theirs = commit_file(repo, "h.txt", "other\n")
        assert find_split_point(repo.graph, mine, theirs) == base

    def test_follows_merge_parent(self, forked):
        repo = forked
        commit_file(repo, "f.txt", "2\n")
        repo.checkout_branch("other")
        first_other = commit_file(repo, "k.txt", "k1\n")
        repo.checkout_branch("master")
        merged = repo.merge("other")
        repo.checkout_branch("other")
        second_other = commit_file(repo, "k.txt", "k2\n")

        assert find_split_point(repo.graph, merged.commit_id, second_other) == first_other


class TestPreconditions:
    def test_uncommitted_changes(self, forked):
        write(forked, "f.txt", "dirty\n")
        forked.add("f.txt")
        with pytest.raises(UncommittedChangesError, match="You have uncommitted changes"):
            forked.merge("other")

    def test_uncommitted_checked_before_branch(self, forked):
        write(forked, "f.txt", "dirty\n")
        forked.add("f.txt")
        with pytest.raises(UncommittedChangesError):
            forked.merge("nope")

    def test_unknown_branch(self, forked):
        with pytest.raises(UnknownBranchError, match="A branch with that name does not exist"):
            forked.merge("nope")

    def test_self_merge(self, forked):
        with pytest.raises(SelfMergeError, match="Cannot merge a branch with itself"):
            forked.merge("master")

    def test_untracked_obstruction(self, forked):
        repo = forked
        commit_file(repo, "f.txt", "master\n")
        repo.checkout_branch("other")
        commit_file(repo, "new.txt", "theirs\n")
        repo.checkout_branch("master")
        write(repo, "new.txt", "precious\n")
        head = repo.head()

        with pytest.raises(UntrackedObstructionError) as exc:
            repo.merge("other")

        assert exc.value.paths == ["new.txt"]
        assert read(repo, "new.txt") == "precious\n"
        assert read(repo, "f.txt") == "master\n"
        assert repo.head() == head
        assert repo.index.is_empty()


class TestUpToDateAndFastForward:
    def test_given_branch_is_ancestor(self, forked):
        repo = forked
        head = commit_file(repo, "f.txt", "ahead\n")
        commits_before = len(repo.global_log())

        result = repo.merge("other")

        assert result.status == MergeStatus.UP_TO_DATE
        assert result.commit_id is None
        assert repo.head() == head
        assert len(repo.global_log()) == commits_before

    def test_fast_forward(self, forked):
        repo = forked
        repo.checkout_branch("other")
        tip = commit_file(repo, "new.txt", "from other\n")
        repo.checkout_branch("master")
        assert not (repo.root / "new.txt").exists()
        commits_before = len(repo.global_log())

        result = repo.merge("other")

        assert result.status == MergeStatus.FAST_FORWARD
        assert result.commit_id == tip
        assert repo.head() == tip
        assert repo.graph.get_branch_head("master") == tip
        assert repo.current_branch() == "master"
        assert read(repo, "new.txt") == "from other\n"
        assert "new.txt" in repo.graph.tracked_files()
        assert len(repo.global_log()) == commits_before


class TestThreeWayMerge:
    def test_takes_other_side_changes(self, forked):
        repo = forked
        commit_file(repo, "x.txt", "master only\n")
        repo.checkout_branch("other")
        write(repo, "h.txt", "h changed\n")
        write(repo, "k.txt", "k added\n")
        repo.add("h.txt")
        repo.add("k.txt")
        repo.rm("g.txt")
        other_tip = repo.commit("other work").id
        repo.checkout_branch("master")
        master_tip = repo.head()

        result = repo.merge("other")

        assert result.status == MergeStatus.MERGED
        assert not result.has_conflicts
        merge = repo.graph.lookup(result.commit_id)
        assert merge.parent == master_tip
        assert merge.merge_parent == other_tip
        assert merge.message == "Merged other into master."
        assert merge.branch == "master"
        assert set(merge.files) == {"f.txt", "h.txt", "k.txt", "x.txt"}
        assert read(repo, "h.txt") == "h changed\n"
        assert read(repo, "k.txt") == "k added\n"
        assert read(repo, "x.txt") == "master only\n"
        assert not (repo.root / "g.txt").exists()
        assert repo.index.is_empty()
        assert repo.head() == result.commit_id

    def test_conflict_mine_theirs(self, forked):
        repo = forked
        commit_file(repo, "f.txt", "mine\n")
        repo.checkout_branch("other")
        commit_file(repo, "f.txt", "theirs\n")
        repo.checkout_branch("master")

        result = repo.merge("other")

        expected = "<<<<<<< HEAD\nmine\n=======\ntheirs\n>>>>>>>\n"
        assert result.status == MergeStatus.MERGED
        assert result.conflicts == ["f.txt"]
        assert read(repo, "f.txt") == expected
        merge = repo.graph.lookup(result.commit_id)
        assert merge.files["f.txt"] == Blob("f.txt", expected.encode()).id
        assert merge.is_merge

    def test_conflict_delete_vs_modify(self, forked):
        repo = forked
        repo.rm("f.txt")
        repo.commit("drop f")
        repo.checkout_branch("other")
        commit_file(repo, "f.txt", "theirs\n")
        repo.checkout_branch("master")

        result = repo.merge("other")

        assert result.conflicts == ["f.txt"]
        assert read(repo, "f.txt") == "<<<<<<< HEAD\n=======\ntheirs\n>>>>>>>\n"

    def test_same_change_both_sides(self, forked):
        repo = forked
        commit_file(repo, "f.txt", "same\n")
        commit_file(repo, "g.txt", "master g\n")
        repo.checkout_branch("other")
        commit_file(repo, "f.txt", "same\n")
        repo.checkout_branch("master")

        result = repo.merge("other")

        assert not result.has_conflicts
        assert read(repo, "f.txt") == "same\n"
        assert read(repo, "g.txt") == "master g\n"
        # Nothing to stage, but the merge commit still records both parents
        assert repo.graph.lookup(result.commit_id).merge_parent == repo.graph.get_branch_head("other")

    def test_repeated_merge_uses_latest_split(self, forked):
        repo = forked
        commit_file(repo, "f.txt", "2\n")
        repo.checkout_branch("other")
        commit_file(repo, "k.txt", "k1\n")
        repo.checkout_branch("master")
        repo.merge("other")
        repo.checkout_branch("other")
        commit_file(repo, "k.txt", "k2\n")
        repo.checkout_branch("master")

        result = repo.merge("other")

        assert not result.has_conflicts
        assert read(repo, "k.txt") == "k2\n"
        assert read(repo, "f.txt") == "2\n"

    def test_merge_result_dict(self, forked):
        repo = forked
        commit_file(repo, "f.txt", "mine\n")
        repo.checkout_branch("other")
        commit_file(repo, "f.txt", "theirs\n")
        repo.checkout_branch("master")

        data = repo.merge("other").to_dict()
        assert data["status"] == "merged"
        assert data["branch"] == "master"
        assert data["other_branch"] == "other"
        assert data["conflicts"] == ["f.txt"]


class TestMergeAtomicity:
    def test_oversized_merge_leaves_tree_untouched(self, tmp_path):
        root = tmp_path / "project"
        Repository.init(root).close()
        config_path = root / ".twig" / "config.json"
        config = json.loads(config_path.read_text())
        config["max_blob_size"] = 40
        config_path.write_text(json.dumps(config))

        with Repository(root) as repo:
            write(repo, "a.txt", "a\n")
            write(repo, "z.txt", "z\n")
            repo.add("a.txt")
            repo.add("z.txt")
            repo.commit("base")
            repo.branch("other")
            commit_file(repo, "z.txt", "mine, kept short\n")
            repo.checkout_branch("other")
            write(repo, "a.txt", "theirs-a\n")
            write(repo, "z.txt", "theirs, also short\n")
            repo.add("a.txt")
            repo.add("z.txt")
            repo.commit("other work")
            repo.checkout_branch("master")
            head = repo.head()

            # The conflict block for z.txt is over the limit; a.txt sorts first
            with pytest.raises(ContentStoreLimitError):
                repo.merge("other")

            assert read(repo, "a.txt") == "a\n"
            assert read(repo, "z.txt") == "mine, kept short\n"
            assert repo.head() == head
            assert repo.index.is_empty()
