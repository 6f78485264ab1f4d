"""
Twig CLI

Thin command layer over Repository. Every command prints structured
JSON when --json is passed; human-readable output is the default.

File arguments are relative to the current directory (or to -C PATH)
and may point anywhere inside the working tree.

Usage:
    twig init
    twig add FILE
    twig commit MESSAGE
    twig rm FILE
    twig checkout BRANCH
    twig checkout -- FILE
    twig checkout COMMIT -- FILE
    twig branch NAME
    twig rm-branch NAME
    twig reset COMMIT
    twig merge BRANCH
    twig log
    twig global-log
    twig find MESSAGE
    twig show COMMIT
    twig status
    twig add-remote NAME PATH
    twig rm-remote NAME
"""

import argparse
import json
import logging
import os
import sys
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

import twig as _twig_pkg

from .merge import MergeStatus
from .repo import NotARepository, Repository


class UsageError(ValueError):
    """Wrong number or shape of command operands."""

    def __init__(self, detail: str = ""):
        super().__init__("Incorrect operands." + (f" {detail}" if detail else ""))


@contextmanager
def open_repo(args):
    """Open a Repository with guaranteed cleanup on any exit path."""
    repo = Repository.find(Path(args.path or "."))
    try:
        yield repo
    finally:
        repo.close()


def format_time(ts: float) -> str:
    dt = datetime.fromtimestamp(ts).astimezone()
    return f"{dt:%a %b} {dt.day} {dt:%H:%M:%S %Y %z}"


def short_hash(h: str | None) -> str:
    return h[:7] if h else "none"


def print_json(data):
    print(json.dumps(data, indent=2, default=str))


def get_verbosity(args) -> int:
    """Return verbosity level: 0=quiet, 1=normal, 2=verbose."""
    if getattr(args, 'json', False):
        return 1
    if getattr(args, 'verbose', False):
        return 2
    if getattr(args, 'quiet', False):
        return 0
    return 1


def _display_hash(h: str | None, verbosity: int) -> str:
    """Return full or short hash based on verbosity."""
    if not h:
        return "none"
    if verbosity >= 2:
        return h
    return h[:12]


def repo_path(args, path: str) -> str:
    """Absolute form of a file operand, resolved against -C."""
    return os.path.abspath(os.path.join(args.path or ".", path))


def format_log_entry(entry: dict) -> str:
    lines = ["===", f"commit {entry['id']}"]
    if entry.get("merge_parent"):
        lines.append(f"Merge: {short_hash(entry['parent'])} {short_hash(entry['merge_parent'])}")
    lines.append(f"Date: {format_time(entry['timestamp'])}")
    lines.append(entry["message"])
    return "\n".join(lines)


# ── Commands ──────────────────────────────────────────────────

def cmd_init(args):
    v = get_verbosity(args)
    path = Path(args.path or ".").resolve()
    with Repository.init(path) as repo:
        head = repo.head()
        if args.json:
            print_json({
                "root": str(path),
                "head": head,
                "branch": repo.current_branch(),
            })
        elif v == 0:
            print(head)
        else:
            print(f"Initialized Twig repository at {path}")
            print(f"  Branch: {repo.current_branch()}")
            print(f"  Root commit: {_display_hash(head, v)}")


def cmd_add(args):
    with open_repo(args) as repo:
        blob_hash = repo.add(repo_path(args, args.file))
        if args.json:
            print_json({"file": args.file, "blob": blob_hash, "staged": blob_hash is not None})
        elif get_verbosity(args) >= 2:
            state = f"staged as {blob_hash}" if blob_hash else "unchanged from HEAD"
            print(f"{args.file}: {state}")


def cmd_commit(args):
    v = get_verbosity(args)
    with open_repo(args) as repo:
        commit = repo.commit(args.message)
        if args.json:
            print_json({"id": commit.id, "message": commit.message, "branch": commit.branch})
        elif v == 0:
            print(commit.id)
        else:
            print(f"[{commit.branch} {_display_hash(commit.id, v)}] {commit.message}")


def cmd_rm(args):
    with open_repo(args) as repo:
        repo.rm(repo_path(args, args.file))
        if args.json:
            print_json({"file": args.file, "removed": True})


def cmd_checkout(args):
    files = args.files
    with open_repo(args) as repo:
        if files is None:
            if not args.target:
                raise UsageError("Expected a branch name.")
            result = repo.checkout_branch(args.target)
            if args.json:
                print_json(result)
            elif get_verbosity(args) >= 1:
                print(f"Switched to branch '{args.target}'")
            return

        if len(files) != 1:
            raise UsageError("Expected exactly one file after '--'.")
        repo.checkout_file(repo_path(args, files[0]), args.target)
        if args.json:
            print_json({"file": files[0], "commit": args.target or repo.head()})


def cmd_branch(args):
    v = get_verbosity(args)
    with open_repo(args) as repo:
        head = repo.branch(args.name)
        if args.json:
            print_json({"branch": args.name, "head": head})
        elif v >= 2:
            print(f"Created branch {args.name} at {head}")


def cmd_rm_branch(args):
    with open_repo(args) as repo:
        repo.rm_branch(args.name)
        if args.json:
            print_json({"branch": args.name, "removed": True})


def cmd_reset(args):
    v = get_verbosity(args)
    with open_repo(args) as repo:
        result = repo.reset(args.commit)
        if args.json:
            print_json(result)
        elif v >= 1:
            print(f"HEAD is now at {_display_hash(result['head'], v)}")


def cmd_merge(args):
    v = get_verbosity(args)
    with open_repo(args) as repo:
        result = repo.merge(args.branch)
        if args.json:
            print_json(result.to_dict())
            return
        if result.status == MergeStatus.UP_TO_DATE:
            print("Given branch is an ancestor of the current branch.")
        elif result.status == MergeStatus.FAST_FORWARD:
            print("Current branch fast-forwarded.")
        else:
            if result.has_conflicts:
                print("Encountered a merge conflict.")
                if v >= 2:
                    for path in result.conflicts:
                        print(f"  conflict: {path}")
            elif v >= 2:
                print(f"Merged {args.branch} as {result.commit_id}")


def cmd_log(args):
    with open_repo(args) as repo:
        entries = repo.log()
        if args.json:
            print_json(entries)
        else:
            print("\n\n".join(format_log_entry(e) for e in entries))


def cmd_global_log(args):
    with open_repo(args) as repo:
        entries = repo.global_log()
        if args.json:
            print_json(entries)
        else:
            print("\n\n".join(format_log_entry(e) for e in entries))


def cmd_find(args):
    with open_repo(args) as repo:
        ids = repo.find_commits(args.message)
        if args.json:
            print_json(ids)
        else:
            print("\n".join(ids))


def cmd_show(args):
    with open_repo(args) as repo:
        entry = repo.show(args.commit)
        if args.json:
            print_json(entry)
            return
        print(format_log_entry(entry))
        for path, blob_hash in sorted(entry["files"].items()):
            print(f"  {short_hash(blob_hash)}  {path}")


def cmd_status(args):
    v = get_verbosity(args)
    with open_repo(args) as repo:
        status = repo.status()

        if args.json:
            print_json(status)
            return
        if v == 0:
            print(status["current_branch"])
            return

        print("=== Branches ===")
        for name in status["branches"]:
            marker = "*" if name == status["current_branch"] else ""
            print(f"{marker}{name}")
        sections = [
            ("Staged Files", status["staged"]),
            ("Removed Files", status["removed"]),
            ("Modifications Not Staged For Commit", status["modified"]),
            ("Untracked Files", status["untracked"]),
        ]
        for title, items in sections:
            print(f"\n=== {title} ===")
            for item in items:
                print(item)
        if v >= 2:
            print(f"\nHEAD: {status['head']}")


def cmd_add_remote(args):
    with open_repo(args) as repo:
        repo.add_remote(args.name, args.remote_path)
        if args.json:
            print_json(repo.remotes())


def cmd_rm_remote(args):
    with open_repo(args) as repo:
        repo.remove_remote(args.name)
        if args.json:
            print_json(repo.remotes())


# ── Parser ────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="twig",
        description="Twig — local version control",
    )
    parser.add_argument("--version", action="version", version=f"twig {_twig_pkg.__version__}")
    parser.add_argument("--path", "-C", default=".", help="Repository path")
    parser.add_argument("--json", "-j", action="store_true", help="JSON output")

    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    verbosity.add_argument("--quiet", "-q", action="store_true", help="Quiet output")

    sub = parser.add_subparsers(dest="command", help="Available commands")

    p = sub.add_parser("init", help="Initialize a new repository")
    p.set_defaults(func=cmd_init)

    p = sub.add_parser("add", help="Stage a file")
    p.add_argument("file")
    p.set_defaults(func=cmd_add)

    p = sub.add_parser("commit", help="Commit staged changes")
    p.add_argument("message")
    p.set_defaults(func=cmd_commit)

    p = sub.add_parser("rm", help="Unstage a file or stage it for removal")
    p.add_argument("file")
    p.set_defaults(func=cmd_rm)

    p = sub.add_parser(
        "checkout",
        help="Switch branches, or restore a file with 'checkout [COMMIT] -- FILE'",
    )
    p.add_argument("target", nargs="?", default=None, help="Branch name, or commit id before '--'")
    p.set_defaults(func=cmd_checkout)

    p = sub.add_parser("branch", help="Create a branch at HEAD")
    p.add_argument("name")
    p.set_defaults(func=cmd_branch)

    p = sub.add_parser("rm-branch", help="Delete a branch")
    p.add_argument("name")
    p.set_defaults(func=cmd_rm_branch)

    p = sub.add_parser("reset", help="Move the current branch to a commit")
    p.add_argument("commit")
    p.set_defaults(func=cmd_reset)

    p = sub.add_parser("merge", help="Merge a branch into the current branch")
    p.add_argument("branch")
    p.set_defaults(func=cmd_merge)

    p = sub.add_parser("log", help="Show history of the current branch")
    p.set_defaults(func=cmd_log)

    p = sub.add_parser("global-log", help="Show every commit")
    p.set_defaults(func=cmd_global_log)

    p = sub.add_parser("find", help="Find commits by exact message")
    p.add_argument("message")
    p.set_defaults(func=cmd_find)

    p = sub.add_parser("show", help="Show one commit and the files it tracks")
    p.add_argument("commit")
    p.set_defaults(func=cmd_show)

    p = sub.add_parser("status", help="Show branches and file states")
    p.set_defaults(func=cmd_status)

    p = sub.add_parser("add-remote", help="Record a named remote")
    p.add_argument("name")
    p.add_argument("remote_path")
    p.set_defaults(func=cmd_add_remote)

    p = sub.add_parser("rm-remote", help="Forget a named remote")
    p.add_argument("name")
    p.set_defaults(func=cmd_rm_remote)

    return parser


def _split_files(argv: list[str]) -> tuple[list[str], list[str] | None]:
    """Split off everything after the first '--' (checkout's file operands)."""
    if "--" not in argv:
        return argv, None
    idx = argv.index("--")
    return argv[:idx], argv[idx + 1:]


def main(argv: list[str] | None = None):
    parser = build_parser()
    argv, files = _split_files(list(sys.argv[1:] if argv is None else argv))
    args = parser.parse_args(argv)
    args.files = files

    logging.basicConfig(
        level=logging.DEBUG if getattr(args, "verbose", False) else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        if files is not None and args.command != "checkout":
            raise UsageError()
        args.func(args)
    except (NotARepository, ValueError, OSError) as e:
        if getattr(args, "json", False):
            print_json({"error": str(e), "type": type(e).__name__})
        else:
            print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
