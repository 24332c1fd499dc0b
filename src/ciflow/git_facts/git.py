# git.py
# Thin wrapper around the Git CLI.
# Everything ciflow needs to know about the local checkout (which ref is
# checked out, which files changed) is answered here, so trigger events can
# be built from a working copy without any other module calling git.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional, Set


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Args:
        args: List of git arguments (e.g. ["status", "--porcelain"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError: git exited non-zero.
        FileNotFoundError: git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def _lines(out: str) -> List[str]:
    return out.splitlines() if out else []


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of HEAD; exposed to workflows as `github.sha`."""
    return _git(["rev-parse", "HEAD"], cwd)


def current_ref(cwd: Optional[str | Path] = None) -> str:
    """
    The checked-out ref in the form trigger filters expect:
    `refs/heads/<branch>`, or the bare SHA on a detached HEAD.
    """
    branch = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd)
    if branch == "HEAD":
        return head_sha(cwd)
    return f"refs/heads/{branch}"


def is_dirty(cwd: Optional[str | Path] = None) -> bool:
    """True if there are modified, staged or untracked files."""
    return _git(["status", "--porcelain"], cwd) != ""


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str | Path] = None) -> List[str]:
    """
    Files changed between two refs, relative to the repo root.

    Typical usage:
        base = merge_base("origin/main")
        files = changed_files(base)
    """
    return _lines(_git(["diff", "--name-only", f"{base}..{head}"], cwd))


def merge_base(with_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> str:
    """Common ancestor of HEAD and `with_ref`."""
    return _git(["merge-base", "HEAD", with_ref], cwd)


def working_tree_changes(cwd: Optional[str | Path] = None) -> List[str]:
    """Unstaged, staged and untracked files."""
    files: Set[str] = set()
    files.update(_lines(_git(["diff", "--name-only"], cwd)))
    files.update(_lines(_git(["diff", "--name-only", "--cached"], cwd)))
    files.update(_lines(_git(["ls-files", "--others", "--exclude-standard"], cwd)))
    return sorted(files)


def changed_paths(compare_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> List[str]:
    """
    The changed-path set for a local trigger event:
      - the merge-base diff against `compare_ref` (HEAD~1 if there is no
        such ref, every tracked file on a first commit)
      - plus uncommitted work when the tree is dirty
    """
    try:
        base = merge_base(compare_ref, cwd)
    except subprocess.CalledProcessError:
        base = "HEAD~1"

    try:
        files = set(changed_files(base, "HEAD", cwd))
    except subprocess.CalledProcessError:
        files = set(_lines(_git(["ls-files"], cwd)))

    if is_dirty(cwd):
        files.update(working_tree_changes(cwd))
    return sorted(files)
