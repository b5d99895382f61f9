# git.py
# Small, focused wrapper around the Git CLI.
# All Git interactions go through here so the rest of the codebase
# never calls subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional


class GitError(RuntimeError):
    """A git command failed or git is not installed."""


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Args:
        args: List of git arguments (e.g. ["status", "--porcelain"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        GitError: if git exits non-zero or cannot be found.
    """
    try:
        proc = subprocess.run(
            ["git", *args],
            cwd=str(cwd) if cwd is not None else None,
            text=True,
            capture_output=True,
            check=False,
        )
    except FileNotFoundError as e:
        raise GitError("git command not found. Please install Git.") from e

    if proc.returncode != 0:
        raise GitError(f"git {' '.join(args)} failed: {proc.stderr.strip()}")

    return proc.stdout.strip()


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of the current HEAD commit."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_branch(cwd: Optional[str | Path] = None) -> Optional[str]:
    """
    Name of the checked out branch, or None on a detached HEAD.

    This is the default trigger branch for `stepci run`.
    """
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    return None if name == "HEAD" else name


def _checkout_target(ref: Optional[str], dest: Path) -> str:
    """Prefer the fetched remote branch over a stale local one of the same name."""
    if not ref:
        return "origin/HEAD"
    try:
        _git(["rev-parse", "--verify", "--quiet", f"origin/{ref}^{{commit}}"], cwd=dest)
        return f"origin/{ref}"
    except GitError:
        # a tag or a commit sha
        return ref


def clone_at(repo_url: str, ref: Optional[str], dest: Path) -> Path:
    """
    Clone `repo_url` into `dest` (or fetch if it is already a clone) and
    check out `ref` as fetched from the remote, detached.

    Leftovers from an earlier run in the same clone are discarded.

    Returns:
        Path to the checked out repository

    Raises:
        GitError: If any git operation fails
    """
    dest.parent.mkdir(parents=True, exist_ok=True)

    if (dest / ".git").exists():
        _git(["remote", "set-url", "origin", repo_url], cwd=dest)
        _git(["fetch", "--quiet", "--prune", "--tags", "origin"], cwd=dest)
    else:
        _git(["clone", "--quiet", repo_url, str(dest)])

    _git(["checkout", "--quiet", "--force", "--detach", _checkout_target(ref, dest)], cwd=dest)
    _git(["clean", "-ffdx", "--quiet"], cwd=dest)

    return dest
