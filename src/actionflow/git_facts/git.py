# git.py
# Small wrapper around the Git CLI. Every git call in actionflow goes through
# here: event metadata for `github.*`, changed files for `paths` trigger
# filters, and the checkout action.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout, stripped.

    Raises subprocess.CalledProcessError on a non-zero exit and
    FileNotFoundError when git is not installed; callers decide whether
    that is fatal.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def repo_root(cwd: Optional[str | Path] = None) -> Path:
    """Absolute path of the repository containing cwd."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def is_repo(cwd: Optional[str | Path] = None) -> bool:
    try:
        return _git(["rev-parse", "--is-inside-work-tree"], cwd=cwd) == "true"
    except (subprocess.CalledProcessError, FileNotFoundError):
        return False


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of HEAD."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_ref(cwd: Optional[str | Path] = None) -> str:
    """
    Fully qualified ref of HEAD: `refs/heads/<branch>`, or the bare SHA when
    HEAD is detached.
    """
    try:
        return _git(["symbolic-ref", "-q", "HEAD"], cwd=cwd)
    except subprocess.CalledProcessError:
        return head_sha(cwd=cwd)


def remote_url(remote: str = "origin", cwd: Optional[str | Path] = None) -> str:
    return _git(["remote", "get-url", remote], cwd=cwd)


def is_dirty(cwd: Optional[str | Path] = None) -> bool:
    """True when there are modified, staged or untracked files."""
    return _git(["status", "--porcelain"], cwd=cwd) != ""


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str | Path] = None) -> List[str]:
    """Files changed between two refs, relative to the repo root."""
    out = _git(["diff", "--name-only", f"{base}..{head}"], cwd=cwd)
    if not out:
        return []
    return out.splitlines()


def merge_base(with_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> str:
    """Common ancestor of HEAD and with_ref."""
    return _git(["merge-base", "HEAD", with_ref], cwd=cwd)


def working_changes(compare_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> List[str]:
    """
    Files a `paths:` trigger filter should look at.

    Dirty tree: staged + unstaged + untracked files.
    Clean tree: HEAD against its merge-base with compare_ref, falling back to
    HEAD~1, then to every tracked file (first commit).
    """
    root = repo_root(cwd)

    if is_dirty(root):
        files = set()
        for args in (
            ["diff", "--name-only"],
            ["diff", "--name-only", "--cached"],
            ["ls-files", "--others", "--exclude-standard"],
        ):
            out = _git(args, cwd=root)
            if out:
                files.update(out.splitlines())
        return sorted(files)

    try:
        base = merge_base(compare_ref, cwd=root)
    except subprocess.CalledProcessError:
        # no remote configured, unrelated histories, ...
        base = "HEAD~1"

    try:
        return changed_files(base, "HEAD", cwd=root)
    except subprocess.CalledProcessError:
        tracked = _git(["ls-files"], cwd=root)
        return tracked.splitlines() if tracked else []
