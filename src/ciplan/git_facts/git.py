# git.py
# Small, focused wrapper around the Git CLI.
# This module centralizes all Git interactions so the rest of the codebase
# never needs to call subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from typing import List, Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError on a non-zero exit and
    FileNotFoundError when git is not installed; callers decide whether a
    missing fact is fatal.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,   # return output as str instead of bytes
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def _maybe(args: list[str], cwd: Optional[str] = None) -> Optional[str]:
    """Like _git, but None for failures and empty output."""
    try:
        out = _git(args, cwd=cwd)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None
    return out or None



def head_sha(cwd: Optional[str] = None) -> Optional[str]:
    """Full SHA of HEAD, None outside a repository or before the first commit."""
    return _maybe(["rev-parse", "HEAD"], cwd=cwd)


def current_branch(cwd: Optional[str] = None) -> Optional[str]:
    """Checked-out branch name; None on a detached HEAD."""
    name = _maybe(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    if name == "HEAD":
        return None
    return name


def current_tag(cwd: Optional[str] = None) -> Optional[str]:
    """Tag pointing exactly at HEAD, if any."""
    return _maybe(["describe", "--tags", "--exact-match", "HEAD"], cwd=cwd)


def commit_author(cwd: Optional[str] = None) -> Optional[str]:
    """'Name <email>' of the HEAD commit author."""
    return _maybe(["log", "-1", "--format=%an <%ae>"], cwd=cwd)


def commit_message(cwd: Optional[str] = None) -> Optional[str]:
    return _maybe(["log", "-1", "--format=%B"], cwd=cwd)



def merge_base(with_ref: str = "origin/main", cwd: Optional[str] = None) -> str:
    """Common ancestor of HEAD and with_ref."""
    return _git(["merge-base", "HEAD", with_ref], cwd=cwd)


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str] = None) -> List[str]:
    """Files changed between two refs, relative to the repo root."""
    out = _git(["diff", "--name-only", f"{base}..{head}"], cwd=cwd)
    if not out:
        return []
    return out.splitlines()


def changed_since(compare_ref: str, cwd: Optional[str] = None) -> Optional[List[str]]:
    """
    Files changed on this branch relative to compare_ref, plus uncommitted
    work. None when it cannot be determined (no remote, first commit...).
    """
    files = set()
    try:
        base = merge_base(compare_ref, cwd=cwd)
        files.update(changed_files(base, "HEAD", cwd=cwd))
        for args in (["diff", "--name-only"], ["diff", "--name-only", "--cached"],
                     ["ls-files", "--others", "--exclude-standard"]):
            out = _git(args, cwd=cwd)
            if out:
                files.update(out.splitlines())
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None
    return sorted(files)
