# git.py
# Small, focused wrapper around the Git CLI.
# This module centralizes all Git interactions so the rest of the codebase
# never needs to call subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Args:
        args: List of git arguments (e.g. ["rev-parse", "HEAD"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def repo_root(cwd: Optional[str] = None) -> Path:
    """
    Return the absolute path to the root of the current Git repository.

    Raises subprocess.CalledProcessError outside a repository and
    FileNotFoundError when git is not installed.
    """
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: Optional[str] = None) -> str:
    """Full SHA of HEAD; exported to steps as LEVELCI_COMMIT."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def source_root(cwd: Optional[str] = None) -> Path:
    """The repository the workflow was invoked from; the current dir outside git."""
    try:
        return repo_root(cwd)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return Path(cwd or ".").resolve()


def commit_or_none(cwd: Optional[str] = None) -> Optional[str]:
    try:
        return head_sha(cwd)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None
