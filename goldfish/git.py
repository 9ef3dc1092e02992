"""Git integration for Goldfish.

Captures version-control provenance for checkpoints using the git CLI:
- Current branch name
- Short commit SHA
- Changed files (staged, unstaged and untracked)

All functions gracefully handle non-git directories by returning None/empty
values. Every field of ``GitContext`` is independently optional.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 5


@dataclass(frozen=True)
class GitContext:
    """Git state captured when a checkpoint is saved."""

    branch: str | None = None
    commit: str | None = None
    files: tuple[str, ...] | None = None

    def to_dict(self) -> dict:
        """Serialize to dict, omitting absent fields."""
        data: dict = {}
        if self.branch:
            data["branch"] = self.branch
        if self.commit:
            data["commit"] = self.commit
        if self.files:
            data["files"] = list(self.files)
        return data


# =============================================================================
# Git CLI Helpers
# =============================================================================


def _run_git(args: list[str], cwd: Path | None = None) -> str | None:
    """Run a git command and return stdout, or None on failure.

    Args:
        args: Git command arguments (without 'git' prefix)
        cwd: Working directory (defaults to current)

    Returns:
        Stdout string on success, None on failure
    """
    try:
        # Security: shell=False (default), args are internal constants
        result = subprocess.run(
            ["git", *args],  # noqa: S603, S607
            capture_output=True,
            text=True,
            timeout=GIT_TIMEOUT_SECONDS,
            cwd=cwd,
        )
        if result.returncode == 0:
            return result.stdout.strip()
        return None
    except (subprocess.TimeoutExpired, FileNotFoundError, OSError) as e:
        logger.debug(f"Git command failed: {e}")
        return None


def _split_lines(output: str | None) -> list[str]:
    if not output:
        return []
    return [line.strip() for line in output.split("\n") if line.strip()]


def is_git_repo(path: Path | None = None) -> bool:
    """Check if path is inside a git repository."""
    return _run_git(["rev-parse", "--git-dir"], cwd=path) is not None


def get_branch(path: Path | None = None) -> str | None:
    """Get current branch name ("HEAD" when detached), or None."""
    return _run_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=path) or None


def get_commit(path: Path | None = None) -> str | None:
    """Get the short SHA of HEAD, or None (e.g. no commits yet)."""
    return _run_git(["rev-parse", "--short", "HEAD"], cwd=path) or None


def get_changed_files(path: Path | None = None) -> tuple[str, ...] | None:
    """Union of staged, unstaged and untracked paths, sorted and deduplicated.

    Paths are relative to the repository root. Returns None when git could
    not report anything (not a repository).
    """
    staged = _run_git(["diff", "--name-only", "--cached"], cwd=path)
    unstaged = _run_git(["diff", "--name-only"], cwd=path)
    untracked = _run_git(["ls-files", "--others", "--exclude-standard", "--full-name"], cwd=path)

    if staged is None and unstaged is None and untracked is None:
        return None

    files = set(_split_lines(staged)) | set(_split_lines(unstaged)) | set(_split_lines(untracked))
    return tuple(sorted(files))


# =============================================================================
# High-Level Functions
# =============================================================================


def capture_git_context(path: Path | None = None) -> GitContext:
    """Capture branch, commit and changed files for the given directory.

    Returns an empty GitContext outside a git repository.
    """
    if not is_git_repo(path):
        return GitContext()

    files = get_changed_files(path)
    return GitContext(
        branch=get_branch(path),
        commit=get_commit(path),
        files=files or None,
    )
