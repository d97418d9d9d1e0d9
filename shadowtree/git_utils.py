"""Git utility functions for shadowtree.

This module provides the git operations the shadow repository needs.
All functions call git directly through the async command runner.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

from shadowtree.commands import CommandError, CommandResult, run_command

# Max diff size kept in memory for a single sync-complete event
MAX_DIFF_SIZE = 10 * 1024 * 1024


class DiffStats(BaseModel):
    """Line and file counts parsed from a unified diff."""

    additions: int = 0
    deletions: int = 0
    files: int = 0


class StatusCounts(BaseModel):
    """Porcelain status lines grouped by change kind."""

    modified: int = 0
    added: int = 0
    deleted: int = 0

    def summary(self) -> str:
        return f"Modified: {self.modified}, Added: {self.added}, Deleted: {self.deleted}"


async def git(
    args: list[str],
    cwd: Path,
    check: bool = True,
    timeout: Optional[float] = 120,
) -> CommandResult:
    """Run a git command in `cwd`.

    Raises:
        CommandError: If check is set and git exits non-zero
    """
    return await run_command(["git", *args], cwd=cwd, timeout=timeout, check=check)


async def get_current_branch(repo: Path) -> str:
    """Get the checked-out branch name ("" when detached or unborn)."""
    result = await git(["branch", "--show-current"], repo, check=False)
    return result.stdout.strip() if result.ok else ""


async def get_head_ref(repo: Path) -> str:
    """Get `rev-parse --abbrev-ref HEAD` (the branch name, or "HEAD" when detached)."""
    result = await git(["rev-parse", "--abbrev-ref", "HEAD"], repo)
    return result.stdout.strip()


async def get_remote_url(repo: Path, remote: str = "origin") -> Optional[str]:
    """Get a remote's URL, or None if it isn't configured."""
    result = await git(["remote", "get-url", remote], repo, check=False)
    url = result.stdout.strip()
    return url if result.ok and url else None


async def has_remote(repo: Path, remote: str = "origin") -> bool:
    result = await git(["remote"], repo, check=False)
    return remote in result.stdout.split()


async def has_head(repo: Path) -> bool:
    """Check whether the repository has at least one commit."""
    result = await git(["rev-parse", "HEAD"], repo, check=False)
    return result.ok


async def get_status_porcelain(repo: Path) -> str:
    result = await git(["status", "--porcelain"], repo)
    return result.stdout


def is_local_remote(url: str) -> bool:
    """Check if a remote URL points at the local filesystem."""
    return url.startswith("/") or url.startswith("file://")


def count_status(status_output: str) -> StatusCounts:
    """Group `git status --porcelain` lines into modified/added/deleted counts.

    Args:
        status_output: Raw porcelain output

    Returns:
        StatusCounts (lines of other kinds, like renames, are not counted)
    """
    counts = StatusCounts()
    for line in status_output.splitlines():
        if not line.strip():
            continue
        code = line[:2]
        if code in (" M", "M ", "MM"):
            counts.modified += 1
        elif code in ("??", "A ", "AM"):
            counts.added += 1
        elif code in (" D", "D "):
            counts.deleted += 1
    return counts


def untracked_files(status_output: str) -> list[str]:
    """Paths of untracked (`??`) entries in porcelain output."""
    return [line[3:] for line in status_output.splitlines() if line.startswith("??")]


def calculate_diff_stats(diff_output: str) -> DiffStats:
    """Count added/removed lines and distinct files in a unified diff.

    `+++`/`---` file headers are not counted as changed lines; files are
    counted from `diff --git a/<path> b/...` headers.
    """
    if not diff_output:
        return DiffStats()

    additions = 0
    deletions = 0
    files: set[str] = set()

    for line in diff_output.split("\n"):
        if line.startswith("+") and not line.startswith("+++"):
            additions += 1
        elif line.startswith("-") and not line.startswith("---"):
            deletions += 1
        elif line.startswith("diff --git"):
            match = re.match(r"diff --git a/(.*?) b/", line)
            if match:
                files.add(match.group(1))

    return DiffStats(additions=additions, deletions=deletions, files=len(files))


async def get_diff(repo: Path) -> str:
    """Get the working-tree diff against HEAD.

    Falls back to a plain `git diff` when there is no HEAD to compare with,
    and to a placeholder message when neither works.
    """
    for args in (["diff", "HEAD"], ["diff"]):
        try:
            result = await git(args, repo)
        except CommandError:
            continue
        return result.stdout[:MAX_DIFF_SIZE]
    return "Could not generate diff"


def remote_to_web_url(remote_url: str) -> str:
    """Convert a git remote URL into a browsable https URL.

    Handles:
    - git@github.com:owner/repo.git
    - https://github.com/owner/repo.git

    Returns:
        The web URL, or "" for anything else (local paths, other SSH hosts)
    """
    url = remote_url.strip()
    if url.endswith(".git"):
        url = url[:-4]

    if url.startswith("git@github.com:"):
        return url.replace("git@github.com:", "https://github.com/", 1)
    if url.startswith("https://"):
        return url
    return ""
