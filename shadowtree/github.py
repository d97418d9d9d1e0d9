"""GitHub CLI helpers used for pull-request lookup."""

from __future__ import annotations

import json
import logging
import shutil
from pathlib import Path
from typing import Any, List

from shadowtree.commands import CommandError, run_command

log = logging.getLogger("shadowtree.github")

PR_FIELDS = "number,title,state,url,isDraft,mergeable"


def gh_available() -> bool:
    """Check whether the gh CLI is on PATH."""
    return shutil.which("gh") is not None


async def gh_command(args: List[str], cwd: Path) -> str:
    """Run a gh (GitHub CLI) command.

    Args:
        args: Command arguments
        cwd: Repository to run in

    Returns:
        Command output

    Raises:
        RuntimeError: If gh command fails
    """
    try:
        result = await run_command(["gh", *args], cwd=cwd, timeout=30, check=True)
    except CommandError as e:
        raise RuntimeError(f"GitHub CLI command failed: {e.stderr}") from e
    return result.stdout.strip()


async def list_pull_requests(repo: Path, branch: str) -> list[dict[str, Any]]:
    """List pull requests whose head is `branch`.

    Returns an empty list when gh is missing, unauthenticated or fails.
    """
    if not gh_available():
        log.debug("GitHub CLI not available, skipping PR lookup")
        return []

    try:
        output = await gh_command(["pr", "list", "--head", branch, "--json", PR_FIELDS], repo)
    except RuntimeError as e:
        log.info("Could not fetch PR info: %s", e)
        return []

    try:
        prs = json.loads(output or "[]")
    except json.JSONDecodeError:
        log.warning("Unexpected gh output for PR lookup")
        return []
    return prs if isinstance(prs, list) else []
