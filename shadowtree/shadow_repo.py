"""Host-side shadow repositories.

A shadow repository is a git working tree under `shadow_root` that mirrors
one container's workspace. It starts as a clone of the original repository
(so history and remotes are real), gets a baseline commit, and from then on
every sync copies the container's files in and stages them, so `git status`
and `git diff HEAD` show exactly what the agent changed.

Lifecycle (enforced with a `transitions` state machine):

    uninitialized -> initializing -> ready <-> syncing
                          |                      |
                          +-> uninitialized      +-> cleaned_up (from any state)
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from transitions import Machine

from shadowtree import git_utils
from shadowtree.commands import CommandError
from shadowtree.excludes import write_exclude_file
from shadowtree.git_utils import git
from shadowtree.models import ChangeSummary, DiffData
from shadowtree.strategies import StrategiesExhaustedError, Strategy, first_success
from shadowtree.transfer import TransferSelector, fix_container_ownership

if TYPE_CHECKING:
    from shadowtree.config import Config
    from shadowtree.container import ContainerRuntime

log = logging.getLogger("shadowtree.shadow_repo")

CLEANUP_ATTEMPTS = 3
CLEANUP_BACKOFF_S = 0.1

# Used only when neither the repo nor the user's global config has an identity
FALLBACK_NAME = "shadowtree"
FALLBACK_EMAIL = "shadowtree@localhost"


class ShadowRepoError(Exception):
    """Base class for shadow repository failures."""


class ShadowInitError(ShadowRepoError):
    """Raised when a shadow repository can't be created."""

    def __init__(self, path: Path, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to create shadow repository at {path}: {reason}")


class ShadowRepoNotFoundError(ShadowRepoError):
    """Raised when an operation needs a shadow repository that doesn't exist."""

    def __init__(self, container_id: str):
        self.container_id = container_id
        super().__init__("Shadow repository not found")


class ShadowRepository:
    """Shadow working tree for one container session.

    Args:
        container_id: Container whose workspace is mirrored
        original_repo: Host repository the shadow is cloned from
        target_branch: Branch to create for the agent's work
        runtime: Container runtime adapter
        config: shadowtree config (paths, timeouts, excludes)
        selector: Transfer strategy selector (shared across repos if given)
    """

    STATES = ["uninitialized", "initializing", "ready", "syncing", "cleaned_up"]

    TRANSITIONS = [
        {"trigger": "begin_init", "source": "uninitialized", "dest": "initializing"},
        {"trigger": "finish_init", "source": "initializing", "dest": "ready"},
        {"trigger": "fail_init", "source": "initializing", "dest": "uninitialized"},
        {"trigger": "adopt", "source": "uninitialized", "dest": "ready"},
        {"trigger": "begin_sync", "source": "ready", "dest": "syncing"},
        {"trigger": "finish_sync", "source": "syncing", "dest": "ready"},
        {"trigger": "tear_down", "source": "*", "dest": "cleaned_up"},
    ]

    def __init__(
        self,
        container_id: str,
        original_repo: Path,
        target_branch: str,
        runtime: ContainerRuntime,
        config: Config,
        selector: Optional[TransferSelector] = None,
    ) -> None:
        self.container_id = container_id
        self.session_id = config.get_session_id(container_id)
        self.original_repo = original_repo
        self.target_branch = target_branch
        self.runtime = runtime
        self.config = config
        self.selector = selector or TransferSelector(runtime, config)

        self.path = config.get_shadow_path(container_id)
        self.exclude_file = config.get_exclude_file(container_id)

        self.machine = Machine(
            model=self,
            states=self.STATES,
            transitions=self.TRANSITIONS,
            initial="uninitialized",
            auto_transitions=False,
        )

    @property
    def initialized(self) -> bool:
        return self.state in ("ready", "syncing")

    def get_path(self) -> Path:
        return self.path

    # -------------------------------------------------------------------------
    # Initialization
    # -------------------------------------------------------------------------

    async def initialize(self) -> None:
        """Create the shadow working tree.

        Removes any stale tree, then tries a shallow clone, a full clone and
        finally a plain copy + `git init`, keeping the first that works.
        Creates the target branch, points origin at the real remote, and
        makes a baseline commit so later deletions show up as diffs.

        Raises:
            ShadowInitError: If every clone approach failed
        """
        if self.initialized:
            return

        self.begin_init()
        log.info("Creating shadow repository at %s", self.path)

        try:
            self.config.shadow_root.mkdir(parents=True, exist_ok=True)
            await self._remove_tree()

            source_branch = await git_utils.get_current_branch(self.original_repo) or "main"

            try:
                outcome = await first_success("clone", self._clone_strategies(source_branch))
            except StrategiesExhaustedError as e:
                raise ShadowInitError(self.path, str(e)) from e
            log.info("Shadow repository created via %s clone", outcome.name)

            await self._ensure_identity()

            if self.target_branch and self.target_branch != source_branch:
                await git(["checkout", "-b", self.target_branch], self.path)

            await self._configure_remote()

            if not await git_utils.has_head(self.path):
                log.info("Creating initial commit")
                await git(["add", "."], self.path)
                await git(["commit", "--allow-empty", "-m", "Initial commit"], self.path)

            await self._snapshot()
        except ShadowInitError:
            self.fail_init()
            raise
        except (CommandError, OSError) as e:
            self.fail_init()
            raise ShadowInitError(self.path, str(e)) from e

        self.finish_init()

    async def reuse_existing(self) -> bool:
        """Adopt a shadow tree left by an earlier run instead of re-cloning it.

        Returns:
            True if a tree with at least one commit was adopted
        """
        if self.state != "uninitialized" or not (self.path / ".git").is_dir():
            return False
        if not await git_utils.has_head(self.path):
            return False

        self.adopt()
        log.info("Reusing shadow repository at %s", self.path)
        return True

    def _clone_strategies(self, source_branch: str) -> list[Strategy[None]]:
        origin = str(self.original_repo)
        dest = str(self.path)
        timeout = self.config.sync_timeout_s

        async def shallow() -> None:
            await self._remove_tree()
            await git(
                ["clone", "--single-branch", "--branch", source_branch, "--depth", "1", origin, dest],
                self.config.shadow_root,
                timeout=timeout,
            )

        async def full() -> None:
            await self._remove_tree()
            await git(
                ["clone", "--single-branch", "--branch", source_branch, origin, dest],
                self.config.shadow_root,
                timeout=timeout,
            )

        async def copy() -> None:
            await self._remove_tree()
            await asyncio.to_thread(
                shutil.copytree,
                self.original_repo,
                self.path,
                symlinks=True,
                ignore=shutil.ignore_patterns(".git"),
            )
            await git(["init", f"--initial-branch={source_branch}"], self.path)
            await self._ensure_identity()
            await git(["add", "."], self.path)
            await git(
                ["commit", "--allow-empty", "-m", f"Initial commit from {source_branch}"],
                self.path,
            )

        return [Strategy("shallow", shallow), Strategy("full", full), Strategy("copy", copy)]

    async def _ensure_identity(self) -> None:
        """Give the shadow repo a commit identity if git has none configured."""
        for key, fallback in (("user.name", FALLBACK_NAME), ("user.email", FALLBACK_EMAIL)):
            result = await git(["config", key], self.path, check=False)
            if not result.stdout.strip():
                await git(["config", key, fallback], self.path)

    async def _configure_remote(self) -> None:
        """Point origin at the original repo's remote so pushes reach the real remote."""
        remote_url = await git_utils.get_remote_url(self.original_repo)
        if not remote_url or git_utils.is_local_remote(remote_url):
            log.debug("Original repo has no non-local remote, keeping local origin")
            return

        try:
            if await git_utils.has_remote(self.path):
                await git(["remote", "set-url", "origin", remote_url], self.path)
            else:
                await git(["remote", "add", "origin", remote_url], self.path)
            log.info("Configured remote: %s", remote_url)
        except CommandError as e:
            log.warning("Could not configure remote URL, using local: %s", e)

    async def _snapshot(self) -> None:
        """Stage everything and commit, so deletions are tracked from here on."""
        try:
            await git(["add", "."], self.path)
            await git(
                ["commit", "--allow-empty", "-m", "Initial snapshot of working directory"],
                self.path,
            )
        except CommandError as e:
            log.warning("Could not create snapshot commit: %s", e)

    # -------------------------------------------------------------------------
    # Sync
    # -------------------------------------------------------------------------

    async def sync_from_container(self) -> None:
        """Copy the container's workspace into the shadow tree and stage it.

        Initializes the repository first if needed. Ownership problems in
        the container are fixed opportunistically.
        """
        if not self.initialized:
            await self.initialize()

        self.begin_sync()
        try:
            log.info("Syncing files from container %s", self.session_id)
            patterns = await asyncio.to_thread(
                write_exclude_file, self.original_repo, self.exclude_file, self.config.extra_excludes
            )

            await fix_container_ownership(
                self.runtime,
                self.container_id,
                self.config.workspace_path,
                self.config.container_user,
            )

            strategy = await self.selector.select(self.container_id)
            await strategy.transfer(self.container_id, self.path, self.exclude_file, patterns)

            # Stage all changes including deletions
            try:
                await git(["add", "-A"], self.path)
            except CommandError as e:
                log.warning("Could not stage changes: %s", e)
        finally:
            if self.state == "syncing":
                self.finish_sync()

    async def establish_baseline(self) -> None:
        """Commit the first synced content and sync again.

        Used once for a brand-new shadow repo so the first reported diff only
        contains what changed inside the container afterwards, not the
        container's initial content.
        """
        log.info("Establishing clean baseline for %s", self.session_id)
        try:
            await git(["add", "-A"], self.path)
            await git(
                ["commit", "--allow-empty", "-m", "Establish baseline from container content"],
                self.path,
            )
            await self.sync_from_container()
        except CommandError as e:
            log.warning("Could not establish baseline: %s", e)

    # -------------------------------------------------------------------------
    # Change reporting
    # -------------------------------------------------------------------------

    async def get_changes(self) -> ChangeSummary:
        """Summarize pending changes from `git status --porcelain`."""
        status = await git_utils.get_status_porcelain(self.path)

        if not status.strip():
            return ChangeSummary(has_changes=False, summary="No changes detected")

        counts = git_utils.count_status(status)
        return ChangeSummary(has_changes=True, summary=counts.summary())

    async def get_diff_data(self) -> DiffData:
        """Collect status, full diff, untracked files and diff statistics."""
        status = await git_utils.get_status_porcelain(self.path)
        diff = await git_utils.get_diff(self.path)

        return DiffData(
            status=status,
            diff=diff,
            untracked_files=git_utils.untracked_files(status),
            stats=git_utils.calculate_diff_stats(diff),
        )

    async def current_branch(self) -> str:
        return await git_utils.get_head_ref(self.path)

    async def remote_url(self) -> Optional[str]:
        return await git_utils.get_remote_url(self.path)

    # -------------------------------------------------------------------------
    # Commit / push
    # -------------------------------------------------------------------------

    async def commit(self, message: str) -> None:
        """Stage everything and commit it.

        Raises:
            CommandError: If git refuses (e.g. nothing to commit)
        """
        await git(["add", "."], self.path)
        await git(["commit", "-m", message], self.path)
        log.info("Changes committed in %s", self.session_id)

    async def push(self, branch: Optional[str] = None) -> str:
        """Push to origin, switching to (or creating) `branch` first.

        Args:
            branch: Branch to push; the current branch when empty

        Returns:
            The branch that was pushed

        Raises:
            ShadowRepoError: If no origin remote is configured
            CommandError: If checkout or push fails
        """
        if branch and branch != "main":
            try:
                await git(["checkout", "-b", branch], self.path)
            except CommandError:
                # Branch already exists
                await git(["checkout", branch], self.path)

        if not await git_utils.has_remote(self.path):
            raise ShadowRepoError("No remote origin configured")

        push_branch = branch or await git_utils.get_current_branch(self.path)
        await git(["push", "-u", "origin", push_branch], self.path, timeout=self.config.sync_timeout_s)
        log.info("Pushed %s to origin", push_branch)
        return push_branch

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    async def _remove_tree(self) -> None:
        if self.path.exists():
            await asyncio.to_thread(shutil.rmtree, self.path)

    async def cleanup(self) -> None:
        """Remove the working tree and exclude file. Never raises.

        Removal is retried a few times since files can be briefly locked.
        """
        for attempt in range(1, CLEANUP_ATTEMPTS + 1):
            try:
                await self._remove_tree()
                log.info("Shadow repository %s cleaned up", self.session_id)
                break
            except OSError as e:
                if attempt == CLEANUP_ATTEMPTS:
                    log.warning("Failed to clean up shadow repository %s: %s", self.path, e)
                else:
                    await asyncio.sleep(CLEANUP_BACKOFF_S)

        try:
            self.exclude_file.unlink(missing_ok=True)
        except OSError as e:
            log.debug("Ignoring exclude file cleanup error: %s", e)

        self.selector.forget(self.container_id)
        if self.state != "cleaned_up":
            self.tear_down()
