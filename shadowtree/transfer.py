"""Moving a container's working tree into a shadow working tree.

Two interchangeable strategies:

- RsyncTransfer runs rsync *inside* the container into a staging directory,
  so delete reconciliation happens once at the source, then pulls the
  staging directory out with a single copy.
- ArchiveTransfer copies the whole tree out to a host scratch directory and
  reconciles on the host (copy changed files, prune vanished ones) using the
  same exclude patterns.

TransferSelector probes for rsync (installing it on demand) and remembers
the choice for the container's lifetime. Neither strategy touches git
metadata; the caller stages changes afterwards.
"""

from __future__ import annotations

import asyncio
import filecmp
import getpass
import logging
import os
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Sequence

from shadowtree.commands import CommandError, run_command
from shadowtree.container import ensure_tool, privileged_strategies
from shadowtree.excludes import is_excluded
from shadowtree.strategies import StrategiesExhaustedError, first_success

if TYPE_CHECKING:
    from shadowtree.config import Config
    from shadowtree.container import ContainerRuntime

log = logging.getLogger("shadowtree.transfer")

GIT_DIR = ".git"


@dataclass
class MirrorStats:
    """What a host-side mirror pass changed."""

    copied: int = 0
    removed: int = 0


def clear_tree(root: Path) -> None:
    """Remove everything under `root` except its .git directory."""
    if not root.exists():
        return
    for child in root.iterdir():
        if child.name == GIT_DIR:
            continue
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()


def _remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()


def _same_file(src: Path, dest: Path) -> bool:
    if src.is_symlink() or dest.is_symlink():
        return src.is_symlink() and dest.is_symlink() and os.readlink(src) == os.readlink(dest)
    return dest.is_file() and filecmp.cmp(src, dest, shallow=False)


def mirror_tree(source: Path, dest: Path, patterns: Sequence[str]) -> MirrorStats:
    """Make `dest` match `source`, skipping excluded paths and never touching dest/.git.

    Files are copied only when their bytes differ. Files in `dest` that are
    gone from `source` are removed, then directories left empty are pruned.
    Excluded paths in `dest` are left alone.

    Args:
        source: Freshly copied tree
        dest: Shadow working tree
        patterns: Exclude patterns

    Returns:
        MirrorStats with copy/remove counts
    """
    stats = MirrorStats()
    kept: set[str] = set()

    for dirpath, dirnames, filenames in os.walk(source):
        rel_dir = Path(dirpath).relative_to(source)
        if rel_dir == Path(".") and GIT_DIR in dirnames:
            dirnames.remove(GIT_DIR)

        # Symlinked directories are copied as links, not descended into
        for name in list(dirnames):
            if (Path(dirpath) / name).is_symlink():
                dirnames.remove(name)
                filenames.append(name)

        for name in filenames:
            rel = (rel_dir / name).as_posix()
            if is_excluded(rel, patterns):
                continue
            kept.add(rel)

            src_file = Path(dirpath) / name
            target = dest / rel
            if (target.exists() or target.is_symlink()) and _same_file(src_file, target):
                continue

            # A directory (or dangling link) may sit where a file now goes, or vice versa
            for parent in reversed(target.relative_to(dest).parents[:-1]):
                blocker = dest / parent
                if blocker.is_symlink() or blocker.is_file():
                    blocker.unlink()
            target.parent.mkdir(parents=True, exist_ok=True)
            if target.exists() or target.is_symlink():
                _remove_path(target)

            shutil.copy2(src_file, target, follow_symlinks=False)
            stats.copied += 1

    for dirpath, dirnames, filenames in os.walk(dest, topdown=False):
        rel_dir = Path(dirpath).relative_to(dest)
        if rel_dir.parts and rel_dir.parts[0] == GIT_DIR:
            continue

        for name in filenames + [d for d in dirnames if (Path(dirpath) / d).is_symlink()]:
            rel = (rel_dir / name).as_posix()
            if rel.split("/")[0] == GIT_DIR or rel in kept or is_excluded(rel, patterns):
                continue
            (Path(dirpath) / name).unlink()
            stats.removed += 1

        current = Path(dirpath)
        if current != dest and not any(current.iterdir()):
            current.rmdir()

    return stats


async def fix_container_ownership(
    runtime: ContainerRuntime,
    container_id: str,
    path: str,
    user: str,
) -> bool:
    """Best-effort `chown -R user:user path` inside the container.

    Tries as root, as the default user, then through sudo. Failure is
    logged and reported, never raised.
    """
    cmd = f"chown -R {user}:{user} {path}"
    try:
        outcome = await first_success("ownership fix", privileged_strategies(runtime, container_id, cmd))
    except StrategiesExhaustedError:
        log.info("Could not fix file ownership in container %s, continuing", container_id[:12])
        return False
    log.debug("Fixed container file ownership via %s", outcome.name)
    return True


async def fix_host_ownership(path: Path) -> None:
    """Best-effort chown of copied files to the current host user."""
    try:
        user = getpass.getuser()
    except (OSError, KeyError) as e:
        log.debug("Could not determine host user: %s", e)
        return
    try:
        result = await run_command(["chown", "-R", f"{user}:", str(path)], timeout=60)
    except CommandError as e:
        log.debug("Could not fix host file ownership: %s", e)
        return
    if not result.ok:
        log.debug("Could not fix host file ownership: %s", result.stderr.strip())


class TransferStrategy(ABC):
    """Base class for container-to-host transfer mechanisms."""

    name = "base"

    def __init__(self, runtime: ContainerRuntime, config: Config):
        self.runtime = runtime
        self.config = config

    @abstractmethod
    async def transfer(
        self,
        container_id: str,
        dest: Path,
        exclude_file: Path,
        patterns: Sequence[str],
    ) -> None:
        """Copy the container's workspace into `dest`, deleting what no longer exists.

        Args:
            container_id: Source container
            dest: Shadow working tree (its .git is left untouched)
            exclude_file: Host path of the rsync exclude file
            patterns: The same patterns, already parsed
        """


class RsyncTransfer(TransferStrategy):
    """Stage with rsync inside the container, then pull the staging dir with one copy."""

    name = "rsync"

    STAGING_DIR = "/tmp/sync-staging"
    CONTAINER_EXCLUDE_FILE = "/tmp/rsync-excludes.txt"

    async def transfer(
        self,
        container_id: str,
        dest: Path,
        exclude_file: Path,
        patterns: Sequence[str],
    ) -> None:
        timeout = self.config.sync_timeout_s
        workspace = self.config.workspace_path.rstrip("/")

        await self.runtime.exec(container_id, ["mkdir", "-p", self.STAGING_DIR], check=True)
        await self.runtime.copy_file_to(container_id, exclude_file, self.CONTAINER_EXCLUDE_FILE)

        await self.runtime.exec(
            container_id,
            [
                "rsync", "-a", "--delete",
                f"--exclude-from={self.CONTAINER_EXCLUDE_FILE}",
                f"{workspace}/", f"{self.STAGING_DIR}/",
            ],
            check=True,
            timeout=timeout,
        )

        # The staging dir is already reconciled, so the host tree is rebuilt from it
        await asyncio.to_thread(clear_tree, dest)
        await self.runtime.copy_from(container_id, f"{self.STAGING_DIR}/.", dest, timeout=timeout)

        try:
            await self.runtime.exec(container_id, ["rm", "-rf", self.STAGING_DIR])
            await self.runtime.exec(container_id, ["rm", "-f", self.CONTAINER_EXCLUDE_FILE], user="root")
        except CommandError as e:
            log.debug("Ignoring staging cleanup error: %s", e)


class ArchiveTransfer(TransferStrategy):
    """Copy the whole tree out, then reconcile on the host."""

    name = "archive"

    async def transfer(
        self,
        container_id: str,
        dest: Path,
        exclude_file: Path,
        patterns: Sequence[str],
    ) -> None:
        workspace = self.config.workspace_path.rstrip("/")
        scratch = dest.parent / f"{dest.name}-copy"

        if scratch.exists():
            await asyncio.to_thread(shutil.rmtree, scratch)
        scratch.mkdir(parents=True)

        try:
            await self.runtime.copy_from(
                container_id, f"{workspace}/.", scratch, timeout=self.config.sync_timeout_s
            )
            stats = await asyncio.to_thread(mirror_tree, scratch, dest, list(patterns))
            log.debug("Mirrored %d changed file(s), removed %d", stats.copied, stats.removed)
            await fix_host_ownership(dest)
        finally:
            await asyncio.to_thread(shutil.rmtree, scratch, True)


class TransferSelector:
    """Choose and remember a transfer strategy per container."""

    def __init__(self, runtime: ContainerRuntime, config: Config):
        self.runtime = runtime
        self.config = config
        self._selected: dict[str, TransferStrategy] = {}

    async def select(self, container_id: str) -> TransferStrategy:
        """Return the strategy for a container, probing on first use.

        rsync is used when present or installable; otherwise the archive
        fallback is used for the rest of the container's lifetime.
        """
        strategy = self._selected.get(container_id)
        if strategy is not None:
            return strategy

        if await ensure_tool(self.runtime, container_id, "rsync", "rsync"):
            strategy = RsyncTransfer(self.runtime, self.config)
        else:
            log.warning("rsync not available in container %s, using archive copy", container_id[:12])
            strategy = ArchiveTransfer(self.runtime, self.config)

        self._selected[container_id] = strategy
        return strategy

    def forget(self, container_id: str) -> None:
        self._selected.pop(container_id, None)
