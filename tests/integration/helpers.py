"""Helpers for shadow sync integration tests."""

import asyncio
import shutil
import subprocess
from pathlib import Path
from typing import Optional

from shadowtree.commands import CommandError, CommandResult
from tests.helpers import FakeStream

WORKSPACE = "/workspace"


def run_git(args: list[str], cwd: Path) -> str:
    result = subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True)
    return result.stdout


class DirectoryRuntime:
    """A "container runtime" whose containers are host directories.

    Nothing can be executed inside a container, so rsync is never found (the
    archive transfer is used) and the change watcher never starts.
    `copy_from` copies the directory out and sessions are FakeStreams.
    """

    def __init__(self) -> None:
        self.workspaces: dict[str, Path] = {}
        self.streams: dict[str, FakeStream] = {}
        self.resizes: list[tuple[str, int, int]] = []

    def add_container(self, container_id: str, workspace: Path) -> None:
        self.workspaces[container_id] = workspace

    async def exec(self, container_id, command, user=None, workdir=None, check=False, timeout=None):
        args = command if isinstance(command, list) else ["sh", "-c", command]
        if check:
            raise CommandError(args, 126, "exec is not supported")
        return CommandResult(list(args), 126, "", "exec is not supported")

    async def which(self, container_id: str, program: str) -> bool:
        return False

    async def copy_from(self, container_id: str, source: str, dest: Path, timeout: Optional[float] = None) -> None:
        assert source == f"{WORKSPACE}/."
        await asyncio.to_thread(
            shutil.copytree, self.workspaces[container_id], dest, symlinks=True, dirs_exist_ok=True
        )

    async def open_session(self, container_id, command, user=None, workdir=None, env=None):
        if container_id not in self.workspaces:
            raise RuntimeError(f"No such container: {container_id}")
        stream = FakeStream(exec_id=f"exec-{container_id[:4]}")
        self.streams[container_id] = stream
        return stream

    async def resize(self, exec_id: str, cols: int, rows: int) -> None:
        self.resizes.append((exec_id, cols, rows))
