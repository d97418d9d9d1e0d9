"""Container runtime support for shadowtree.

Plain commands (exec, cp, ps) go through the runtime CLI so docker and
podman behave the same. The interactive terminal session needs a hijacked
TTY socket and resize control, which the CLI can't give us, so that part
uses the docker SDK.
"""

from __future__ import annotations

import asyncio
import io
import json
import logging
import shlex
import tarfile
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Optional, Sequence, Union

import docker

from shadowtree.commands import CommandError, CommandResult, run_command
from shadowtree.strategies import StrategiesExhaustedError, Strategy, first_success

log = logging.getLogger("shadowtree.container")

# Package-manager install commands, tried in order
PACKAGE_MANAGERS = {
    "apk": "apk add --no-cache {package}",
    "apt-get": "apt-get update && apt-get install -y {package}",
    "yum": "yum install -y {package}",
    "dnf": "dnf install -y {package}",
}

# Privilege variants for in-container installs and ownership fixes
PRIVILEGE_ROOT = "root"
PRIVILEGE_SUDO = "sudo"
PRIVILEGE_PLAIN = "plain"


class ExecStream:
    """Bidirectional byte stream of an interactive exec.

    Wraps the hijacked socket the docker SDK hands back. Blocking socket
    calls run in a worker thread so the event loop stays free.
    """

    def __init__(self, exec_id: str, sock: Any):
        self.exec_id = exec_id
        self._sock = sock
        # SocketIO wrapper on unix sockets; the raw socket lives underneath
        self._raw = getattr(sock, "_sock", sock)
        self.closed = False

    async def read(self, size: int = 4096) -> bytes:
        """Read the next chunk. Returns b"" once the stream has ended."""
        if self.closed:
            return b""
        return await asyncio.to_thread(self._raw.recv, size)

    async def write(self, data: bytes) -> None:
        await asyncio.to_thread(self._raw.sendall, data)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._sock.close()
        except OSError as e:
            log.debug("Error closing exec stream %s: %s", self.exec_id, e)


@dataclass
class ContainerInfo:
    """Summary of a container as listed by the runtime."""

    id: str
    name: str
    status: str
    image: str


class ContainerRuntime:
    """Container runtime adapter.

    Args:
        runtime: CLI binary ("docker" or "podman")
        timeout: Default timeout for runtime commands in seconds
        client: Optional docker SDK client (created lazily from the environment)
    """

    def __init__(self, runtime: str = "docker", timeout: float = 120.0, client: Optional[Any] = None):
        self.runtime = runtime
        self.timeout = timeout
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    # -------------------------------------------------------------------------
    # Commands inside a container
    # -------------------------------------------------------------------------

    def build_exec_command(
        self,
        container_id: str,
        command: Union[str, Sequence[str]],
        user: Optional[str] = None,
        workdir: Optional[str] = None,
    ) -> list[str]:
        """Build a `<runtime> exec` command line.

        A string command is run through `sh -c`; a list is passed as-is.
        """
        cmd = [self.runtime, "exec"]
        if user:
            cmd.extend(["--user", user])
        if workdir:
            cmd.extend(["-w", workdir])
        cmd.append(container_id)
        if isinstance(command, str):
            cmd.extend(["sh", "-c", command])
        else:
            cmd.extend(command)
        return cmd

    async def exec(
        self,
        container_id: str,
        command: Union[str, Sequence[str]],
        user: Optional[str] = None,
        workdir: Optional[str] = None,
        check: bool = False,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Run a command inside a running container and capture its output."""
        return await run_command(
            self.build_exec_command(container_id, command, user=user, workdir=workdir),
            timeout=timeout or self.timeout,
            check=check,
        )

    async def which(self, container_id: str, program: str) -> bool:
        """Check whether a program is on the container's PATH."""
        try:
            result = await self.exec(container_id, ["which", program])
        except CommandError:
            return False
        return result.ok

    async def spawn(
        self,
        container_id: str,
        command: Union[str, Sequence[str]],
        user: Optional[str] = None,
    ) -> asyncio.subprocess.Process:
        """Start a long-lived command in the container with stdout piped back."""
        argv = self.build_exec_command(container_id, command, user=user)
        log.debug("spawn: %s", shlex.join(argv))
        return await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )

    # -------------------------------------------------------------------------
    # File transfer
    # -------------------------------------------------------------------------

    async def copy_from(
        self,
        container_id: str,
        source: str,
        dest: Path,
        timeout: Optional[float] = None,
    ) -> None:
        """Copy a path out of a container (`<runtime> cp id:source dest`)."""
        await run_command(
            [self.runtime, "cp", f"{container_id}:{source}", str(dest)],
            timeout=timeout or self.timeout,
            check=True,
        )

    async def put_archive(self, container_id: str, path: str, data: bytes) -> None:
        """Extract a tar byte stream into a directory inside the container."""
        container = await asyncio.to_thread(self.client.containers.get, container_id)
        ok = await asyncio.to_thread(container.put_archive, path, data)
        if not ok:
            raise RuntimeError(f"Could not copy archive into {container_id}:{path}")

    async def copy_file_to(self, container_id: str, host_file: Path, container_path: str) -> None:
        """Copy one host file to an absolute path inside the container."""
        target = PurePosixPath(container_path)
        content = host_file.read_bytes()

        tar_stream = io.BytesIO()
        with tarfile.open(fileobj=tar_stream, mode="w") as tar:
            info = tarfile.TarInfo(name=target.name)
            info.size = len(content)
            info.mtime = int(time.time())
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(content))

        await self.put_archive(container_id, str(target.parent), tar_stream.getvalue())

    # -------------------------------------------------------------------------
    # Interactive sessions
    # -------------------------------------------------------------------------

    async def open_session(
        self,
        container_id: str,
        command: Sequence[str],
        user: Optional[str] = None,
        workdir: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
    ) -> ExecStream:
        """Start an interactive TTY exec and return its hijacked stream."""
        api = self.client.api
        created = await asyncio.to_thread(
            api.exec_create,
            container_id,
            cmd=list(command),
            stdin=True,
            stdout=True,
            stderr=True,
            tty=True,
            user=user or "",
            workdir=workdir,
            environment=[f"{k}={v}" for k, v in (env or {}).items()],
        )
        exec_id = created["Id"]
        sock = await asyncio.to_thread(api.exec_start, exec_id, tty=True, socket=True)
        return ExecStream(exec_id, sock)

    async def resize(self, exec_id: str, cols: int, rows: int) -> None:
        """Resize the pseudo-terminal of an exec."""
        await asyncio.to_thread(self.client.api.exec_resize, exec_id, height=rows, width=cols)

    # -------------------------------------------------------------------------
    # Listing
    # -------------------------------------------------------------------------

    async def list_containers(self, name_filter: Optional[str] = None) -> list[ContainerInfo]:
        """List running containers, optionally keeping names that contain `name_filter`.

        Docker outputs one JSON object per line.
        """
        try:
            result = await run_command([self.runtime, "ps", "--format", "json"], timeout=30)
        except CommandError:
            return []
        if not result.ok:
            return []

        containers = []
        for line in result.stdout.strip().splitlines():
            if not line:
                continue
            try:
                c = json.loads(line)
            except json.JSONDecodeError:
                continue
            names = c.get("Names", "")
            name = names[0] if isinstance(names, list) and names else str(names)
            if name_filter and name_filter not in name:
                continue
            containers.append(ContainerInfo(
                id=c.get("ID", "") or c.get("Id", ""),
                name=name,
                status=c.get("State", "unknown"),
                image=c.get("Image", ""),
            ))
        return containers


def _privileged_exec(runtime: ContainerRuntime, container_id: str, privilege: str, cmd: str, timeout: float):
    async def attempt() -> CommandResult:
        if privilege == PRIVILEGE_ROOT:
            return await runtime.exec(container_id, cmd, user="root", check=True, timeout=timeout)
        if privilege == PRIVILEGE_SUDO:
            return await runtime.exec(container_id, f"sudo sh -c {shlex.quote(cmd)}", check=True, timeout=timeout)
        return await runtime.exec(container_id, cmd, check=True, timeout=timeout)

    return attempt


def privileged_strategies(
    runtime: ContainerRuntime,
    container_id: str,
    cmd: str,
    privileges: Sequence[str] = (PRIVILEGE_ROOT, PRIVILEGE_PLAIN, PRIVILEGE_SUDO),
    timeout: float = 300,
) -> list[Strategy[CommandResult]]:
    """One strategy per privilege variant for running `cmd` in the container."""
    return [
        Strategy(f"{privilege}", _privileged_exec(runtime, container_id, privilege, cmd, timeout))
        for privilege in privileges
    ]


async def ensure_tool(
    runtime: ContainerRuntime,
    container_id: str,
    program: str,
    package: str,
    managers: Sequence[str] = ("apk", "apt-get", "yum", "dnf"),
    privileges: Sequence[str] = (PRIVILEGE_ROOT, PRIVILEGE_SUDO, PRIVILEGE_PLAIN),
) -> bool:
    """Make sure `program` exists in the container, installing `package` on demand.

    Every (package manager, privilege) pair is a strategy; an attempt only
    counts once `program` is actually found afterwards.

    Returns:
        True if the program is available, False if every install attempt failed
    """
    if await runtime.which(container_id, program):
        return True

    log.info("Installing %s in container %s...", package, container_id[:12])

    def install(manager: str, privilege: str):
        cmd = PACKAGE_MANAGERS[manager].format(package=package)
        run = _privileged_exec(runtime, container_id, privilege, cmd, timeout=300)

        async def attempt() -> bool:
            await run()
            if not await runtime.which(container_id, program):
                raise RuntimeError(f"{program} still missing after {manager} install")
            return True

        return attempt

    strategies = [
        Strategy(f"{manager}/{privilege}", install(manager, privilege))
        for manager in managers
        for privilege in privileges
    ]

    try:
        outcome = await first_success(f"install {package}", strategies)
    except StrategiesExhaustedError:
        log.warning("Could not install %s in container %s with any package manager", package, container_id[:12])
        return False

    log.info("Installed %s in container %s via %s", package, container_id[:12], outcome.name)
    return True
