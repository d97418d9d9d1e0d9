"""Command execution module for shadowtree.

Every external program (git, the container runtime CLI, rsync) goes through
`run_command`, which runs it as an asyncio subprocess so long copies and
clones never block the event loop.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Union

logger = logging.getLogger("shadowtree.commands")

DEFAULT_TIMEOUT = 120.0


@dataclass
class CommandResult:
    """Captured outcome of an external command."""

    args: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandError(Exception):
    """Raised when a checked command exits non-zero or times out."""

    def __init__(self, args: Sequence[str], returncode: int, stderr: str = "", timed_out: bool = False):
        self.cmd = list(args)
        self.returncode = returncode
        self.stderr = stderr
        self.timed_out = timed_out
        if timed_out:
            message = f"Command timed out: {shlex.join(self.cmd)}"
        else:
            message = f"Command failed (exit {returncode}): {shlex.join(self.cmd)}"
            if stderr.strip():
                message += f"\n{stderr.strip()}"
        super().__init__(message)


async def run_command(
    args: Sequence[Union[str, Path]],
    cwd: Optional[Path] = None,
    timeout: Optional[float] = DEFAULT_TIMEOUT,
    check: bool = False,
    input: Optional[bytes] = None,
) -> CommandResult:
    """Run a command and capture its output.

    Args:
        args: Program and arguments (no shell)
        cwd: Working directory for the command
        timeout: Seconds before the process is killed (None for no limit)
        check: Raise CommandError on non-zero exit
        input: Bytes to feed on stdin

    Returns:
        CommandResult with decoded stdout/stderr

    Raises:
        CommandError: If check is set and the command fails, or on timeout
    """
    argv = [str(a) for a in args]
    logger.debug("run: %s (cwd=%s)", shlex.join(argv), cwd)

    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd) if cwd else None,
            stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        if check:
            raise CommandError(argv, 127, str(e)) from e
        return CommandResult(argv, 127, "", str(e))

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(input), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        logger.warning("Command timed out after %ss: %s", timeout, shlex.join(argv))
        raise CommandError(argv, -1, timed_out=True)
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
        raise

    result = CommandResult(
        args=argv,
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )

    if check and not result.ok:
        raise CommandError(argv, result.returncode, result.stderr)

    return result

