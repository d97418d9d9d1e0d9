"""In-container file change detection with inotifywait."""

from __future__ import annotations

import asyncio
import logging
import shlex
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, AsyncIterator, Optional

from shadowtree.container import PRIVILEGE_ROOT, ensure_tool

if TYPE_CHECKING:
    from shadowtree.config import Config
    from shadowtree.container import ContainerRuntime

log = logging.getLogger("shadowtree.detector")

WATCH_EVENTS = "modify,create,delete,move"
WATCH_EXCLUDE = r"(\.git|node_modules|\.next|__pycache__|\.venv)"

INSTALL_MANAGERS = ("apt-get", "apk", "yum", "dnf")


@dataclass
class ChangeEvent:
    """One line of inotifywait output: a path and the event names that fired."""

    path: str
    kinds: list[str] = field(default_factory=list)

    @classmethod
    def parse(cls, line: str) -> Optional["ChangeEvent"]:
        """Parse `<path> <EVENT[,EVENT...]>`. Returns None for blank lines."""
        line = line.strip()
        if not line:
            return None
        path, sep, kinds = line.rpartition(" ")
        if not sep:
            return cls(path=line)
        return cls(path=path, kinds=[k for k in kinds.split(",") if k])


def build_watch_command(workspace: str) -> str:
    return (
        f"inotifywait -m -r -e {WATCH_EVENTS} --format '%w%f %e' "
        f"{shlex.quote(workspace)} --exclude '{WATCH_EXCLUDE}'"
    )


class ChangeDetector:
    """Watches a container's workspace and yields change events.

    The watcher is a long-lived `inotifywait -m` process started through the
    runtime CLI. If inotify-tools can't be installed the detector stays
    unavailable and `events()` yields nothing. A watcher that dies is not
    restarted; `events()` just finishes.
    """

    def __init__(self, runtime: ContainerRuntime, container_id: str, config: Config):
        self.runtime = runtime
        self.container_id = container_id
        self.config = config
        self.available = False
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._reaper: Optional[asyncio.Future] = None
        self._stopped = False

    async def start(self) -> bool:
        """Install the watcher if needed and start it.

        Returns:
            True if the watcher is running
        """
        if self._proc is not None:
            return True

        installed = await ensure_tool(
            self.runtime,
            self.container_id,
            "inotifywait",
            "inotify-tools",
            managers=INSTALL_MANAGERS,
            privileges=(PRIVILEGE_ROOT,),
        )
        if not installed:
            log.warning(
                "Could not install inotify-tools in %s, live sync disabled",
                self.container_id[:12],
            )
            return False

        self._proc = await self.runtime.spawn(
            self.container_id, build_watch_command(self.config.workspace_path)
        )
        self.available = True
        log.info("Started change monitoring for container %s", self.container_id[:12])
        return True

    async def events(self) -> AsyncIterator[ChangeEvent]:
        """Yield change events until the watcher ends or is stopped."""
        if self._proc is None or self._proc.stdout is None:
            return

        stdout = self._proc.stdout
        while True:
            try:
                raw = await stdout.readline()
            except (OSError, ValueError) as e:
                log.warning("Watcher stream error for %s: %s", self.container_id[:12], e)
                break
            if not raw:
                break

            event = ChangeEvent.parse(raw.decode("utf-8", errors="replace"))
            if event is not None:
                log.debug("change: %s %s", event.path, ",".join(event.kinds))
                yield event

        log.info("Change monitoring stopped for container %s", self.container_id[:12])

    def stop(self) -> None:
        """Terminate the watcher process and reap it in the background.

        Safe to call repeatedly.
        """
        if self._stopped:
            return
        self._stopped = True
        self.available = False

        proc = self._proc
        if proc is not None and proc.returncode is None:
            try:
                proc.terminate()
            except ProcessLookupError:
                pass
            self._reaper = asyncio.ensure_future(proc.wait())
