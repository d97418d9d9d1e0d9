"""Sync orchestration: debouncing, per-container gating and result broadcast.

Change events from a container's detector are debounced (cancel and
reschedule) and only the trailing edge asks for a sync. A sync request is
dropped when one is already running for that container; whatever changed
meanwhile is picked up by the next sync.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, TypeVar

from shadowtree.detector import ChangeDetector
from shadowtree.models import SyncComplete
from shadowtree.shadow_repo import ShadowRepository
from shadowtree.transfer import TransferSelector

if TYPE_CHECKING:
    from shadowtree.config import Config
    from shadowtree.container import ContainerRuntime
    from shadowtree.registry import SessionRegistry

log = logging.getLogger("shadowtree.orchestrator")

T = TypeVar("T")

# (container_id, event name, payload)
Broadcaster = Callable[[str, str, dict[str, Any]], Awaitable[None]]


@dataclass
class SyncState:
    """Per-container sync bookkeeping."""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    timer: Optional[asyncio.TimerHandle] = None
    detector: Optional[ChangeDetector] = None
    task: Optional[asyncio.Task] = None
    # Debounced sync that has fired but may not have run yet
    pending: Optional[asyncio.Task] = None

    @property
    def in_progress(self) -> bool:
        return self.lock.locked()


class SyncOrchestrator:
    """Keeps shadow repositories in step with their containers.

    Args:
        registry: Shared session/shadow repository registry
        runtime: Container runtime adapter
        config: shadowtree config
        repo_path: Host repository shadow repos are cloned from
        target_branch: Branch created in each shadow repo
        broadcaster: Coroutine receiving (container_id, event, data); defaults
            to sending to the container's session subscribers
        detector_factory: Builds the change detector for a container
        baseline_first_sync: Commit a new shadow repo's first synced content so
            only later changes are reported
    """

    def __init__(
        self,
        registry: SessionRegistry,
        runtime: ContainerRuntime,
        config: Config,
        repo_path: Path,
        target_branch: str = "",
        broadcaster: Optional[Broadcaster] = None,
        detector_factory: Callable[..., ChangeDetector] = ChangeDetector,
        baseline_first_sync: bool = True,
    ):
        self.registry = registry
        self.runtime = runtime
        self.config = config
        self.repo_path = repo_path
        self.target_branch = target_branch
        self.broadcaster = broadcaster or self._broadcast_to_session
        self.detector_factory = detector_factory
        self.baseline_first_sync = baseline_first_sync
        self.selector = TransferSelector(runtime, config)
        self._states: dict[str, SyncState] = {}
        self._background: set[asyncio.Task] = set()

    def state(self, container_id: str) -> SyncState:
        state = self._states.get(container_id)
        if state is None:
            state = SyncState()
            self._states[container_id] = state
        return state

    async def _broadcast_to_session(self, container_id: str, event: str, data: dict[str, Any]) -> None:
        session = self.registry.get_session(container_id)
        if session is not None:
            session.broadcast_event(event, data)

    # -------------------------------------------------------------------------
    # Syncing
    # -------------------------------------------------------------------------

    def new_shadow_repo(self, container_id: str) -> ShadowRepository:
        return ShadowRepository(
            container_id,
            self.repo_path,
            self.target_branch,
            self.runtime,
            self.config,
            selector=self.selector,
        )

    async def sync_now(self, container_id: str) -> Optional[SyncComplete]:
        """Sync one container and compute its change report.

        Does not take the gate; callers go through `request_sync` or
        `run_exclusive`.

        Returns:
            The sync-complete payload, or None if the shadow tree has no .git
        """
        repo, _ = self.registry.get_or_create_shadow_repo(
            container_id, lambda: self.new_shadow_repo(container_id)
        )

        first_sync = not repo.initialized
        await repo.sync_from_container()
        if first_sync and self.baseline_first_sync:
            # Don't report the container's starting content as changes
            await repo.establish_baseline()

        if not (repo.get_path() / ".git").exists():
            log.warning("Shadow repository %s has no .git directory, skipping change report", repo.path)
            return None

        changes = await repo.get_changes()
        diff_data = await repo.get_diff_data() if changes.has_changes else None

        return SyncComplete(
            has_changes=changes.has_changes,
            summary=changes.summary,
            shadow_path=str(repo.get_path()),
            diff_data=diff_data,
            container_id=container_id,
        )

    async def request_sync(self, container_id: str) -> bool:
        """Sync a container unless a sync for it is already running.

        The result is broadcast as sync-complete, or sync-error on failure
        or timeout.

        Returns:
            False if the request was dropped because a sync was in progress
        """
        state = self.state(container_id)
        if state.lock.locked():
            log.debug("Sync already in progress for %s, skipping", container_id[:12])
            return False

        async with state.lock:
            log.info("Syncing container %s", container_id[:12])
            try:
                result = await asyncio.wait_for(
                    self.sync_now(container_id), timeout=self.config.sync_timeout_s
                )
            except asyncio.TimeoutError:
                message = f"Sync timed out after {self.config.sync_timeout_s:g}s"
                log.error("%s for container %s", message, container_id[:12])
                await self.broadcaster(container_id, "sync-error", {"message": message})
                return True
            except Exception as e:
                log.exception("Sync failed for container %s", container_id[:12])
                await self.broadcaster(container_id, "sync-error", {"message": str(e)})
                return True

            if result is not None:
                log.info("Sync complete for %s: %s", container_id[:12], result.summary)
                await self.broadcaster(container_id, "sync-complete", result.to_event())
        return True

    async def run_exclusive(self, container_id: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run `fn` once no sync is running for the container, holding the gate."""
        async with self.state(container_id).lock:
            return await fn()

    # -------------------------------------------------------------------------
    # Debounce
    # -------------------------------------------------------------------------

    def notify_change(self, container_id: str) -> None:
        """Record a change; the sync fires once changes have been quiet for the debounce delay."""
        state = self.state(container_id)
        if state.timer is not None:
            state.timer.cancel()
        loop = asyncio.get_running_loop()
        state.timer = loop.call_later(self.config.debounce_s, self._debounce_fired, container_id)

    def _debounce_fired(self, container_id: str) -> None:
        state = self._states.get(container_id)
        if state is None:
            return
        state.timer = None
        log.debug("Changes settled in %s, syncing", container_id[:12])
        state.pending = self._spawn(self.request_sync(container_id))

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # -------------------------------------------------------------------------
    # Monitoring
    # -------------------------------------------------------------------------

    async def start_monitoring(self, container_id: str) -> None:
        """Run an initial sync, then sync whenever the container's files change."""
        self.stop_monitoring(container_id)
        await self.request_sync(container_id)

        state = self.state(container_id)
        detector = self.detector_factory(self.runtime, container_id, self.config)
        state.detector = detector

        started = await detector.start()
        if state is not self._states.get(container_id) or state.detector is not detector:
            # Monitoring was stopped while the watcher was starting
            detector.stop()
            return
        if not started:
            return

        state.task = asyncio.create_task(self._consume(container_id, detector))

    async def _consume(self, container_id: str, detector: ChangeDetector) -> None:
        async for _event in detector.events():
            self.notify_change(container_id)

    def stop_monitoring(self, container_id: str) -> None:
        """Cancel the pending debounce, stop the watcher and its consumer."""
        state = self._states.get(container_id)
        if state is None:
            return

        if state.timer is not None:
            state.timer.cancel()
            state.timer = None
        if state.detector is not None:
            state.detector.stop()
            state.detector = None
        if state.task is not None:
            state.task.cancel()
            state.task = None
        log.info("Stopped monitoring container %s", container_id[:12])

    async def release(self, container_id: str) -> None:
        """Stop monitoring and remove the container's shadow repository.

        Waits for a scheduled or running sync first, so nothing writes into
        the shadow tree once it has been removed. The container's sync state
        is dropped afterwards.
        """
        self.stop_monitoring(container_id)
        state = self.state(container_id)
        if state.pending is not None and not state.pending.done():
            await asyncio.wait({state.pending})

        async with state.lock:
            repo = self.registry.remove_shadow_repo(container_id)
            if repo is not None:
                await repo.cleanup()

        if self._states.get(container_id) is state and not state.lock.locked():
            del self._states[container_id]
        log.info("Released container %s", container_id[:12])

    def close(self) -> None:
        for container_id in list(self._states):
            self.stop_monitoring(container_id)
        for task in list(self._background):
            task.cancel()
        self._states.clear()
