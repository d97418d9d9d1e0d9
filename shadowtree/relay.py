"""Terminal session relay.

One interactive TTY exec per container is shared by every browser attached
to it. Output is appended to a byte-capped history and fanned out to all
subscribers; late joiners get the history replayed after a screen clear.
Sessions outlive their subscribers and end only when the exec stream does.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

from transitions import Machine

from shadowtree.container import ExecStream

if TYPE_CHECKING:
    from shadowtree.config import Config
    from shadowtree.container import ContainerRuntime
    from shadowtree.orchestrator import SyncOrchestrator
    from shadowtree.registry import SessionRegistry

log = logging.getLogger("shadowtree.relay")

CLEAR_SCREEN = b"\x1b[2J\x1b[H"

_subscriber_ids = itertools.count(1)


class OutputHistory:
    """Recent terminal output, capped at `limit` bytes.

    Whole chunks are evicted oldest first; a single chunk larger than the
    cap keeps only its tail.
    """

    def __init__(self, limit: int):
        self.limit = limit
        self._chunks: deque[bytes] = deque()
        self.size = 0

    def append(self, chunk: bytes) -> None:
        if not chunk:
            return
        self._chunks.append(chunk)
        self.size += len(chunk)

        while self.size > self.limit and len(self._chunks) > 1:
            self.size -= len(self._chunks.popleft())

        if self.size > self.limit:
            tail = self._chunks.pop()[-self.limit:] if self.limit > 0 else b""
            self._chunks.append(tail)
            self.size = len(tail)

    def chunks(self) -> list[bytes]:
        return list(self._chunks)

    def __len__(self) -> int:
        return len(self._chunks)


@dataclass
class Outbound:
    """One queued message for a subscriber: a named event or raw output."""

    kind: str
    event: str = ""
    data: Any = None


class Subscriber:
    """A browser connection's view of a session.

    Sends never block: messages go to a per-subscriber queue that the
    connection's writer drains in order.
    """

    def __init__(self, subscriber_id: Optional[str] = None):
        self.id = subscriber_id or f"sub-{next(_subscriber_ids)}"
        self.queue: asyncio.Queue[Outbound] = asyncio.Queue()
        self.container_id: Optional[str] = None

    def send_event(self, event: str, data: Optional[dict[str, Any]] = None) -> None:
        self.queue.put_nowait(Outbound("event", event, data if data is not None else {}))

    def send_output(self, chunk: bytes) -> None:
        self.queue.put_nowait(Outbound("output", data=chunk))

    def __repr__(self) -> str:
        return f"Subscriber({self.id!r})"


class Session:
    """A live exec stream and the subscribers attached to it."""

    STATES = ["none", "active", "ended"]

    TRANSITIONS = [
        {"trigger": "activate", "source": "none", "dest": "active"},
        {"trigger": "end", "source": ["none", "active"], "dest": "ended"},
    ]

    def __init__(self, container_id: str, stream: ExecStream, history_limit: int):
        self.container_id = container_id
        self.stream = stream
        self.history = OutputHistory(history_limit)
        self.subscribers: dict[str, Subscriber] = {}
        self.pump_task: Optional[asyncio.Task] = None
        self.monitor_task: Optional[asyncio.Task] = None

        self.machine = Machine(
            model=self,
            states=self.STATES,
            transitions=self.TRANSITIONS,
            initial="none",
            auto_transitions=False,
        )

    @property
    def exec_id(self) -> str:
        return self.stream.exec_id

    def add_subscriber(self, subscriber: Subscriber, replay: bool = True) -> None:
        """Register a subscriber, replaying history to it first."""
        if replay and len(self.history):
            log.info("Replaying %d output chunks to %s", len(self.history), subscriber.id)
            subscriber.send_output(CLEAR_SCREEN)
            for chunk in self.history.chunks():
                subscriber.send_output(chunk)
        self.subscribers[subscriber.id] = subscriber
        subscriber.container_id = self.container_id

    def remove_subscriber(self, subscriber: Subscriber) -> None:
        self.subscribers.pop(subscriber.id, None)

    def publish(self, chunk: bytes) -> None:
        """Record output and deliver it to every subscriber."""
        self.history.append(chunk)
        for subscriber in list(self.subscribers.values()):
            subscriber.send_output(chunk)

    def broadcast_event(self, event: str, data: Optional[dict[str, Any]] = None) -> None:
        for subscriber in list(self.subscribers.values()):
            subscriber.send_event(event, data)


class SessionRelay:
    """Attaches subscribers to container sessions and relays terminal I/O.

    Args:
        registry: Shared session/shadow repository registry
        runtime: Container runtime adapter
        config: shadowtree config (session command, history cap, delays)
        orchestrator: Started on new sessions, stopped on teardown
    """

    def __init__(
        self,
        registry: SessionRegistry,
        runtime: ContainerRuntime,
        config: Config,
        orchestrator: SyncOrchestrator,
    ):
        self.registry = registry
        self.runtime = runtime
        self.config = config
        self.orchestrator = orchestrator
        self._background: set[asyncio.Task] = set()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def session_for(self, subscriber: Subscriber) -> Optional[Session]:
        if subscriber.container_id is None:
            return None
        session = self.registry.get_session(subscriber.container_id)
        if session is None or subscriber.id not in session.subscribers:
            return None
        return session

    async def attach(
        self,
        container_id: str,
        subscriber: Subscriber,
        cols: Optional[int] = None,
        rows: Optional[int] = None,
    ) -> Optional[Session]:
        """Attach a subscriber, starting the container's session if there is none.

        Failures are reported to the subscriber as an `error` event.

        Returns:
            The session, or None if it couldn't be started
        """
        try:
            current = self.session_for(subscriber)
            if current is not None and current.container_id != container_id:
                current.remove_subscriber(subscriber)

            session = self.registry.get_session(container_id)
            if session is None:
                session = await self._start_session(container_id, subscriber)
            else:
                log.info("Reconnecting %s to existing session %s", subscriber.id, container_id[:12])
                session.add_subscriber(subscriber)
        except Exception as e:
            log.exception("Failed to attach to container %s", container_id[:12])
            subscriber.send_event("error", {"message": str(e)})
            return None

        subscriber.send_event("attached", {"containerId": container_id})

        if cols and rows:
            self._spawn(self._delayed_resize(session, cols, rows))
        return session

    async def _start_session(self, container_id: str, subscriber: Subscriber) -> Session:
        log.info("Creating new session for container %s", container_id[:12])
        stream = await self.runtime.open_session(
            container_id,
            self.config.session_command,
            user=self.config.container_user,
            workdir=self.config.workspace_path,
            env=self.config.session_env,
        )

        existing = self.registry.get_session(container_id)
        if existing is not None:
            # Another attach won the race while the exec was starting
            stream.close()
            existing.add_subscriber(subscriber)
            return existing

        session = Session(container_id, stream, self.config.history_limit)
        session.activate()
        session.add_subscriber(subscriber, replay=False)
        self.registry.add_session(container_id, session)

        session.pump_task = self._spawn(self._pump(session))
        session.monitor_task = self._spawn(self.orchestrator.start_monitoring(container_id))
        log.info("New session started for container %s", container_id[:12])
        return session

    async def _delayed_resize(self, session: Session, cols: int, rows: int) -> None:
        await asyncio.sleep(self.config.resize_delay_ms / 1000)
        try:
            await self.runtime.resize(session.exec_id, cols, rows)
        except Exception as e:
            log.debug("Ignoring initial resize error: %s", e)

    async def _pump(self, session: Session) -> None:
        """Read the stream until it ends, fanning chunks out, then tear down."""
        try:
            while True:
                chunk = await session.stream.read()
                if not chunk:
                    break
                session.publish(chunk)
        except OSError as e:
            log.error("Stream error for container %s: %s", session.container_id[:12], e)
            session.broadcast_event("error", {"message": str(e)})
        else:
            session.broadcast_event("container-disconnected")

        await self._teardown(session)

    async def _teardown(self, session: Session) -> None:
        container_id = session.container_id
        if session.state != "ended":
            session.end()
        session.stream.close()
        if self.registry.get_session(container_id) is session:
            self.registry.remove_session(container_id)

        # The session's initial sync may still be running
        if session.monitor_task is not None and not session.monitor_task.done():
            await asyncio.wait({session.monitor_task})
        await self.orchestrator.release(container_id)
        log.info("Session for container %s ended", container_id[:12])

    async def input(self, subscriber: Subscriber, data: bytes) -> None:
        """Write raw input from any attached subscriber to the session stream."""
        session = self.session_for(subscriber)
        if session is None or session.state != "active":
            return
        try:
            await session.stream.write(data)
        except OSError as e:
            log.warning("Failed to write input to %s: %s", session.container_id[:12], e)

    async def resize(self, subscriber: Subscriber, cols: int, rows: int) -> None:
        session = self.session_for(subscriber)
        if session is None:
            return
        try:
            await self.runtime.resize(session.exec_id, cols, rows)
        except Exception as e:
            log.warning("Failed to resize terminal: %s", e)

    def detach(self, subscriber: Subscriber) -> None:
        """Drop a subscriber from every session. Sessions keep running."""
        for session in self.registry.sessions():
            session.remove_subscriber(subscriber)
        subscriber.container_id = None

    async def close(self) -> None:
        """End every session and remove every shadow repository."""
        for session in self.registry.sessions():
            if session.pump_task is not None:
                session.pump_task.cancel()
            if session.state != "ended":
                session.end()
            session.stream.close()
            self.registry.remove_session(session.container_id)

        # Running syncs and teardowns finish before shadow trees go away
        if self._background:
            await asyncio.wait(set(self._background))

        for repo in self.registry.shadow_repos():
            await self.orchestrator.release(repo.container_id)
        self.orchestrator.close()
