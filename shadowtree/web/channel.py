"""Websocket event channel.

Text frames carry JSON `{"event": name, "data": {...}}`; binary frames carry
raw terminal bytes (output server to client, input client to server).
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any, Optional

from starlette.websockets import WebSocket, WebSocketDisconnect

from shadowtree.relay import Subscriber
from shadowtree.shadow_repo import ShadowRepoNotFoundError

if TYPE_CHECKING:
    from shadowtree.orchestrator import SyncOrchestrator
    from shadowtree.registry import SessionRegistry
    from shadowtree.relay import SessionRelay

logger = logging.getLogger("shadowtree.web")


class EventChannel:
    """Dispatches client events to the relay and the shadow repositories."""

    def __init__(self, relay: SessionRelay, orchestrator: SyncOrchestrator, registry: SessionRegistry):
        self.relay = relay
        self.orchestrator = orchestrator
        self.registry = registry
        self._tasks: set[asyncio.Task] = set()

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def write_outbound(self, websocket: WebSocket, subscriber: Subscriber) -> None:
        """Drain a subscriber's queue into its websocket, in order.

        A failed send detaches the subscriber so nothing more is queued for it.
        """
        while True:
            message = await subscriber.queue.get()
            try:
                if message.kind == "output":
                    await websocket.send_bytes(message.data)
                else:
                    await websocket.send_text(json.dumps({"event": message.event, "data": message.data}))
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.debug("Stopped writing to %s: %s", subscriber.id, e)
                self.relay.detach(subscriber)
                return

    async def serve(self, websocket: WebSocket) -> None:
        """Run one browser connection until it closes."""
        subscriber = Subscriber()
        writer = asyncio.create_task(self.write_outbound(websocket, subscriber))
        logger.info("Client %s connected", subscriber.id)

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                if message.get("bytes") is not None:
                    await self.relay.input(subscriber, message["bytes"])
                elif message.get("text") is not None:
                    await self.handle_text(subscriber, message["text"])
        except WebSocketDisconnect:
            pass
        finally:
            self.relay.detach(subscriber)
            writer.cancel()
            logger.info("Client %s disconnected", subscriber.id)

    async def handle_text(self, subscriber: Subscriber, text: str) -> None:
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            logger.warning("Ignoring malformed message from %s", subscriber.id)
            return
        if not isinstance(payload, dict):
            return
        data = payload.get("data")
        await self.dispatch(subscriber, str(payload.get("event", "")), data if isinstance(data, dict) else {})

    async def dispatch(self, subscriber: Subscriber, event: str, data: dict[str, Any]) -> None:
        """Route one client event."""
        if event == "attach":
            container_id = data.get("containerId")
            if not container_id:
                subscriber.send_event("error", {"message": "containerId is required"})
                return
            await self.relay.attach(container_id, subscriber, _as_int(data.get("cols")), _as_int(data.get("rows")))
        elif event == "input":
            raw = data.get("data", "")
            await self.relay.input(subscriber, raw.encode("utf-8") if isinstance(raw, str) else bytes(raw))
        elif event == "resize":
            cols, rows = _as_int(data.get("cols")), _as_int(data.get("rows"))
            if cols and rows:
                await self.relay.resize(subscriber, cols, rows)
        elif event == "commit-changes":
            self._spawn(self.commit(subscriber, data.get("containerId", ""), data.get("commitMessage", "")))
        elif event == "push-changes":
            self._spawn(self.push(subscriber, data.get("containerId", ""), data.get("branchName", "")))
        else:
            logger.debug("Ignoring unknown event %r", event)

    async def commit(self, subscriber: Subscriber, container_id: str, message: str) -> None:
        """Final sync, then commit everything in the shadow repository."""
        try:
            repo = self.registry.get_shadow_repo(container_id)
            if repo is None:
                raise ShadowRepoNotFoundError(container_id)

            async def final_sync_and_commit() -> None:
                await repo.sync_from_container()
                await repo.commit(message)

            await self.orchestrator.run_exclusive(container_id, final_sync_and_commit)
        except Exception as e:
            logger.exception("Commit failed for %s", container_id[:12])
            subscriber.send_event("commit-error", {"message": str(e)})
            return
        subscriber.send_event("commit-success", {"message": "Changes committed successfully"})

    async def push(self, subscriber: Subscriber, container_id: str, branch: str) -> None:
        """Final sync, then push the shadow repository to origin."""
        try:
            repo = self.registry.get_shadow_repo(container_id)
            if repo is None:
                raise ShadowRepoNotFoundError(container_id)

            async def final_sync_and_push() -> str:
                await repo.sync_from_container()
                return await repo.push(branch)

            await self.orchestrator.run_exclusive(container_id, final_sync_and_push)
        except Exception as e:
            logger.exception("Push failed for %s", container_id[:12])
            subscriber.send_event("push-error", {"message": str(e)})
            return
        subscriber.send_event("push-success", {"message": "Changes pushed successfully"})

    def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None
