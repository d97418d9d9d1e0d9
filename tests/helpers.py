"""Test doubles shared by unit and integration tests."""

import asyncio
from typing import Optional


class FakeStream:
    """Stand-in for ExecStream.

    `read` hands out fed chunks in order; b"" ends the stream and an
    exception instance is raised from `read`.
    """

    def __init__(self, exec_id: str = "exec-1", chunks=None):
        self.exec_id = exec_id
        self.closed = False
        self.written: list[bytes] = []
        self._pending = list(chunks or [])
        self._queue: Optional[asyncio.Queue] = None

    @property
    def queue(self) -> asyncio.Queue:
        # Created lazily so it binds to whichever loop reads it
        if self._queue is None:
            self._queue = asyncio.Queue()
            for chunk in self._pending:
                self._queue.put_nowait(chunk)
        return self._queue

    def feed(self, chunk) -> None:
        self.queue.put_nowait(chunk)

    async def read(self, size: int = 4096) -> bytes:
        if self.closed:
            return b""
        item = await self.queue.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def write(self, data: bytes) -> None:
        self.written.append(data)

    def close(self) -> None:
        self.closed = True


def drain(subscriber) -> list:
    """Pop everything queued for a subscriber as (kind, event, data) tuples."""
    messages = []
    while not subscriber.queue.empty():
        message = subscriber.queue.get_nowait()
        messages.append((message.kind, message.event, message.data))
    return messages


async def settle(rounds: int = 5) -> None:
    """Let pending tasks on the loop run."""
    for _ in range(rounds):
        await asyncio.sleep(0)
