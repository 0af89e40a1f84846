"""
WebSocket fan-out for conversion progress.

Every connected client receives every event. Publishing is synchronous and
safe to call from codec worker threads; delivery happens on the event loop
that owns each connection.
"""

import asyncio
import json
import logging
import threading
from typing import Optional, Protocol

from .interfaces import ProgressEvent

logger = logging.getLogger(__name__)

DEFAULT_BACKLOG = 100


class TextSocket(Protocol):
    async def accept(self) -> None:
        ...

    async def send_text(self, data: str) -> None:
        ...


class Listener:
    """One connected client and its pending outbound messages."""

    def __init__(self, websocket: TextSocket, loop: asyncio.AbstractEventLoop, backlog: int) -> None:
        self.websocket = websocket
        self.closed = False
        self.dropped = 0
        self.task: Optional[asyncio.Task] = None
        self._loop = loop
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=backlog)

    def offer(self, message: str) -> None:
        if self.closed:
            return
        try:
            self._loop.call_soon_threadsafe(self._enqueue, message)
        except RuntimeError:
            # owning loop already closed
            self.closed = True

    def _enqueue(self, message: str) -> None:
        if self.closed:
            return
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.debug("listener backlogged, dropped progress message")

    async def next_message(self) -> str:
        return await self._queue.get()

    def message_sent(self) -> None:
        self._queue.task_done()

    async def drained(self) -> None:
        await self._queue.join()

    def discard(self) -> None:
        self.closed = True
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()


class ProgressBroadcaster:
    """Manage WebSocket connections for progress updates."""

    def __init__(self, *, backlog: int = DEFAULT_BACKLOG) -> None:
        self._backlog = backlog
        self._lock = threading.Lock()
        self._listeners: list[Listener] = []

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    async def connect(self, websocket: TextSocket) -> Listener:
        """Accept a new WebSocket connection and start its sender task."""
        await websocket.accept()
        listener = Listener(websocket, asyncio.get_running_loop(), self._backlog)
        listener.task = asyncio.create_task(self._pump(listener))
        with self._lock:
            self._listeners.append(listener)
        logger.info("progress listener connected (%d active)", self.listener_count)
        return listener

    def disconnect(self, listener: Listener) -> None:
        """Remove a WebSocket connection."""
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)
            else:
                return
        listener.discard()
        if listener.task is not None and listener.task is not _current_task():
            listener.task.cancel()
        logger.info("progress listener disconnected (%d active)", self.listener_count)

    def publish(self, event: ProgressEvent) -> None:
        """Queue the event for every currently connected listener."""
        message = json.dumps(event.to_message())
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener.offer(message)

    async def flush(self) -> None:
        """Wait until every listener has written what was queued so far."""
        # Let call_soon_threadsafe callbacks land in the queues first.
        await asyncio.sleep(0)
        with self._lock:
            listeners = list(self._listeners)
        await asyncio.gather(*(listener.drained() for listener in listeners))

    async def close(self) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            self.disconnect(listener)

    async def _pump(self, listener: Listener) -> None:
        try:
            while True:
                message = await listener.next_message()
                try:
                    await listener.websocket.send_text(message)
                finally:
                    listener.message_sent()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug("dropping progress listener after send failure: %s", exc)
            self.disconnect(listener)


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
