"""
Event Bus -- per-key push channels for streamed process output.

Every producer (shell executor, service runner, assistant session manager)
publishes events under a string key; every consumer subscribes to the keys
it cares about and reads an async stream of events:

    from tools.events import event_bus, service_key

    with event_bus.subscribe(service_key("web")) as sub:
        async for event in sub:
            print(event.text)
            if event.is_complete:
                break

Events published under one key reach that key's subscribers in publish
order. Nothing is promised about ordering across keys.
"""

import asyncio
import logging
import threading
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def service_key(service_id: str) -> str:
    return f"service:{service_id}"


def shell_key(token: str) -> str:
    return f"shell:{token}"


def assistant_key(conversation_id: str) -> str:
    return f"assistant:{conversation_id}"


@dataclass(frozen=True)
class OutputEvent:
    """One chunk (or the completion marker) of a process's output."""
    source_id: str
    text: Optional[str] = None
    is_stderr: bool = False
    is_complete: bool = False
    exit_code: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


_CLOSED = object()


class Subscription:
    """
    A single consumer's channel for one key.

    Backed by an asyncio.Queue. With ``maxsize`` set, a slow consumer loses
    the oldest pending events instead of blocking the producer.
    """

    def __init__(self, bus: "EventBus", key: str, maxsize: int = 0):
        self.bus = bus
        self.key = key
        self.dropped = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, event: Any) -> None:
        if self._closed:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self.dropped += 1
            self._queue.put_nowait(event)

    async def get(self, timeout: Optional[float] = None) -> Any:
        """Wait for the next event. Raises asyncio.TimeoutError on timeout."""
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    def pending(self) -> List[Any]:
        """Drain whatever is queued right now without waiting."""
        items = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is not _CLOSED:
                items.append(item)
        return items

    def close(self) -> None:
        if self._closed:
            return
        self.bus._remove(self)
        self._closed = True
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self._queue.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self):
        return await self.get()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


class EventBus:
    """Routes events to the subscriptions registered for their key."""

    def __init__(self):
        self._subscriptions: Dict[str, List[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, key: str, maxsize: int = 0) -> Subscription:
        sub = Subscription(self, key, maxsize=maxsize)
        with self._lock:
            self._subscriptions.setdefault(key, []).append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subscriptions.get(sub.key, [])
            if sub in subs:
                subs.remove(sub)
            if not subs:
                self._subscriptions.pop(sub.key, None)

    def has_subscribers(self, key: str) -> bool:
        with self._lock:
            return bool(self._subscriptions.get(key))

    def publish(self, key: str, event: Any) -> int:
        """Deliver an event to every subscriber of ``key``. Returns the count."""
        with self._lock:
            targets = list(self._subscriptions.get(key, ()))
        for sub in targets:
            sub.put(event)
        if not targets:
            logger.debug("No subscribers for %s, event dropped", key)
        return len(targets)


# Module-level singleton
event_bus = EventBus()
