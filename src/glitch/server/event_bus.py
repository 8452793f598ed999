"""Graph and connectivity notifications for the rendering side.

The session emits an event whenever it publishes a new render view or a
producer comes and goes. Renderers follow ``GET /api/v1/events/stream``
and fetch ``/api/v1/graph`` when a ``graph_updated`` event arrives.

``emit`` is safe to call from the session's worker thread: delivery is
handed to the server loop with ``call_soon_threadsafe``.
"""

import asyncio
import logging
import threading
import time
from collections.abc import AsyncGenerator, Iterable
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    GRAPH_UPDATED = "graph_updated"
    PRODUCER_CONNECTED = "producer_connected"
    PRODUCER_DISCONNECTED = "producer_disconnected"
    PROTOCOL_VIOLATION = "protocol_violation"
    LAYOUT_ANOMALY = "layout_anomaly"


class GraphEvent(BaseModel):
    event_type: EventType
    timestamp: int = Field(
        default_factory=lambda: int(time.time() * 1000),
        description="Milliseconds since the epoch",
    )
    connection_id: str | None = None
    topology_version: int | None = None
    revision: int | None = None
    error: dict[str, Any] | None = None

    def to_sse(self) -> str:
        return f"data: {self.model_dump_json(exclude_none=True)}\n\n"


class _Subscriber:
    def __init__(self, types: frozenset[EventType] | None, maxsize: int):
        self.types = types
        self.queue: asyncio.Queue[GraphEvent] = asyncio.Queue(maxsize=maxsize)

    def wants(self, event: GraphEvent) -> bool:
        return self.types is None or event.event_type in self.types

    def offer(self, event: GraphEvent) -> bool:
        """Queue ``event``; a full queue replaces queued graph updates with this one."""
        try:
            self.queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            pass
        if event.event_type is not EventType.GRAPH_UPDATED:
            return False
        for queued in _drain(self.queue):
            if queued.event_type is not EventType.GRAPH_UPDATED:
                self.queue.put_nowait(queued)
        if self.queue.full():
            return False
        self.queue.put_nowait(event)
        return True


def _drain(queue: asyncio.Queue) -> list:
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


class EventBus:
    """Fan-out of GraphEvents to async subscribers.

    Each subscriber has a bounded queue. Only the latest ``graph_updated``
    matters to a renderer, so a full queue replaces queued graph updates
    with the new one; other events are dropped with a warning.
    """

    def __init__(self, max_queue_size: int = 100):
        self._subscribers: list[_Subscriber] = []
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._max_queue_size = max_queue_size
        self.dropped = 0

    def set_loop(self, loop: asyncio.AbstractEventLoop):
        """Bind the loop events are delivered on. Called during startup."""
        self._loop = loop

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def _deliver(self, event: GraphEvent):
        with self._lock:
            subscribers = [s for s in self._subscribers if s.wants(event)]

        for subscriber in subscribers:
            if not subscriber.offer(event):
                self.dropped += 1
                logger.warning(
                    f"Event subscriber queue full, dropping {event.event_type.value} event"
                )

    def emit(self, event_type: EventType | str, **fields: Any) -> None:
        """Emit an event from any thread.

        Does nothing until a running loop has been bound.
        """
        if not self._loop or not self._loop.is_running():
            return
        event = GraphEvent(event_type=event_type, **fields)
        self._loop.call_soon_threadsafe(self._deliver, event)
        logger.debug(f"Emitted event: {event.event_type.value}")

    async def emit_async(self, event_type: EventType | str, **fields: Any) -> None:
        """Emit an event from a coroutine running on the bus loop."""
        self._deliver(GraphEvent(event_type=event_type, **fields))

    async def subscribe(
        self, types: Iterable[EventType | str] | None = None
    ) -> AsyncGenerator[GraphEvent, None]:
        """Yield events as they arrive, optionally only the given types.

        The subscription is removed when the generator is closed.
        """
        wanted = frozenset(EventType(t) for t in types) if types is not None else None
        subscriber = _Subscriber(wanted, self._max_queue_size)
        with self._lock:
            self._subscribers.append(subscriber)
        try:
            while True:
                yield await subscriber.queue.get()
        finally:
            with self._lock:
                self._subscribers.remove(subscriber)

    async def subscribe_sse(
        self, types: Iterable[EventType | str] | None = None
    ) -> AsyncGenerator[str, None]:
        async for event in self.subscribe(types):
            yield event.to_sse()


_event_bus: EventBus | None = None


def get_event_bus() -> EventBus | None:
    return _event_bus


def set_event_bus(bus: EventBus | None):
    global _event_bus
    _event_bus = bus


def emit_event(event_type: EventType | str, **fields: Any) -> None:
    """Emit on the global bus. No-op before the server has started."""
    bus = get_event_bus()
    if bus:
        bus.emit(event_type, **fields)
