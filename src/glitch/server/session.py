"""Graph session: the single writer of the store.

Transport connections only enqueue work. One model task drains the queue,
applies every queued mutation in a tick, relays out in the same tick when
topology changed, and then publishes a new ``RenderView``. Readers (HTTP
handlers, SSE consumers) only ever see published views, never a store
halfway through a tick.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from glitch.core.errors import LayoutAnomaly, ProtocolViolation
from glitch.core.graph_model import GraphModel, GraphSnapshot
from glitch.core.layout import LayeredLayout, LayoutEngine, LayoutResult, SizeHints
from glitch.core.layout.geometry import Vec2
from glitch.core.store import EntityStore

from .event_bus import EventBus, EventType

logger = logging.getLogger(__name__)


class ItemKind(str, Enum):
    MUTATION = "mutation"
    SYNC_BEGIN = "sync_begin"
    SYNC_END = "sync_end"
    SYNC_ABORT = "sync_abort"
    RESET = "reset"
    SIZE_HINTS = "size_hints"


@dataclass
class SessionItem:
    kind: ItemKind
    payload: Any = None
    connection_id: str | None = None


@dataclass(frozen=True)
class RenderView:
    """Snapshot and layout published together after a tick."""

    snapshot: GraphSnapshot
    layout: LayoutResult
    published_at: float = field(default_factory=time.time)


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    SYNCING = "syncing"


class GraphSession:
    def __init__(
        self,
        layout: LayeredLayout | None = None,
        size_hints: SizeHints | None = None,
        event_bus: EventBus | None = None,
        max_queue_size: int = 0,
    ):
        self.event_bus = event_bus
        self.store = EntityStore(on_violation=self._on_violation)
        self.model = GraphModel(self.store)
        self.size_hints = size_hints or SizeHints()
        self.layout_engine = LayoutEngine(
            layout,
            size_hints=self.size_hints,
            store=self.store,
            on_anomaly=self._on_anomaly,
        )
        self._queue: asyncio.Queue[SessionItem] = asyncio.Queue(maxsize=max_queue_size)
        self._view_lock = threading.Lock()
        self._view = RenderView(snapshot=self.model.snapshot(), layout=LayoutResult())
        self._last_revision = -1
        self._syncing: str | None = None

        self._producers: set[str] = set()
        self._stats = {
            "connections": 0,
            "disconnects": 0,
            "ticks": 0,
            "mutations": 0,
            "relayouts": 0,
        }

    # Queue side, called by transports

    def submit(self, item: SessionItem) -> None:
        self._queue.put_nowait(item)

    def submit_mutation(self, payload: Any, connection_id: str | None = None) -> None:
        self.submit(SessionItem(ItemKind.MUTATION, payload, connection_id))

    def begin_sync(self, connection_id: str | None = None) -> None:
        self.submit(SessionItem(ItemKind.SYNC_BEGIN, connection_id=connection_id))

    def end_sync(self, connection_id: str | None = None) -> None:
        self.submit(SessionItem(ItemKind.SYNC_END, connection_id=connection_id))

    def request_reset(self) -> None:
        self.submit(SessionItem(ItemKind.RESET))

    def update_size_hints(self, sizes: dict[int, Vec2]) -> None:
        self.submit(SessionItem(ItemKind.SIZE_HINTS, sizes))

    def producer_connected(self, connection_id: str) -> None:
        self._producers.add(connection_id)
        self._stats["connections"] += 1
        logger.info(f"Producer connected: {connection_id}")
        self._emit(EventType.PRODUCER_CONNECTED, connection_id=connection_id)

    def producer_disconnected(self, connection_id: str) -> None:
        self._producers.discard(connection_id)
        self._stats["disconnects"] += 1
        logger.info(f"Producer disconnected: {connection_id}")
        if self._syncing == connection_id:
            self.submit(SessionItem(ItemKind.SYNC_ABORT, connection_id=connection_id))
        self._emit(EventType.PRODUCER_DISCONNECTED, connection_id=connection_id)

    # Model task

    async def run(self) -> None:
        """Drain the queue forever, one tick per available batch."""
        logger.info("Graph session model task started")
        try:
            while True:
                item = await self._queue.get()
                items = [item]
                while not self._queue.empty():
                    items.append(self._queue.get_nowait())
                self._tick(items)
        finally:
            logger.info("Graph session model task stopped")

    def process_pending(self) -> bool:
        """Run one tick over everything queued. Returns True if anything ran."""
        items = []
        while not self._queue.empty():
            items.append(self._queue.get_nowait())
        if not items:
            return False
        self._tick(items)
        return True

    def apply_now(self, message: Any) -> RenderView:
        """Apply a single mutation in its own tick and return the new view."""
        self._tick([SessionItem(ItemKind.MUTATION, message)])
        return self.view()

    def _tick(self, items: list[SessionItem]) -> None:
        topology_changed = False
        sizes_changed = False
        for item in items:
            try:
                if item.kind is ItemKind.MUTATION:
                    self._stats["mutations"] += 1
                    result = self.model.apply(item.payload)
                    topology_changed = topology_changed or result.topology_changed
                elif item.kind is ItemKind.SYNC_BEGIN:
                    if self._syncing is not None:
                        logger.warning(
                            f"Sync from {item.connection_id} restarts unfinished sync "
                            f"from {self._syncing}"
                        )
                    self._syncing = item.connection_id or ""
                    self.model.begin_resync()
                elif item.kind is ItemKind.SYNC_END:
                    if self._syncing is None or self._syncing != (item.connection_id or ""):
                        logger.warning(
                            f"Ignoring sync end from {item.connection_id}: open sync "
                            f"belongs to {self._syncing}"
                        )
                        continue
                    self._syncing = None
                    topology_changed = self.model.end_resync() or topology_changed
                elif item.kind is ItemKind.SYNC_ABORT:
                    if self._syncing == item.connection_id:
                        self._syncing = None
                        self.model.abort_resync()
                        logger.warning(
                            f"Sync from {item.connection_id} aborted by disconnect"
                        )
                elif item.kind is ItemKind.RESET:
                    self._syncing = None
                    topology_changed = self.model.reset().topology_changed or topology_changed
                elif item.kind is ItemKind.SIZE_HINTS:
                    self.size_hints.update(item.payload)
                    sizes_changed = True
            except Exception as e:
                # The ingest loop must survive anything a single item does.
                logger.error(f"Error processing {item.kind.value} item: {e}", exc_info=True)

        self._stats["ticks"] += 1
        if topology_changed:
            self.layout_engine.mark_dirty()

        revision = self.store.revision
        if not (topology_changed or sizes_changed or revision != self._last_revision):
            return

        snapshot = self.model.snapshot()
        if topology_changed or sizes_changed or self._last_revision < 0:
            layout = self.layout_engine.relayout(snapshot)
            self._stats["relayouts"] += 1
        else:
            layout = self.layout_engine.result
        self._last_revision = revision
        self._publish(RenderView(snapshot=snapshot, layout=layout))

    def _publish(self, view: RenderView) -> None:
        with self._view_lock:
            self._view = view
        self._emit(
            EventType.GRAPH_UPDATED,
            topology_version=view.snapshot.topology_version,
            revision=view.snapshot.revision,
        )

    def view(self) -> RenderView:
        with self._view_lock:
            return self._view

    # Status

    @property
    def connection_status(self) -> ConnectionStatus:
        if self._syncing is not None:
            return ConnectionStatus.SYNCING
        if self._producers:
            return ConnectionStatus.CONNECTED
        return ConnectionStatus.DISCONNECTED

    @property
    def queue_size(self) -> int:
        return self._queue.qsize()

    def status(self) -> dict[str, Any]:
        view = self.view()
        return {
            "connection": self.connection_status.value,
            "producers": len(self._producers),
            "reconnects": max(self._stats["connections"] - 1, 0),
            "disconnects": self._stats["disconnects"],
            "protocol_violations": self.store.violation_count,
            "stale_messages": self.store.stale_count,
            "layout_anomalies": self.layout_engine.anomaly_count,
            "layout_state": self.layout_engine.state.value,
            "topology_version": view.snapshot.topology_version,
            "entities": len(self.store),
            "queued": self.queue_size,
        }

    def _emit(self, event_type: EventType, **kwargs: Any) -> None:
        if self.event_bus is not None:
            self.event_bus.emit(event_type, **kwargs)

    def _on_violation(self, violation: ProtocolViolation) -> None:
        self._emit(EventType.PROTOCOL_VIOLATION, error=violation.to_dict())

    def _on_anomaly(self, anomaly: LayoutAnomaly) -> None:
        self._emit(EventType.LAYOUT_ANOMALY, error={"message": str(anomaly)})
