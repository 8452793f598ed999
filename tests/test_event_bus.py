"""Tests for graph event delivery."""

import asyncio
import json
import threading
from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError

from glitch.server.event_bus import (
    EventBus,
    EventType,
    GraphEvent,
    emit_event,
    get_event_bus,
    set_event_bus,
)


async def next_event(agen):
    """Start waiting on ``agen`` and give the subscription a chance to register."""
    task = asyncio.ensure_future(agen.__anext__())
    await asyncio.sleep(0)
    return task


class TestGraphEvent:
    def test_sse_line_omits_unset_fields(self):
        event = GraphEvent(event_type="producer_connected", connection_id="c1")

        line = event.to_sse()

        assert line.startswith("data: ")
        assert line.endswith("\n\n")
        payload = json.loads(line[len("data: ") :])
        assert payload["event_type"] == "producer_connected"
        assert payload["connection_id"] == "c1"
        assert "revision" not in payload
        assert isinstance(payload["timestamp"], int)

    def test_unknown_type_is_rejected(self):
        with pytest.raises(ValidationError):
            GraphEvent(event_type="frame_ready")


class TestEventBus:
    def test_emit_without_loop_is_noop(self):
        bus = EventBus()
        bus.emit(EventType.GRAPH_UPDATED)
        assert bus.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_subscriber_receives_event(self):
        bus = EventBus()
        bus.set_loop(asyncio.get_running_loop())
        agen = bus.subscribe()
        pending = await next_event(agen)

        bus.emit(EventType.GRAPH_UPDATED, topology_version=3, revision=7)
        event = await asyncio.wait_for(pending, timeout=1.0)

        assert event.event_type is EventType.GRAPH_UPDATED
        assert event.topology_version == 3
        assert event.revision == 7
        assert bus.subscriber_count == 1

        await agen.aclose()
        assert bus.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_emit_from_another_thread(self):
        bus = EventBus()
        bus.set_loop(asyncio.get_running_loop())
        agen = bus.subscribe()
        pending = await next_event(agen)

        thread = threading.Thread(
            target=bus.emit, args=("producer_connected",), kwargs={"connection_id": "c1"}
        )
        thread.start()
        thread.join()
        event = await asyncio.wait_for(pending, timeout=1.0)

        assert event.event_type is EventType.PRODUCER_CONNECTED
        assert event.connection_id == "c1"
        await agen.aclose()

    @pytest.mark.asyncio
    async def test_type_filter(self):
        bus = EventBus()
        agen = bus.subscribe(types=["layout_anomaly"])
        pending = await next_event(agen)

        await bus.emit_async(EventType.GRAPH_UPDATED, topology_version=1)
        await bus.emit_async(EventType.LAYOUT_ANOMALY, error={"message": "boom"})
        event = await asyncio.wait_for(pending, timeout=1.0)

        assert event.event_type is EventType.LAYOUT_ANOMALY
        assert event.error == {"message": "boom"}
        await agen.aclose()

    @pytest.mark.asyncio
    async def test_full_queue_keeps_latest_graph_update(self):
        bus = EventBus(max_queue_size=2)
        agen = bus.subscribe()
        pending = await next_event(agen)

        await bus.emit_async(EventType.PRODUCER_CONNECTED, connection_id="c1")
        for version in range(1, 5):
            await bus.emit_async(EventType.GRAPH_UPDATED, topology_version=version)

        first = await asyncio.wait_for(pending, timeout=1.0)
        second = await asyncio.wait_for(agen.__anext__(), timeout=1.0)

        assert first.event_type is EventType.PRODUCER_CONNECTED
        assert second.topology_version == 4
        assert bus.dropped == 0
        await agen.aclose()

    @pytest.mark.asyncio
    async def test_full_queue_drops_other_events(self, caplog):
        bus = EventBus(max_queue_size=1)
        agen = bus.subscribe()
        pending = await next_event(agen)

        await bus.emit_async(EventType.PRODUCER_CONNECTED, connection_id="c1")
        await bus.emit_async(EventType.PRODUCER_CONNECTED, connection_id="c2")
        await bus.emit_async(EventType.PRODUCER_CONNECTED, connection_id="c3")

        event = await asyncio.wait_for(pending, timeout=1.0)
        assert event.connection_id == "c1"
        assert bus.dropped == 2
        assert "queue full, dropping producer_connected" in caplog.text
        await agen.aclose()

    @pytest.mark.asyncio
    async def test_sse_subscription(self):
        bus = EventBus()
        agen = bus.subscribe_sse()
        pending = await next_event(agen)

        await bus.emit_async("protocol_violation", error={"kind": "malformed"})
        line = await asyncio.wait_for(pending, timeout=1.0)

        payload = json.loads(line[len("data: ") :])
        assert payload["error"] == {"kind": "malformed"}
        await agen.aclose()


class TestGlobalEventBus:
    def test_emit_event_uses_global_bus(self):
        bus = MagicMock()
        set_event_bus(bus)
        try:
            assert get_event_bus() is bus
            emit_event(EventType.PRODUCER_DISCONNECTED, connection_id="c1")
        finally:
            set_event_bus(None)

        bus.emit.assert_called_once_with(
            EventType.PRODUCER_DISCONNECTED, connection_id="c1"
        )

    def test_emit_event_without_bus_is_noop(self):
        set_event_bus(None)
        emit_event(EventType.GRAPH_UPDATED)
