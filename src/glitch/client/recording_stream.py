"""Producer side of the transport.

``RecordingStream`` mirrors everything the producer has recorded so it can
replay the full state after every (re)connect. Instrumentation hooks call
``insert``/``remove``/``create_entity``/``destroy_entity`` from any thread;
those calls never block on the network. If the consumer falls behind and
the live buffer overflows, the buffer is dropped and the next send is a
full resync instead.

Usage:

    async with RecordingStream("ws://127.0.0.1:9870/ws/producer") as stream:
        stream.insert(1, Node(name="src", kind="videotestsrc"))
        stream.insert(2, Port(direction="output", owner=1, name="src"))
"""

import asyncio
import json
import logging
import threading
import time
from collections import deque
from typing import Any

import aiohttp

from glitch.core.components import Component, component_type
from glitch.core.errors import TransportError
from glitch.core.mutations import (
    CreateEntity,
    DestroyEntity,
    Hello,
    SetComponent,
    SyncBegin,
    SyncEnd,
    UnsetComponent,
    batch_envelope,
    encode_envelope,
    mutation_envelope,
)

logger = logging.getLogger(__name__)

DEFAULT_URL = "ws://127.0.0.1:9870/ws/producer"
DEFAULT_BUFFER_SIZE = 2048
SYNC_CHUNK_SIZE = 512


class RecordingStream:
    """Streams entity/component mutations to a consumer, reconnecting forever."""

    def __init__(
        self,
        url: str = DEFAULT_URL,
        producer_name: str = "glitch-producer",
        connect_timeout: float = 10.0,
        ready_timeout: float = 10.0,
        reconnect_delay: float = 0.5,
        max_reconnect_delay: float = 10.0,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
    ):
        self.url = url
        self.producer_name = producer_name
        self.connect_timeout = connect_timeout
        self.ready_timeout = ready_timeout
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self.buffer_size = buffer_size

        self._session: aiohttp.ClientSession | None = None
        self.ws: aiohttp.ClientWebSocketResponse | None = None
        self._connection_id: str | None = None
        self._connected = False

        # Mirror of recorded state, per-entity sequence numbers and the live
        # buffer are shared with recording threads.
        self._lock = threading.Lock()
        self._state: dict[int, dict[str, Component]] = {}
        self._seq: dict[int, int] = {}
        self._pending: deque = deque()
        self._resync_needed = False

        self._loop: asyncio.AbstractEventLoop | None = None
        self._wakeup: asyncio.Event | None = None
        self._stop_event: asyncio.Event | None = None
        self._task: asyncio.Task | None = None

        self._stats: dict[str, Any] = {
            "connects": 0,
            "connect_failures": 0,
            "resyncs": 0,
            "mutations_sent": 0,
            "buffer_overflows": 0,
            "connected_at": None,
        }

    @property
    def is_connected(self) -> bool:
        return self._connected and self.ws is not None and not self.ws.closed

    # Recording API (thread-safe)

    def create_entity(self, entity: int) -> None:
        self._record(entity, lambda seq: CreateEntity(entity=entity, seq=seq))

    def destroy_entity(self, entity: int) -> None:
        self._record(entity, lambda seq: DestroyEntity(entity=entity, seq=seq))

    def insert(self, entity: int, component: Component) -> None:
        """Attach or replace ``component`` on ``entity``."""
        self._record(entity, lambda seq: SetComponent.of(entity, component, seq=seq))

    def remove(self, entity: int, component: type[Component] | str) -> None:
        tag = component if isinstance(component, str) else component.tag
        component_type(tag)  # KeyError for unknown tags
        self._record(entity, lambda seq: UnsetComponent(entity=entity, component=tag, seq=seq))

    def _record(self, entity: int, build) -> None:
        with self._lock:
            seq = self._seq.get(entity, 0) + 1
            self._seq[entity] = seq
            mutation = build(seq)
            self._apply_to_mirror(mutation)
            if not self._resync_needed:
                if len(self._pending) < self.buffer_size:
                    self._pending.append(mutation)
                else:
                    self._pending.clear()
                    self._resync_needed = True
                    self._stats["buffer_overflows"] += 1
        self._wake()

    def _apply_to_mirror(self, mutation) -> None:
        if isinstance(mutation, CreateEntity):
            self._state.setdefault(mutation.entity, {})
        elif isinstance(mutation, DestroyEntity):
            self._state.pop(mutation.entity, None)
        elif isinstance(mutation, SetComponent):
            self._state.setdefault(mutation.entity, {})[mutation.component] = mutation.parsed
        else:
            self._state.get(mutation.entity, {}).pop(mutation.component, None)

    def _wake(self) -> None:
        loop, wakeup = self._loop, self._wakeup
        if loop is None or wakeup is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(wakeup.set)

    def _take_full_state(self) -> list:
        """Drain the live buffer and return the mirror as fresh mutations.

        Sequence numbers restart because the consumer drops its watermarks
        at the start of every sync.
        """
        with self._lock:
            self._pending.clear()
            self._resync_needed = False
            self._seq = {}
            mutations: list = []
            for entity, components in self._state.items():
                seq = 1
                mutations.append(CreateEntity(entity=entity, seq=seq))
                for component in components.values():
                    seq += 1
                    mutations.append(SetComponent.of(entity, component, seq=seq))
                self._seq[entity] = seq
            return mutations

    # Connection lifecycle

    async def start(self) -> None:
        if self._task is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run())

    async def close(self) -> None:
        """Stop streaming and release the connection and HTTP session."""
        if self._stop_event is not None:
            self._stop_event.set()
        self._wake()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._cleanup()
        logger.info("Recording stream closed")

    async def __aenter__(self) -> "RecordingStream":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _run(self) -> None:
        delay = self.reconnect_delay
        while not self._stop_event.is_set():
            try:
                await self._connect()
                delay = self.reconnect_delay
                await self._stream()
            except (aiohttp.ClientError, OSError, TimeoutError, ValueError, TransportError) as e:
                self._stats["connect_failures"] += 1
                logger.warning(f"Connection to {self.url} lost: {e}")
            finally:
                await self._cleanup()

            if self._stop_event.is_set():
                break
            logger.info(f"Reconnecting to {self.url} in {delay:.1f}s")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except TimeoutError:
                pass
            delay = min(delay * 2, self.max_reconnect_delay)

    async def _connect(self) -> None:
        logger.info(f"Connecting to consumer at {self.url}...")
        self._session = aiohttp.ClientSession()
        try:
            self.ws = await asyncio.wait_for(
                self._session.ws_connect(self.url, heartbeat=30.0),
                timeout=self.connect_timeout,
            )
        except TimeoutError:
            raise TransportError(f"Timeout connecting to {self.url}") from None

        # Wait for "ready" message
        try:
            msg = await asyncio.wait_for(self.ws.receive(), timeout=self.ready_timeout)
        except TimeoutError:
            raise TransportError("Timeout waiting for 'ready' from consumer") from None
        if msg.type != aiohttp.WSMsgType.TEXT:
            raise TransportError(f"Unexpected message type: {msg.type}")
        data = json.loads(msg.data)
        if data.get("type") != "ready":
            raise TransportError(f"Expected 'ready' message, got: {data}")
        self._connection_id = data.get("connection_id")

        await self.ws.send_str(encode_envelope(Hello(producer=self.producer_name)))
        self._connected = True
        self._stats["connects"] += 1
        self._stats["connected_at"] = time.time()
        logger.info(f"Consumer ready (connection_id: {self._connection_id})")

    async def _send_full_state(self) -> None:
        mutations = self._take_full_state()
        await self.ws.send_str(encode_envelope(SyncBegin()))
        for start in range(0, len(mutations), SYNC_CHUNK_SIZE):
            chunk = mutations[start : start + SYNC_CHUNK_SIZE]
            await self.ws.send_str(encode_envelope(batch_envelope(chunk)))
        await self.ws.send_str(encode_envelope(SyncEnd()))
        self._stats["resyncs"] += 1
        self._stats["mutations_sent"] += len(mutations)
        logger.info(f"Sent full state ({len(mutations)} mutations)")

    async def _stream(self) -> None:
        await self._send_full_state()
        receiver = asyncio.create_task(self._receive_loop())
        try:
            while not self._stop_event.is_set():
                with self._lock:
                    resync = self._resync_needed
                    batch = [] if resync else list(self._pending)
                    self._pending.clear()
                if resync:
                    logger.warning("Live buffer overflowed, resending full state")
                    await self._send_full_state()
                    continue
                if batch:
                    if len(batch) == 1:
                        envelope = mutation_envelope(batch[0])
                    else:
                        envelope = batch_envelope(batch)
                    await self.ws.send_str(encode_envelope(envelope))
                    self._stats["mutations_sent"] += len(batch)
                    continue

                self._wakeup.clear()
                with self._lock:
                    idle = not self._pending and not self._resync_needed
                if not idle:
                    continue
                waiter = asyncio.ensure_future(self._wakeup.wait())
                try:
                    await asyncio.wait(
                        {waiter, receiver}, return_when=asyncio.FIRST_COMPLETED
                    )
                finally:
                    waiter.cancel()
                if receiver.done():
                    raise TransportError("Connection closed by consumer")
        finally:
            receiver.cancel()
            try:
                await receiver
            except asyncio.CancelledError:
                pass

    async def _receive_loop(self) -> None:
        """Read replies until the socket closes."""
        async for msg in self.ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    data = json.loads(msg.data)
                except json.JSONDecodeError:
                    logger.warning(f"Non-JSON message from consumer: {msg.data}")
                    continue
                if data.get("type") == "error":
                    logger.warning(f"Consumer rejected a frame: {data.get('error')}")
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.error(f"Consumer WebSocket error: {self.ws.exception()}")
                break
        logger.info("Consumer WebSocket closed")

    async def _cleanup(self) -> None:
        """Clean up WebSocket and session."""
        self._connected = False
        if self.ws is not None:
            await self.ws.close()
            self.ws = None
        if self._session is not None:
            await self._session.close()
            self._session = None

    def get_status(self) -> dict[str, Any]:
        with self._lock:
            entities = len(self._state)
            buffered = len(self._pending)
        return {
            "connected": self.is_connected,
            "url": self.url,
            "connection_id": self._connection_id if self.is_connected else None,
            "entities": entities,
            "buffered": buffered,
            **{k: v for k, v in self._stats.items() if k != "connected_at"},
        }
