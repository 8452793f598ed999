"""WebSocket ingest endpoint for producers.

Protocol per connection:

1. The server accepts and sends ``{"type": "ready", "connection_id": ...}``.
2. The producer sends ``sync_begin``, its full state as ``mutation`` or
   ``batch`` envelopes, then ``sync_end``. Entities not re-announced are
   destroyed when the sync ends.
3. Live ``mutation``/``batch`` envelopes follow. ``ping`` is answered with
   ``pong``. Undecodable frames get an ``error`` reply and are otherwise
   ignored.

Frames are only queued here; the graph session applies them.
"""

import logging
import uuid
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from glitch.core.errors import ProtocolViolation
from glitch.core.mutations import (
    PROTOCOL_VERSION,
    Batch,
    Hello,
    MutationEnvelope,
    Ping,
    SyncBegin,
    SyncEnd,
    decode_envelope,
)

from .session import GraphSession

logger = logging.getLogger(__name__)


class ProducerConnection:
    """Consumer side of one producer WebSocket connection."""

    def __init__(self, websocket: WebSocket, session: GraphSession):
        self.websocket = websocket
        self.session = session
        self.connection_id = uuid.uuid4().hex[:12]
        self.producer = ""
        self.frames = 0

    async def safe_send_json(self, payload: dict[str, Any]) -> bool:
        try:
            await self.websocket.send_json(payload)
            return True
        except Exception as e:
            logger.warning(f"[{self.connection_id}] Failed to send {payload.get('type')}: {e}")
            return False

    async def serve(self) -> None:
        """Run the receive loop until the producer disconnects."""
        await self.websocket.accept()
        self.session.producer_connected(self.connection_id)
        try:
            await self.safe_send_json(
                {
                    "type": "ready",
                    "connection_id": self.connection_id,
                    "protocol": PROTOCOL_VERSION,
                }
            )
            while True:
                message = await self.websocket.receive()
                if message["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(message.get("code", 1000))
                data = message.get("text")
                if data is None:
                    data = message.get("bytes")
                if data is None:
                    continue
                await self.handle_frame(data)
        except WebSocketDisconnect as e:
            logger.info(f"[{self.connection_id}] Producer disconnected (code {e.code})")
        finally:
            self.session.producer_disconnected(self.connection_id)
            await self.close()
            logger.info(
                f"[{self.connection_id}] Connection closed after {self.frames} frames"
            )

    async def close(self) -> None:
        if self.websocket.client_state != WebSocketState.CONNECTED:
            return
        try:
            await self.websocket.close()
        except Exception as e:
            logger.debug(f"[{self.connection_id}] Error closing socket: {e}")

    async def handle_frame(self, data: str | bytes) -> None:
        self.frames += 1
        try:
            envelope = decode_envelope(data)
        except ProtocolViolation as e:
            self.session.store.report_violation(e)
            await self.safe_send_json({"type": "error", "error": str(e)})
            return

        if isinstance(envelope, MutationEnvelope):
            self.session.submit_mutation(envelope.mutation, self.connection_id)
        elif isinstance(envelope, Batch):
            for mutation in envelope.mutations:
                self.session.submit_mutation(mutation, self.connection_id)
        elif isinstance(envelope, SyncBegin):
            logger.info(f"[{self.connection_id}] Full state sync started")
            self.session.begin_sync(self.connection_id)
        elif isinstance(envelope, SyncEnd):
            logger.info(f"[{self.connection_id}] Full state sync finished")
            self.session.end_sync(self.connection_id)
        elif isinstance(envelope, Ping):
            await self.safe_send_json({"type": "pong"})
        elif isinstance(envelope, Hello):
            self.producer = envelope.producer
            if envelope.protocol != PROTOCOL_VERSION:
                logger.warning(
                    f"[{self.connection_id}] Producer {envelope.producer!r} speaks "
                    f"protocol {envelope.protocol}, expected {PROTOCOL_VERSION}"
                )
            logger.info(f"[{self.connection_id}] Producer identified as {envelope.producer!r}")


async def handle_producer_socket(websocket: WebSocket, session: GraphSession) -> None:
    await ProducerConnection(websocket, session).serve()
