from fastapi import WebSocket
from starlette.websockets import WebSocketState
import asyncio
import json
from typing import Any, Dict, Optional
from events import ACK
from logging_config import get_logger

logger = get_logger(__name__)


class ClientConnection:
    """Outbound side of one client's WebSocket.

    ``send`` only enqueues, so room mutations never suspend while fanning
    events out. A single writer task drains the queue, which keeps delivery
    to this client in enqueue order.
    """

    def __init__(self, websocket: WebSocket, connection_id: str):
        self.websocket = websocket
        self.connection_id = connection_id
        self.queue: asyncio.Queue = asyncio.Queue()
        self.writer_task: Optional[asyncio.Task] = None
        self.closed = False

    def start(self):
        if self.writer_task is None:
            self.writer_task = asyncio.create_task(self._write_loop())

    def send(self, event: str, data: Any = None):
        if self.closed:
            logger.debug(f"Dropping {event} for closed connection {self.connection_id}")
            return
        self.queue.put_nowait({"event": event, "data": data})

    def send_ack(self, ack_id: int, data: Any):
        if self.closed:
            return
        self.queue.put_nowait({"event": ACK, "ack": ack_id, "data": data})

    async def _write_loop(self):
        try:
            while True:
                frame = await self.queue.get()
                if self.websocket.client_state != WebSocketState.CONNECTED:
                    logger.debug(f"WebSocket for {self.connection_id} no longer connected, stopping writer")
                    break
                await self.websocket.send_text(json.dumps(frame))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # The read loop notices the broken socket and runs the leave path.
            logger.warning(f"Error sending to connection {self.connection_id}: {e}")
        finally:
            self.closed = True

    async def close(self):
        self.closed = True
        if self.writer_task is not None:
            self.writer_task.cancel()
            try:
                await self.writer_task
            except asyncio.CancelledError:
                pass
            self.writer_task = None


class ConnectionManager:
    """Maps member ids to their live connections."""

    def __init__(self):
        self.connections: Dict[str, ClientConnection] = {}

    def register(self, connection: ClientConnection):
        self.connections[connection.connection_id] = connection
        logger.debug(f"Registered connection {connection.connection_id} (total: {len(self.connections)})")

    def unregister(self, connection_id: str) -> Optional[ClientConnection]:
        connection = self.connections.pop(connection_id, None)
        logger.debug(f"Unregistered connection {connection_id} (total: {len(self.connections)})")
        return connection

    def send(self, connection_id: str, event: str, data: Any = None) -> bool:
        """Queue ``event`` for one member. Returns False when it is not connected."""
        connection = self.connections.get(connection_id)
        if connection is None:
            logger.debug(f"No connection {connection_id} for event {event}, dropping")
            return False
        connection.send(event, data)
        return True


connection_manager = ConnectionManager()
