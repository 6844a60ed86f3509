import asyncio
import inspect
import itertools
import json
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Set

import websockets
from pydantic import ValidationError

from constants import REQUEST_TIMEOUT, SIGNALING_URL
from errors import NoResponse
from events import ACK, CONNECTED
from logging_config import get_logger
from schemas.signaling import Envelope

logger = get_logger(__name__)

DISCONNECT = "disconnect"


class SignalingChannel:
    """Client end of the signaling WebSocket.

    Named events are dispatched to handlers registered with ``on``. Handlers
    may be plain functions or coroutine functions; coroutines are scheduled as
    tasks so a slow negotiation never stalls the read loop. ``emit`` is a
    non-blocking enqueue drained by a writer task, which keeps outbound frames
    in call order.
    """

    def __init__(self, url: str = SIGNALING_URL, request_timeout: float = REQUEST_TIMEOUT):
        self.url = url
        self.request_timeout = request_timeout
        self.websocket = None
        self.member_id: Optional[str] = None
        self.handlers: Dict[str, List[Callable]] = defaultdict(list)
        self.pending: Dict[int, asyncio.Future] = {}
        self._ack_ids = itertools.count(1)
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._reader: Optional[asyncio.Task] = None
        self._writer: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._connected: Optional[asyncio.Future] = None

    async def connect(self) -> str:
        """Open the socket and wait for the server to assign our member id."""
        logger.info(f"Connecting to signaling server at {self.url}")
        self.websocket = await websockets.connect(self.url)
        self._connected = asyncio.get_running_loop().create_future()
        self._reader = asyncio.create_task(self._read_loop())
        self._writer = asyncio.create_task(self._write_loop())
        try:
            self.member_id = await asyncio.wait_for(self._connected, self.request_timeout)
        except asyncio.TimeoutError:
            await self.close()
            raise NoResponse("Server did not assign a connection id.")
        logger.info(f"Connected as {self.member_id}")
        return self.member_id

    def on(self, event: str, handler: Callable):
        self.handlers[event].append(handler)

    def emit(self, event: str, data: Any = None, ack: Optional[int] = None):
        frame = {"event": event, "data": data}
        if ack is not None:
            frame["ack"] = ack
        self._outbox.put_nowait(frame)

    async def request(self, event: str, data: Any = None, timeout: Optional[float] = None) -> Any:
        """Emit ``event`` with an ack id and wait for the server's reply body."""
        ack_id = next(self._ack_ids)
        future = asyncio.get_running_loop().create_future()
        self.pending[ack_id] = future
        self.emit(event, data, ack=ack_id)
        try:
            return await asyncio.wait_for(future, timeout or self.request_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"No response to {event} (ack {ack_id})")
            raise NoResponse()
        finally:
            self.pending.pop(ack_id, None)

    def dispatch(self, event: str, data: Any = None):
        handlers = self.handlers.get(event)
        if not handlers:
            logger.debug(f"No handler for {event}")
            return
        for handler in list(handlers):
            try:
                result = handler(data)
            except Exception as e:
                logger.error(f"Handler for {event} failed: {e}", exc_info=True)
                continue
            if inspect.isawaitable(result):
                self.spawn(result)

    def spawn(self, awaitable) -> asyncio.Task:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Event handler task failed", exc_info=task.exception())

    def _handle_frame(self, raw):
        try:
            envelope = Envelope.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError, TypeError) as e:
            logger.warning(f"Ignoring malformed frame from server: {e}")
            return

        if envelope.event == ACK:
            future = self.pending.get(envelope.ack)
            if future is not None and not future.done():
                future.set_result(envelope.data)
            return
        if envelope.event == CONNECTED:
            if self._connected is not None and not self._connected.done():
                self._connected.set_result((envelope.data or {}).get("id"))
            return
        self.dispatch(envelope.event, envelope.data)

    async def _read_loop(self):
        try:
            async for raw in self.websocket:
                self._handle_frame(raw)
        except websockets.exceptions.ConnectionClosed as e:
            logger.info(f"Signaling connection closed: {e}")
        finally:
            for future in self.pending.values():
                if not future.done():
                    future.set_exception(NoResponse("Connection closed."))
            if self._connected is not None and not self._connected.done():
                self._connected.set_exception(NoResponse("Connection closed."))
            self.dispatch(DISCONNECT)

    async def _write_loop(self):
        while True:
            frame = await self._outbox.get()
            try:
                await self.websocket.send(json.dumps(frame))
            except websockets.exceptions.ConnectionClosed:
                logger.warning(f"Dropping {frame['event']}, connection closed")
                return

    async def close(self):
        current = asyncio.current_task()
        tasks = [
            task for task in (self._writer, self._reader, *self._tasks)
            if task is not None and task is not current
        ]
        for task in tasks:
            if not task.done():
                task.cancel()
        if self.websocket is not None:
            await self.websocket.close()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug(f"Task ended with {e!r} during close")
        logger.info("Signaling channel closed")
