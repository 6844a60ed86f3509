import asyncio
from typing import Any, Awaitable, Callable, List, Optional

from pydantic import ValidationError

from constants import DEFAULT_FRAME_RATE, REQUEST_TIMEOUT
from errors import AlreadyInRoom, AlreadySharing, InvalidRoomId, NoResponse, NotAMember, error_from_code
from events import CANCEL_SHARE, JOIN_ROOM, REQUEST_SHARE, ROOM_ERROR, ROOM_JOINED, STOP_SHARING
from logging_config import get_logger
from schemas.signaling import ShareResponse
from validation import normalize_room_id
from client.peers import PeerSessionManager

logger = get_logger(__name__)

Capture = Callable[[int], Awaitable[List[Any]]]


class ScreenShareSession:
    """User-facing actions of one client: join a room, share, stop.

    The server's reservation is the source of truth. ``share_reservation``
    records that the server granted it (media may not have started yet), and
    the peer manager's ``is_sharing`` that local media is flowing to peers.
    """

    def __init__(
        self,
        channel,
        pc_factory=None,
        on_remote_track=None,
        on_remote_removed=None,
        request_timeout: float = REQUEST_TIMEOUT,
    ):
        self.channel = channel
        self.request_timeout = request_timeout
        self.peers = PeerSessionManager(
            channel,
            pc_factory=pc_factory,
            on_remote_track=on_remote_track,
            on_remote_removed=on_remote_removed,
        )
        self.share_reservation = False
        # token of the start_sharing call in flight, cleared by stop_sharing
        self._share_attempt: Optional[object] = None
        self._join_waiter: Optional[asyncio.Future] = None

        self.peers.bind()
        channel.on(ROOM_JOINED, self._on_room_joined)
        channel.on(ROOM_ERROR, self._on_room_error)

    @property
    def current_room(self) -> Optional[str]:
        return self.peers.room_id

    @property
    def is_sharing(self) -> bool:
        return self.peers.is_sharing

    async def join_room(self, room_id: str) -> str:
        """Join ``room_id``. A session joins at most one room per connection."""
        room_id = normalize_room_id(room_id)
        if self.current_room:
            raise AlreadyInRoom(f"Already in room {self.current_room}. Reconnect to switch rooms.")
        self._join_waiter = asyncio.get_running_loop().create_future()
        self.peers.room_id = room_id
        self.channel.emit(JOIN_ROOM, room_id)
        try:
            return await asyncio.wait_for(self._join_waiter, self.request_timeout)
        except asyncio.TimeoutError:
            self.peers.room_id = None
            raise NoResponse("No response to join request.")
        finally:
            self._join_waiter = None

    def _on_room_joined(self, room_id):
        self.peers.room_id = room_id
        logger.info(f"Connected to room: {room_id}")
        if self._join_waiter is not None and not self._join_waiter.done():
            self._join_waiter.set_result(room_id)

    def _on_room_error(self, message):
        logger.error(f"Failed to join room: {message}")
        self.peers.room_id = None
        if self._join_waiter is not None and not self._join_waiter.done():
            self._join_waiter.set_exception(InvalidRoomId(message or "Failed to join room."))

    async def start_sharing(self, capture: Capture, frame_rate: int = DEFAULT_FRAME_RATE):
        """Reserve the room's sharer slot, capture, and offer to every member.

        ``capture(frame_rate)`` runs only once the server granted the slot.
        If it fails the slot is released again and the error propagates.
        A ``stop_sharing`` call while this is in flight wins: the slot is
        released and any captured tracks are stopped.
        """
        room_id = self.current_room
        if not room_id:
            raise NotAMember("Join a room before sharing.")
        if self.peers.remote_sharers:
            raise AlreadySharing("Another user is currently sharing. Please wait for them to finish.")
        if self.is_sharing or self.share_reservation or self._share_attempt is not None:
            logger.debug("Already sharing")
            return

        attempt = self._share_attempt = object()
        try:
            await self._start_sharing(attempt, room_id, capture, frame_rate)
        finally:
            if self._share_attempt is attempt:
                self._share_attempt = None

    async def _start_sharing(self, attempt, room_id: str, capture: Capture, frame_rate: int):
        reply = await self.channel.request(REQUEST_SHARE, {"roomId": room_id}, timeout=self.request_timeout)
        try:
            response = ShareResponse.model_validate(reply)
        except ValidationError:
            raise NoResponse()
        if not response.ok:
            raise error_from_code(response.code, response.reason)

        self.share_reservation = True
        if self._share_attempt is not attempt:
            logger.info("Sharing stopped before the slot was granted, releasing it")
            self.cancel_share_slot()
            return

        try:
            tracks = await capture(frame_rate)
        except Exception:
            logger.error("Error accessing screen", exc_info=True)
            self.cancel_share_slot()
            raise
        if self._share_attempt is not attempt or not self.share_reservation:
            logger.info("Sharing stopped while capturing, discarding captured tracks")
            for track in tracks or ():
                track.stop()
            return
        if not tracks:
            self.cancel_share_slot()
            raise ValueError("Capture returned no tracks.")

        for track in tracks:
            if track.kind == "video" and hasattr(track, "on"):
                track.on("ended", self.stop_sharing)

        self.peers.begin_sharing(tracks, frame_rate)
        logger.info(f"Sharing at {frame_rate} FPS")

    def cancel_share_slot(self):
        if self.share_reservation and self.current_room:
            self.channel.emit(CANCEL_SHARE, self.current_room)
        self.share_reservation = False

    def stop_sharing(self):
        self._share_attempt = None
        if not self.is_sharing and not self.share_reservation:
            return

        reserved = self.share_reservation
        self.share_reservation = False
        tracks = self.peers.end_sharing()
        for track in tracks:
            track.stop()

        if self.current_room and reserved:
            self.channel.emit(STOP_SHARING, self.current_room)
        logger.info("Stopped sharing")

    async def close(self):
        self.stop_sharing()
        await self.peers.close()
        await self.channel.close()
