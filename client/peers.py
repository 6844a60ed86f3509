import asyncio
import inspect
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection
from pydantic import ValidationError

from constants import DEFAULT_FRAME_RATE, ICE_SERVERS
from errors import NegotiationFailure
from events import (
    ANSWER,
    CURRENT_SHARER,
    EXISTING_USERS,
    ICE_CANDIDATE,
    OFFER,
    USER_JOINED,
    USER_LEFT,
    USER_STARTED_SHARING,
    USER_STOPPED_SHARING,
)
from logging_config import get_logger
from schemas.signaling import RelayedCandidate, RelayedDescription
from client.negotiation import NegotiationDriver, compute_bitrate

logger = get_logger(__name__)

TERMINAL_ICE_STATES = ("disconnected", "failed", "closed")
LIVE_ICE_STATES = ("connected", "completed")


class PeerState(Enum):
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"


@dataclass(eq=False)
class PeerEntry:
    remote_id: str
    pc: Any
    is_initiator: bool
    state: PeerState = PeerState.NEGOTIATING
    closed: bool = False


def create_peer_connection() -> RTCPeerConnection:
    servers = [RTCIceServer(urls=url) for url in ICE_SERVERS]
    return RTCPeerConnection(RTCConfiguration(iceServers=servers))


class PeerSessionManager:
    """Owns the client's peer connections, one per remote member.

    A remote id is either absent from ``peers`` or maps to exactly one
    entry. ``_replace_entry`` is the only place entries are created and it
    tears down any existing entry for the id first. All map mutations are
    synchronous; only negotiation steps suspend.

    Also mirrors the room state the server announces: ``connected_users``
    (other members) and ``remote_sharers``.
    """

    def __init__(
        self,
        channel,
        pc_factory: Optional[Callable[[], Any]] = None,
        on_remote_track: Optional[Callable[[str, Any], None]] = None,
        on_remote_removed: Optional[Callable[[str], None]] = None,
    ):
        self.channel = channel
        self.driver = NegotiationDriver(channel)
        self.pc_factory = pc_factory or create_peer_connection
        self.on_remote_track = on_remote_track
        self.on_remote_removed = on_remote_removed

        self.room_id: Optional[str] = None
        self.peers: Dict[str, PeerEntry] = {}
        self.connected_users: Set[str] = set()
        self.remote_sharers: Set[str] = set()

        self.local_tracks: List[Any] = []
        self.is_sharing = False
        self.frame_rate = DEFAULT_FRAME_RATE
        self.bitrate = compute_bitrate(DEFAULT_FRAME_RATE)

        self._tasks: Set[asyncio.Task] = set()

    @property
    def local_id(self) -> Optional[str]:
        return getattr(self.channel, "member_id", None)

    def bind(self):
        """Subscribe to the membership, sharing and negotiation events."""
        self.channel.on(EXISTING_USERS, self.on_existing_users)
        self.channel.on(USER_JOINED, self.on_user_joined)
        self.channel.on(USER_LEFT, self.on_user_left)
        self.channel.on(USER_STARTED_SHARING, self.on_remote_sharer_started)
        self.channel.on(CURRENT_SHARER, self.on_current_sharer)
        self.channel.on(USER_STOPPED_SHARING, self.on_remote_sharer_stopped)
        self.channel.on(OFFER, self.on_offer)
        self.channel.on(ANSWER, self.on_answer)
        self.channel.on(ICE_CANDIDATE, self.on_ice_candidate)

    # ---- entry lifecycle ----

    def _replace_entry(self, remote_id: str, is_initiator: bool) -> PeerEntry:
        if remote_id in self.peers:
            self.remove_peer(remote_id)

        entry = PeerEntry(remote_id=remote_id, pc=self.pc_factory(), is_initiator=is_initiator)
        entry.pc.on("track", lambda track: self._on_track(entry, track))
        entry.pc.on("iceconnectionstatechange", lambda: self._on_ice_state_change(entry))
        self.driver.attach_ice_forwarding(entry, self.room_id)
        self.peers[remote_id] = entry
        logger.debug(f"Created {'initiator' if is_initiator else 'responder'} entry for {remote_id}")
        return entry

    def _close_entry(self, entry: PeerEntry):
        entry.closed = True
        result = entry.pc.close()
        if inspect.isawaitable(result):
            self._spawn(result)

    def remove_peer(self, remote_id: str) -> bool:
        entry = self.peers.pop(remote_id, None)
        if entry is not None:
            self._close_entry(entry)
            logger.info(f"Removed peer {remote_id}")
        if self.on_remote_removed:
            self.on_remote_removed(remote_id)
        return entry is not None

    def _discard(self, entry: PeerEntry):
        """Tear down ``entry`` only if it is still the live entry for its id."""
        if self.peers.get(entry.remote_id) is entry:
            self.remove_peer(entry.remote_id)
        elif not entry.closed:
            self._close_entry(entry)

    def cleanup_outgoing_peers(self):
        for remote_id, entry in list(self.peers.items()):
            if entry.is_initiator:
                del self.peers[remote_id]
                self._close_entry(entry)
                logger.debug(f"Closed outgoing peer {remote_id}")

    def _on_track(self, entry: PeerEntry, track):
        if entry.closed:
            return
        logger.info(f"Receiving {track.kind} from {entry.remote_id}")
        if self.on_remote_track:
            self.on_remote_track(entry.remote_id, track)

    def _on_ice_state_change(self, entry: PeerEntry):
        if entry.closed:
            return
        state = entry.pc.iceConnectionState
        logger.debug(f"ICE state for {entry.remote_id}: {state}")
        if state in LIVE_ICE_STATES:
            entry.state = PeerState.CONNECTED
        elif state in TERMINAL_ICE_STATES and not entry.is_initiator:
            # the sharer decides about its own connections
            self._discard(entry)

    # ---- sharing ----

    def begin_sharing(self, tracks: Iterable[Any], frame_rate: int = DEFAULT_FRAME_RATE):
        self.local_tracks = list(tracks)
        self.frame_rate = frame_rate
        self.bitrate = compute_bitrate(frame_rate)
        self.is_sharing = True
        logger.info(f"Sharing to {len(self.connected_users)} member(s) at {frame_rate} fps / {self.bitrate} bps")
        for user_id in list(self.connected_users):
            self.start_peer_connection(user_id)

    def end_sharing(self) -> List[Any]:
        """Close every outgoing peer. Returns the local tracks for the caller to stop."""
        self.cleanup_outgoing_peers()
        tracks, self.local_tracks = self.local_tracks, []
        self.is_sharing = False
        return tracks

    def start_peer_connection(self, target_id: str) -> Optional[PeerEntry]:
        if not self.local_tracks or not self.room_id or not self.is_sharing:
            return None
        if target_id == self.local_id:
            return None
        existing = self.peers.get(target_id)
        if existing is not None and existing.is_initiator:
            return None

        entry = self._replace_entry(target_id, is_initiator=True)
        self._spawn(self._negotiate_outgoing(entry))
        return entry

    async def _negotiate_outgoing(self, entry: PeerEntry):
        try:
            await self.driver.initiate(entry, self.room_id, self.local_tracks, self.frame_rate, self.bitrate)
        except NegotiationFailure as e:
            logger.error(f"Failed to create/send offer to {entry.remote_id}: {e.reason}")
            self._discard(entry)

    # ---- room mirror ----

    def on_existing_users(self, users):
        self.connected_users.clear()
        if isinstance(users, list):
            self.connected_users.update(uid for uid in users if isinstance(uid, str))

    def on_user_joined(self, user_id):
        if not user_id:
            return
        self.connected_users.add(user_id)
        if self.is_sharing:
            self.start_peer_connection(user_id)

    def on_user_left(self, user_id):
        if not user_id:
            return
        self.connected_users.discard(user_id)
        self.on_remote_sharer_stopped(user_id)

    def on_remote_sharer_started(self, user_id):
        if not user_id or user_id in self.remote_sharers:
            return
        self.remote_sharers.add(user_id)
        logger.info(f"Remote share in progress from {user_id}")

    def on_current_sharer(self, user_id):
        if user_id:
            self.on_remote_sharer_started(user_id)

    def on_remote_sharer_stopped(self, user_id):
        if not user_id:
            return
        self.remote_sharers.discard(user_id)
        self.remove_peer(user_id)

    # ---- inbound negotiation ----

    async def on_offer(self, data):
        if not self.room_id:
            return
        try:
            relayed = RelayedDescription.model_validate(data)
        except ValidationError:
            logger.debug("Ignoring malformed offer")
            return

        # latest offer wins
        entry = self._replace_entry(relayed.user_id, is_initiator=False)
        try:
            await self.driver.respond(entry, self.room_id, relayed.description)
        except NegotiationFailure as e:
            logger.error(f"Failed to process offer from {relayed.user_id}: {e.reason}")
            self._discard(entry)

    async def on_answer(self, data):
        try:
            relayed = RelayedDescription.model_validate(data)
        except ValidationError:
            logger.debug("Ignoring malformed answer")
            return

        entry = self.peers.get(relayed.user_id)
        if entry is None or not entry.is_initiator:
            logger.debug(f"No outgoing peer for answer from {relayed.user_id}")
            return
        try:
            await self.driver.accept_answer(entry, relayed.description)
        except NegotiationFailure as e:
            logger.error(f"Failed to apply answer from {relayed.user_id}: {e.reason}")
            self._discard(entry)

    async def on_ice_candidate(self, data):
        try:
            relayed = RelayedCandidate.model_validate(data)
        except ValidationError:
            logger.debug("Ignoring malformed ICE candidate")
            return

        entry = self.peers.get(relayed.user_id)
        if entry is None:
            logger.debug(f"Discarding ICE candidate from {relayed.user_id}, no peer entry")
            return
        try:
            await self.driver.add_remote_candidate(entry, relayed.candidate)
        except NegotiationFailure as e:
            logger.error(f"ICE candidate from {relayed.user_id} rejected: {e.reason}")

    # ---- tasks ----

    def _spawn(self, awaitable) -> asyncio.Task:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Peer task failed", exc_info=task.exception())

    async def flush(self):
        """Wait for in-flight negotiations and transport closes to settle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self):
        self.end_sharing()
        for remote_id in list(self.peers):
            self.remove_peer(remote_id)
        await self.flush()
