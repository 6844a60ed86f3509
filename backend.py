from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set
from connections import connection_manager
from errors import AlreadySharing, InvalidRoomId, NotAMember
from events import USER_JOINED, USER_LEFT, USER_STARTED_SHARING, USER_STOPPED_SHARING
from logging_config import get_logger
from validation import normalize_room_id

logger = get_logger(__name__)


@dataclass
class Room:
    room_id: str
    users: Set[str] = field(default_factory=set)
    active_sharer: Optional[str] = None


@dataclass
class JoinResult:
    room_id: str
    existing_users: List[str]
    active_sharer: Optional[str]
    newly_joined: bool


class RoomRegistry:
    """In-memory rooms and their exclusive sharer slot.

    Every method runs to completion without awaiting, so on the server's
    event loop each room sees its operations in message-arrival order and the
    check-then-set on ``active_sharer`` cannot interleave with another request.
    Events go out through ``notifier.send(member_id, event, data)``.
    """

    def __init__(self, notifier):
        self.notifier = notifier
        self.rooms: Dict[str, Room] = {}
        logger.info("Initializing in-memory RoomRegistry")

    def get_room(self, room_id: str) -> Optional[Room]:
        return self.rooms.get(room_id)

    def members(self, room_id: str) -> Set[str]:
        room = self.rooms.get(room_id)
        return set(room.users) if room else set()

    def is_member(self, room_id: str, member_id: str) -> bool:
        room = self.rooms.get(room_id)
        return room is not None and member_id in room.users

    def active_sharer(self, room_id: str) -> Optional[str]:
        room = self.rooms.get(room_id)
        return room.active_sharer if room else None

    def rooms_of(self, member_id: str) -> List[str]:
        return [room_id for room_id, room in self.rooms.items() if member_id in room.users]

    def broadcast(self, room_id: str, event: str, data: Any = None, exclude_member_id: Optional[str] = None):
        room = self.rooms.get(room_id)
        if not room:
            return
        recipients = [uid for uid in room.users if uid != exclude_member_id]
        logger.debug(f"Broadcasting {event} to {len(recipients)} members of room {room_id}")
        for uid in recipients:
            self.notifier.send(uid, event, data)

    def join(self, room_id: Any, member_id: str) -> JoinResult:
        room_id = normalize_room_id(room_id)
        room = self.rooms.get(room_id)
        if room is None:
            room = Room(room_id=room_id)
            self.rooms[room_id] = room
            logger.info(f"Room {room_id} created")

        newly_joined = member_id not in room.users
        room.users.add(member_id)
        if newly_joined:
            self.broadcast(room_id, USER_JOINED, member_id, exclude_member_id=member_id)
            logger.info(f"User {member_id} joined room {room_id} (members: {len(room.users)})")
        else:
            logger.debug(f"User {member_id} already in room {room_id}")

        existing_users = [uid for uid in room.users if uid != member_id]
        sharer = room.active_sharer if room.active_sharer != member_id else None
        return JoinResult(room_id, existing_users, sharer, newly_joined)

    def request_share(self, room_id: Any, member_id: str) -> bool:
        """Reserve the room's sharer slot for ``member_id``.

        Returns True when the slot changed hands, False when the caller
        already held it.
        """
        room_id = normalize_room_id(room_id)
        room = self.rooms.get(room_id)
        if room is None or member_id not in room.users:
            raise NotAMember()
        if room.active_sharer is not None and room.active_sharer != member_id:
            logger.info(f"Share request from {member_id} in room {room_id} rejected, {room.active_sharer} is sharing")
            raise AlreadySharing()
        if room.active_sharer == member_id:
            return False

        room.active_sharer = member_id
        logger.info(f"User {member_id} reserved sharing in room {room_id}")
        self.broadcast(room_id, USER_STARTED_SHARING, member_id, exclude_member_id=member_id)
        return True

    def _release_share(self, room: Room, member_id: str) -> bool:
        if room.active_sharer != member_id:
            return False
        room.active_sharer = None
        logger.info(f"User {member_id} released sharing in room {room.room_id}")
        self.broadcast(room.room_id, USER_STOPPED_SHARING, member_id, exclude_member_id=member_id)
        return True

    def cancel_share(self, room_id: Any, member_id: str) -> bool:
        """Release a reservation taken before media started. Stale calls are ignored."""
        try:
            room_id = normalize_room_id(room_id)
        except InvalidRoomId:
            return False
        room = self.rooms.get(room_id)
        if room is None or member_id not in room.users:
            return False
        return self._release_share(room, member_id)

    def stop_share(self, room_id: Any, member_id: str) -> bool:
        """Release a reservation after media started. Stale calls are ignored."""
        try:
            room_id = normalize_room_id(room_id)
        except InvalidRoomId:
            return False
        room = self.rooms.get(room_id)
        if room is None:
            return False
        return self._release_share(room, member_id)

    def leave(self, room_id: str, member_id: str) -> bool:
        room = self.rooms.get(room_id)
        if room is None or member_id not in room.users:
            return False

        room.users.discard(member_id)
        logger.info(f"User {member_id} left room {room_id} (members: {len(room.users)})")
        self.broadcast(room_id, USER_LEFT, member_id)
        self._release_share(room, member_id)

        if not room.users:
            del self.rooms[room_id]
            logger.info(f"Room {room_id} is empty and closed")
        return True

    def leave_all(self, member_id: str) -> List[str]:
        left = [room_id for room_id in self.rooms_of(member_id) if self.leave(room_id, member_id)]
        if left:
            logger.debug(f"User {member_id} removed from rooms {left}")
        return left


room_registry = RoomRegistry(connection_manager)
