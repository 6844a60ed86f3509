import re
from typing import Any
from constants import ROOM_ID_PATTERN
from errors import InvalidRoomId

ROOM_ID_REGEX = re.compile(ROOM_ID_PATTERN)


def normalize_room_id(room_id: Any) -> str:
    """Trim ``room_id`` and check it against the room identifier grammar.

    Used by the server on every operation that accepts a room id and by the
    client before it sends one.
    """
    if not isinstance(room_id, str):
        raise InvalidRoomId("Room ID must be a string.")
    trimmed = room_id.strip()
    if not ROOM_ID_REGEX.fullmatch(trimmed):
        raise InvalidRoomId()
    return trimmed
