from pydantic import ValidationError
from typing import Any, Callable, Dict, Type
from backend import RoomRegistry, room_registry
from connections import ConnectionManager, connection_manager
from errors import InvalidPayload, InvalidRoomId, NotAMember, SignalingError, TargetUnreachable
from events import (
    ANSWER,
    CANCEL_SHARE,
    CURRENT_SHARER,
    EXISTING_USERS,
    ICE_CANDIDATE,
    JOIN_ROOM,
    OFFER,
    REQUEST_SHARE,
    ROOM_ERROR,
    ROOM_JOINED,
    STOP_SHARING,
)
from logging_config import get_logger
from validation import normalize_room_id
from schemas.signaling import CandidateRelay, DescriptionRelay, RelayPayload, RequestSharePayload, ShareResponse

logger = get_logger(__name__)


class SignalingRouter:
    """Dispatches inbound events of one connection against the room registry.

    Handlers are synchronous. Whatever a handler returns is used as the
    acknowledgement body when the frame asked for one.
    """

    def __init__(self, registry: RoomRegistry, connections: ConnectionManager):
        self.registry = registry
        self.connections = connections
        self.handlers: Dict[str, Callable[[str, Any], Any]] = {
            JOIN_ROOM: self.handle_join_room,
            REQUEST_SHARE: self.handle_request_share,
            CANCEL_SHARE: self.handle_cancel_share,
            STOP_SHARING: self.handle_stop_sharing,
            OFFER: self.handle_offer,
            ANSWER: self.handle_answer,
            ICE_CANDIDATE: self.handle_ice_candidate,
        }

    def dispatch(self, member_id: str, event: str, data: Any = None) -> Any:
        handler = self.handlers.get(event)
        if handler is None:
            logger.warning(f"Unknown event '{event}' from {member_id}, ignoring")
            return None
        return handler(member_id, data)

    def disconnect(self, member_id: str):
        """Treat an abrupt disconnect as leaving every room the member occupied."""
        rooms = self.registry.leave_all(member_id)
        logger.info(f"User {member_id} disconnected, left {len(rooms)} room(s)")

    # ---- membership and sharing ----

    def handle_join_room(self, member_id: str, room_id: Any):
        try:
            result = self.registry.join(room_id, member_id)
        except InvalidRoomId as e:
            logger.warning(f"Join rejected for {member_id}: {e.reason} (room id: {room_id!r})")
            self.connections.send(member_id, ROOM_ERROR, e.reason)
            return None

        self.connections.send(member_id, EXISTING_USERS, result.existing_users)
        self.connections.send(member_id, ROOM_JOINED, result.room_id)
        if result.active_sharer:
            self.connections.send(member_id, CURRENT_SHARER, result.active_sharer)
        return None

    def handle_request_share(self, member_id: str, data: Any) -> dict:
        try:
            payload = RequestSharePayload.model_validate(data)
        except ValidationError:
            return self._share_rejected(member_id, InvalidPayload())

        try:
            self.registry.request_share(payload.room_id, member_id)
        except SignalingError as e:
            return self._share_rejected(member_id, e)
        return ShareResponse(ok=True).model_dump(exclude_none=True)

    def _share_rejected(self, member_id: str, error: SignalingError) -> dict:
        logger.warning(f"Share request from {member_id} rejected: {error.reason}")
        return ShareResponse(ok=False, reason=error.reason, code=error.code).model_dump(exclude_none=True)

    def handle_cancel_share(self, member_id: str, room_id: Any):
        self.registry.cancel_share(room_id, member_id)

    def handle_stop_sharing(self, member_id: str, room_id: Any):
        self.registry.stop_share(room_id, member_id)

    # ---- negotiation relay ----

    def handle_offer(self, member_id: str, data: Any):
        self._relay(member_id, OFFER, data, DescriptionRelay, "description", require_sharer=True)

    def handle_answer(self, member_id: str, data: Any):
        self._relay(member_id, ANSWER, data, DescriptionRelay, "description")

    def handle_ice_candidate(self, member_id: str, data: Any):
        self._relay(member_id, ICE_CANDIDATE, data, CandidateRelay, "candidate")

    def _relay(
        self,
        member_id: str,
        event: str,
        data: Any,
        model: Type[RelayPayload],
        body_field: str,
        require_sharer: bool = False,
    ) -> bool:
        try:
            payload = model.model_validate(data)
        except ValidationError as e:
            logger.debug(f"Dropping malformed {event} from {member_id}: {e.error_count()} error(s)")
            return False

        try:
            room_id = normalize_room_id(payload.room_id)
            self._check_route(room_id, member_id, payload.target_id, require_sharer)
        except SignalingError as e:
            # Not surfaced: the sender cannot tell a drop from a message in flight.
            logger.debug(f"Dropping {event} from {member_id} to {payload.target_id}: {e.reason}")
            return False

        body = getattr(payload, body_field)
        logger.debug(f"Relaying {event} from {member_id} to {payload.target_id} in room {room_id}")
        return self.connections.send(payload.target_id, event, {"userId": member_id, body_field: body})

    def _check_route(self, room_id: str, sender_id: str, target_id: str, require_sharer: bool):
        room = self.registry.get_room(room_id)
        if room is None:
            raise TargetUnreachable("Room not found.")
        if require_sharer and room.active_sharer != sender_id:
            raise SignalingError("Only the active sharer may send offers.")
        if sender_id not in room.users:
            raise NotAMember("Sender is not a member of the room.")
        if target_id not in room.users:
            raise TargetUnreachable()


signaling_router = SignalingRouter(room_registry, connection_manager)
