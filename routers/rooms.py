from fastapi import APIRouter, HTTPException, Request
from backend import room_registry
from errors import InvalidRoomId
from logging_config import get_logger
from schemas.rooms import RoomDetailsResponse
from validation import normalize_room_id

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


@rooms_router.get("/{room_id}", response_model=RoomDetailsResponse)
async def get_room_details(room_id: str, request: Request):
    """
    Get a snapshot of a live room.

    Returns:
    - room_id: Room identifier
    - member_count: Number of connected members
    - has_active_sharer: Whether someone holds the sharing slot
    """
    client_host = request.client.host if request.client else 'unknown'
    logger.info(f"Room details request for {room_id} from {client_host}")

    try:
        room_id = normalize_room_id(room_id)
    except InvalidRoomId as e:
        logger.warning(f"Room details failed: invalid room id {room_id!r}")
        raise HTTPException(status_code=400, detail=e.reason)

    room = room_registry.get_room(room_id)
    if not room:
        logger.info(f"Room details failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")

    return RoomDetailsResponse(
        room_id=room_id,
        member_count=len(room.users),
        has_active_sharer=room.active_sharer is not None,
    )
