from pydantic import BaseModel


class RoomDetailsResponse(BaseModel):
    room_id: str
    member_count: int
    has_active_sharer: bool
