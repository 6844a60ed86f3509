from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, Optional


class Envelope(BaseModel):
    """One WebSocket text frame."""
    event: str
    data: Any = None
    ack: Optional[int] = None


class RequestSharePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # checked against the room grammar by the registry
    room_id: Any = Field(alias="roomId")


class ShareResponse(BaseModel):
    ok: bool
    reason: Optional[str] = None
    code: Optional[str] = None


class RelayPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_id: str = Field(alias="roomId")
    target_id: str = Field(alias="targetId")


class DescriptionRelay(RelayPayload):
    description: Any

    @field_validator("description")
    @classmethod
    def description_present(cls, value):
        if not value:
            raise ValueError("description is required")
        return value


class CandidateRelay(RelayPayload):
    candidate: Any

    @field_validator("candidate")
    @classmethod
    def candidate_present(cls, value):
        if not value:
            raise ValueError("candidate is required")
        return value


class SessionDescription(BaseModel):
    type: str
    sdp: str


class IceCandidatePayload(BaseModel):
    candidate: str
    sdpMid: Optional[str] = None
    sdpMLineIndex: Optional[int] = None


class RelayedDescription(BaseModel):
    """An offer or answer as delivered to its target."""
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    description: SessionDescription


class RelayedCandidate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    candidate: IceCandidatePayload
