from typing import Optional


class SignalingError(Exception):
    """Base class for every error the signaling layer raises.

    ``reason`` is the human-readable text shown to the requesting client and
    ``code`` is a stable identifier carried on the wire so the client can map
    a rejected request back onto the matching exception class.
    """

    code = "SignalingError"
    default_reason = "Signaling error."

    def __init__(self, reason: Optional[str] = None):
        self.reason = reason or self.default_reason
        super().__init__(self.reason)


class InvalidPayload(SignalingError):
    code = "InvalidPayload"
    default_reason = "Invalid payload."


class InvalidRoomId(SignalingError):
    code = "InvalidRoomId"
    default_reason = "Invalid room ID. Use 3-32 letters, numbers, hyphen or underscore."


class NotAMember(SignalingError):
    code = "NotAMember"
    default_reason = "Join the room before sharing."


class AlreadySharing(SignalingError):
    code = "AlreadySharing"
    default_reason = "Another user is currently sharing."


class AlreadyInRoom(SignalingError):
    code = "AlreadyInRoom"
    default_reason = "Already joined a room. Reconnect to switch rooms."


class NoResponse(SignalingError):
    code = "NoResponse"
    default_reason = "No response from server."


class NegotiationFailure(SignalingError):
    code = "NegotiationFailure"
    default_reason = "Peer negotiation failed."


class TargetUnreachable(SignalingError):
    code = "TargetUnreachable"
    default_reason = "Target is not a member of the room."


ERRORS_BY_CODE = {
    cls.code: cls
    for cls in (
        InvalidPayload,
        InvalidRoomId,
        NotAMember,
        AlreadySharing,
        AlreadyInRoom,
        NoResponse,
        NegotiationFailure,
        TargetUnreachable,
    )
}


def error_from_code(code: Optional[str], reason: Optional[str] = None) -> SignalingError:
    """Rebuild the exception a server ack describes."""
    return ERRORS_BY_CODE.get(code, SignalingError)(reason)
