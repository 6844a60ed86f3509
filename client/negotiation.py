import inspect
from typing import Optional

from aiortc import RTCIceCandidate, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from constants import BITRATE_TIERS, DEFAULT_BITRATE
from errors import NegotiationFailure
from events import ANSWER, ICE_CANDIDATE, OFFER
from logging_config import get_logger
from schemas.signaling import IceCandidatePayload, SessionDescription

logger = get_logger(__name__)


def compute_bitrate(frame_rate: int) -> int:
    """Max video bitrate (bps) for a target frame rate."""
    for threshold, bitrate in BITRATE_TIERS:
        if frame_rate >= threshold:
            return bitrate
    return DEFAULT_BITRATE


def description_to_payload(description) -> dict:
    return SessionDescription(type=description.type, sdp=description.sdp).model_dump()


def description_from_payload(payload: SessionDescription) -> RTCSessionDescription:
    return RTCSessionDescription(sdp=payload.sdp, type=payload.type)


def candidate_to_payload(candidate: Optional[RTCIceCandidate]) -> Optional[dict]:
    if candidate is None:
        return None
    return IceCandidatePayload(
        candidate="candidate:" + candidate_to_sdp(candidate),
        sdpMid=candidate.sdpMid,
        sdpMLineIndex=candidate.sdpMLineIndex,
    ).model_dump()


def candidate_from_payload(payload: IceCandidatePayload) -> RTCIceCandidate:
    sdp = payload.candidate
    if sdp.startswith("candidate:"):
        sdp = sdp[len("candidate:"):]
    candidate = candidate_from_sdp(sdp)
    candidate.sdpMid = payload.sdpMid
    candidate.sdpMLineIndex = payload.sdpMLineIndex
    return candidate


class NegotiationDriver:
    """Runs the offer/answer/ICE steps for one peer entry at a time.

    Every step re-checks ``entry.closed`` after it resumes: an entry that was
    torn down while a step was suspended is abandoned without error, whatever
    point of the sequence it had reached. Fatal step failures on a live entry
    raise ``NegotiationFailure`` for the caller to tear that entry down.
    """

    def __init__(self, channel):
        self.channel = channel

    def attach_ice_forwarding(self, entry, room_id: str):
        """Send every locally gathered candidate to the remote side of ``entry``."""

        def on_icecandidate(candidate=None):
            if entry.closed or candidate is None:
                return
            self.channel.emit(ICE_CANDIDATE, {
                "roomId": room_id,
                "targetId": entry.remote_id,
                "candidate": candidate_to_payload(candidate),
            })

        entry.pc.on("icecandidate", on_icecandidate)

    async def apply_encoding_constraints(self, pc, frame_rate: int, bitrate: int):
        """Cap frame rate and bitrate on outbound video encodings. Failures are tolerated."""
        for sender in pc.getSenders():
            track = sender.track
            if track is None or track.kind != "video":
                continue
            get_params = getattr(sender, "getParameters", None)
            set_params = getattr(sender, "setParameters", None)
            if not callable(get_params) or not callable(set_params):
                logger.warning("Peer connection does not support RTP parameters; skipping encoding constraints")
                continue
            try:
                params = get_params()
                encodings = getattr(params, "encodings", None)
                if not encodings:
                    logger.warning("No encodings to constrain on video sender")
                    continue
                encodings[0].maxFramerate = frame_rate
                encodings[0].maxBitrate = bitrate
                result = set_params(params)
                if inspect.isawaitable(result):
                    await result
                logger.debug(f"Video sender limited to {frame_rate} fps / {bitrate} bps")
            except Exception as e:
                logger.warning(f"Failed to set RTP parameters: {e}")

    async def initiate(self, entry, room_id: str, tracks, frame_rate: int, bitrate: int) -> bool:
        """Initiator path. Returns False if the entry closed mid-way."""
        pc = entry.pc
        try:
            for track in tracks:
                if track.kind != "video":
                    continue
                # send-only: no video is requested back and audio is never offered
                pc.addTransceiver(track, direction="sendonly")
        except Exception as e:
            raise NegotiationFailure(f"Could not attach local tracks: {e}") from e

        await self.apply_encoding_constraints(pc, frame_rate, bitrate)
        if entry.closed:
            return False

        try:
            offer = await pc.createOffer()
            if entry.closed:
                return False
            await pc.setLocalDescription(offer)
        except Exception as e:
            if entry.closed:
                return False
            raise NegotiationFailure(f"Failed to create offer: {e}") from e
        if entry.closed:
            return False

        self.channel.emit(OFFER, {
            "roomId": room_id,
            "targetId": entry.remote_id,
            "description": description_to_payload(pc.localDescription),
        })
        logger.info(f"Sent offer to {entry.remote_id}")
        return True

    async def respond(self, entry, room_id: str, description: SessionDescription) -> bool:
        """Responder path: answer an inbound offer. Returns False if the entry closed mid-way."""
        pc = entry.pc
        try:
            await pc.setRemoteDescription(description_from_payload(description))
            if entry.closed:
                return False
            answer = await pc.createAnswer()
            if entry.closed:
                return False
            await pc.setLocalDescription(answer)
        except Exception as e:
            if entry.closed:
                return False
            raise NegotiationFailure(f"Failed to process offer: {e}") from e
        if entry.closed:
            return False

        self.channel.emit(ANSWER, {
            "roomId": room_id,
            "targetId": entry.remote_id,
            "description": description_to_payload(pc.localDescription),
        })
        logger.info(f"Sent answer to {entry.remote_id}")
        return True

    async def accept_answer(self, entry, description: SessionDescription) -> bool:
        try:
            await entry.pc.setRemoteDescription(description_from_payload(description))
        except Exception as e:
            if entry.closed:
                return False
            raise NegotiationFailure(f"Failed to apply answer: {e}") from e
        return not entry.closed

    async def add_remote_candidate(self, entry, payload: IceCandidatePayload) -> bool:
        try:
            await entry.pc.addIceCandidate(candidate_from_payload(payload))
        except Exception as e:
            if entry.closed:
                return False
            raise NegotiationFailure(f"Failed to add ICE candidate: {e}") from e
        return not entry.closed
