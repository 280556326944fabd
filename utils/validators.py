import re

from core.models import IceCandidate, SessionDescription
from utils.error_codes import InvalidSignal


def validate_connection_code(code: str) -> bool:
    """
    Validates room code format:
    Length: 8-16
    Characters: A-Z, 0-9
    """
    if not code or not isinstance(code, str):
        return False
    if not (8 <= len(code) <= 16):
        return False
    pattern = r"^[A-Z0-9]+$"
    return bool(re.match(pattern, code))


def parse_session_description(payload, expected_type: str) -> SessionDescription:
    """
    Turns an untrusted offer/answer payload into a SessionDescription.
    Raises InvalidSignal instead of trusting the peer.
    """
    if not isinstance(payload, dict):
        raise InvalidSignal(f"Invalid {expected_type} received: expected an object")
    sdp_type = payload.get("type")
    if not sdp_type:
        raise InvalidSignal(f"Invalid {expected_type} received: missing type")
    if sdp_type != expected_type:
        raise InvalidSignal(f"Invalid {expected_type} received: type is {sdp_type!r}")
    sdp = payload.get("sdp")
    if not isinstance(sdp, str) or not sdp.strip():
        raise InvalidSignal(f"Invalid {expected_type} received: missing sdp")
    return SessionDescription(type=sdp_type, sdp=sdp)


def parse_candidate(payload) -> IceCandidate:
    if not isinstance(payload, dict):
        raise InvalidSignal("Invalid candidate received: expected an object")
    candidate = payload.get("candidate")
    if not isinstance(candidate, str):
        raise InvalidSignal("Invalid candidate received: missing candidate line")

    sdp_mid = payload.get("sdpMid")
    if sdp_mid is not None and not isinstance(sdp_mid, str):
        raise InvalidSignal("Invalid candidate received: sdpMid must be a string")
    sdp_mline_index = payload.get("sdpMLineIndex")
    if sdp_mline_index is not None:
        # bool is an int subclass
        if isinstance(sdp_mline_index, bool) or not isinstance(sdp_mline_index, int) or sdp_mline_index < 0:
            raise InvalidSignal("Invalid candidate received: bad sdpMLineIndex")

    if candidate and sdp_mid is None and sdp_mline_index is None:
        raise InvalidSignal("Invalid candidate received: needs sdpMid or sdpMLineIndex")
    return IceCandidate(candidate=candidate, sdp_mid=sdp_mid, sdp_mline_index=sdp_mline_index)
