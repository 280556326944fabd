import pytest

from utils.error_codes import ErrorCodes, InvalidSignal, RoomFull
from utils.validators import parse_candidate, parse_session_description, validate_connection_code


@pytest.mark.parametrize("code", ["ABCD1234", "ROOM2024ROOM2024", "MFRGGZDFMZTWQ2LK"])
def test_valid_room_codes(code) -> None:
    assert validate_connection_code(code)


@pytest.mark.parametrize("code", ["", None, "short", "lowercase1", "ROOM-2024", "A" * 17, 12345678])
def test_invalid_room_codes(code) -> None:
    assert not validate_connection_code(code)


def test_parse_session_description_keeps_fields() -> None:
    description = parse_session_description({"type": "offer", "sdp": "v=0\r\n"}, "offer")
    assert description.type == "offer"
    assert description.to_dict() == {"type": "offer", "sdp": "v=0\r\n"}


def test_parse_session_description_rejects_wrong_role() -> None:
    with pytest.raises(InvalidSignal) as info:
        parse_session_description({"type": "offer", "sdp": "v=0"}, "answer")
    assert info.value.code == ErrorCodes.ERR_INVALID_SIGNAL
    assert not info.value.fatal


def test_parse_candidate_accepts_mline_index_only() -> None:
    candidate = parse_candidate({"candidate": "candidate:1 1 udp 1 10.0.0.1 9 typ host", "sdpMLineIndex": 0})
    assert candidate.sdp_mid is None
    assert candidate.sdp_mline_index == 0


def test_parse_candidate_rejects_bool_index() -> None:
    with pytest.raises(InvalidSignal):
        parse_candidate({"candidate": "candidate:1 1 udp 1 10.0.0.1 9 typ host", "sdpMLineIndex": True})


def test_room_full_message() -> None:
    error = RoomFull("ABCD1234")
    assert "already has 2 participants" in error.message
    assert error.code == ErrorCodes.ERR_ROOM_FULL
