"""
Signaling payloads exchanged between the two peers.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

OFFER = "offer"
ANSWER = "answer"


@dataclass(frozen=True)
class SessionDescription:
    """One side's proposed media/transport parameters (an SDP blob)."""

    type: str
    sdp: str

    def to_dict(self) -> Dict[str, str]:
        return {"type": self.type, "sdp": self.sdp}


@dataclass(frozen=True)
class IceCandidate:
    """
    One discovered network path, in the browser's JSON shape.

    An empty ``candidate`` string marks the end of the remote side's gathering.
    """

    candidate: str
    sdp_mid: Optional[str] = None
    sdp_mline_index: Optional[int] = None

    @property
    def is_end_of_candidates(self) -> bool:
        return self.candidate == ""

    def to_dict(self) -> Dict[str, object]:
        return {
            "candidate": self.candidate,
            "sdpMid": self.sdp_mid,
            "sdpMLineIndex": self.sdp_mline_index,
        }


__all__ = ["ANSWER", "OFFER", "IceCandidate", "SessionDescription"]
