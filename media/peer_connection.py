"""
aiortc backend for the session negotiator.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable, List, Optional, Sequence

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.exceptions import InvalidAccessError, InvalidStateError
from aiortc.sdp import candidate_from_sdp

from core.models import IceCandidate, SessionDescription

logger = logging.getLogger(__name__)

# aiortc's SDP parser reports bad input with assert, int() and list indexing.
MALFORMED_SDP_ERRORS = (AssertionError, IndexError, ValueError, InvalidAccessError, InvalidStateError)


class AiortcPeerConnection:
    """
    Wraps ``RTCPeerConnection`` behind the small surface the negotiator drives.

    aiortc gathers every local candidate before ``setLocalDescription``
    returns and embeds them in the SDP, so this backend never trickles local
    candidates; it does accept trickled remote candidates.  aiortc has no
    rollback either, so ``rollback()`` rebuilds the connection with the same
    tracks.
    """

    def __init__(self, ice_servers: Sequence[str] = (), tracks: Iterable = ()) -> None:
        self._configuration = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])
        self._tracks: List = [track for track in tracks if track is not None]
        self._on_local_candidate: Optional[Callable] = None
        self._on_track: Optional[Callable] = None
        self._on_ice_state: Optional[Callable] = None
        self._pc = self._build()

    def _build(self) -> RTCPeerConnection:
        pc = RTCPeerConnection(configuration=self._configuration)
        for track in self._tracks:
            pc.addTrack(track)

        @pc.on("track")
        def on_track(track):
            logger.info("Remote %s track received", track.kind)
            if self._on_track:
                self._on_track(track)

        @pc.on("iceconnectionstatechange")
        def on_ice_state():
            logger.info("ICE connection state is %s", pc.iceConnectionState)
            if self._on_ice_state:
                self._on_ice_state(pc.iceConnectionState)

        return pc

    def subscribe(self, on_local_candidate=None, on_track=None, on_ice_state=None) -> Callable[[], None]:
        self._on_local_candidate = on_local_candidate
        self._on_track = on_track
        self._on_ice_state = on_ice_state

        def unsubscribe():
            self._on_local_candidate = None
            self._on_track = None
            self._on_ice_state = None

        return unsubscribe

    @property
    def local_description(self) -> Optional[SessionDescription]:
        description = self._pc.localDescription
        if description is None:
            return None
        return SessionDescription(type=description.type, sdp=description.sdp)

    async def create_offer(self) -> SessionDescription:
        offer = await self._pc.createOffer()
        return SessionDescription(type=offer.type, sdp=offer.sdp)

    async def create_answer(self) -> SessionDescription:
        answer = await self._pc.createAnswer()
        return SessionDescription(type=answer.type, sdp=answer.sdp)

    async def set_local_description(self, description: SessionDescription) -> None:
        await self._pc.setLocalDescription(RTCSessionDescription(sdp=description.sdp, type=description.type))

    async def set_remote_description(self, description: SessionDescription) -> None:
        try:
            await self._pc.setRemoteDescription(RTCSessionDescription(sdp=description.sdp, type=description.type))
        except MALFORMED_SDP_ERRORS as exc:
            raise ValueError(f"Malformed {description.type} SDP: {str(exc) or type(exc).__name__}") from exc

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        if candidate.is_end_of_candidates:
            await self._pc.addIceCandidate(None)
            return
        line = candidate.candidate
        if line.startswith("candidate:"):
            line = line[len("candidate:"):]
        try:
            parsed = candidate_from_sdp(line)
        except (AssertionError, IndexError, ValueError) as exc:
            raise ValueError(f"Malformed candidate line: {candidate.candidate!r}") from exc
        parsed.sdpMid = candidate.sdp_mid
        parsed.sdpMLineIndex = candidate.sdp_mline_index
        try:
            await self._pc.addIceCandidate(parsed)
        except (InvalidStateError, ValueError) as exc:
            raise ValueError(f"Candidate not accepted: {exc}") from exc

    async def rollback(self) -> None:
        await self._pc.close()
        self._pc = self._build()

    async def close(self) -> None:
        await self._pc.close()
