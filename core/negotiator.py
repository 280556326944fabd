"""
Per-call offer/answer/candidate state machine.

A negotiator owns exactly one peer connection backend for the lifetime of one
call and is thrown away, never reused, once closed.  The backend is anything
exposing ``create_offer``, ``create_answer``, ``set_local_description``,
``set_remote_description``, ``add_ice_candidate``, ``rollback``, ``close``,
``subscribe`` and a ``local_description`` property (see
``media.peer_connection.AiortcPeerConnection``).

Every operation that touches the backend runs under one ``asyncio.Lock``;
``close()`` flips the state to ``closed`` synchronously and in-flight
operations re-check it after each await.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Callable, Deque, List, Optional, Set, Tuple

from core.models import ANSWER, OFFER, IceCandidate, SessionDescription
from core.state_machine import (
    ConnectionHealth,
    IceConnectionState,
    SignalingState,
    StateMachine,
    describe_health,
)
from utils.error_codes import AlreadyNegotiating, InvalidSignal, UnexpectedAnswer
from utils.validators import parse_candidate, parse_session_description

logger = logging.getLogger(__name__)

DEFAULT_CANDIDATE_LIMIT = 64


class SessionNegotiator:
    def __init__(
        self,
        peer_connection,
        local_id: Optional[str] = None,
        candidate_limit: int = DEFAULT_CANDIDATE_LIMIT,
    ) -> None:
        self._pc = peer_connection
        self.local_id = local_id
        self.candidate_limit = candidate_limit
        self.state_machine = StateMachine()
        self.ice_state = IceConnectionState.NEW
        self.local_description: Optional[SessionDescription] = None
        self.remote_description: Optional[SessionDescription] = None
        self.applied_candidates: List[IceCandidate] = []
        self.dropped_candidates = 0
        self._pending: Deque[IceCandidate] = deque()
        self._sent_candidates: Set[Tuple] = set()
        self._lock = asyncio.Lock()
        self._initiating = False
        self._local_candidate_listeners: List[Callable] = []
        self._remote_track_listeners: List[Callable] = []
        self._state_listeners: List[Callable] = []
        self._unsubscribe = peer_connection.subscribe(
            on_local_candidate=self._handle_local_candidate,
            on_track=self._handle_remote_track,
            on_ice_state=self._handle_ice_state,
        )

    # -- observable state -------------------------------------------------

    @property
    def state(self) -> SignalingState:
        return self.state_machine.current_state

    @property
    def closed(self) -> bool:
        return self.state is SignalingState.CLOSED

    @property
    def health(self) -> ConnectionHealth:
        return describe_health(self.state, self.ice_state)

    @property
    def pending_candidates(self) -> Tuple[IceCandidate, ...]:
        return tuple(self._pending)

    def on_local_candidate(self, callback: Callable[[IceCandidate], None]) -> None:
        self._local_candidate_listeners.append(callback)

    def on_remote_track(self, callback: Callable) -> None:
        self._remote_track_listeners.append(callback)

    def on_state_change(self, callback: Callable[["SessionNegotiator"], None]) -> None:
        self._state_listeners.append(callback)

    # -- operations -------------------------------------------------------

    async def initiate(self) -> Optional[SessionDescription]:
        """Create and apply the local offer. Returns None if closed meanwhile."""
        if self.closed:
            return None
        if self._initiating or self.state is not SignalingState.IDLE:
            raise AlreadyNegotiating(f"Cannot start a call while {self.state.value}")

        self._initiating = True
        try:
            async with self._lock:
                if self.closed:
                    return None
                if self.state is not SignalingState.IDLE:
                    raise AlreadyNegotiating(f"Cannot start a call while {self.state.value}")

                offer = await self._pc.create_offer()
                if self.closed:
                    return None
                await self._pc.set_local_description(offer)
                if self.closed:
                    return None
                self.local_description = self._pc.local_description or offer
                self._transition(SignalingState.HAVE_LOCAL_OFFER)
                return self.local_description
        finally:
            self._initiating = False

    async def handle_remote_offer(self, payload, sender_id: Optional[str] = None) -> Optional[SessionDescription]:
        """Accept the peer's offer and return our answer."""
        if self.closed:
            return None
        offer = parse_session_description(payload, OFFER)

        async with self._lock:
            if self.closed:
                return None

            if self.state is SignalingState.HAVE_LOCAL_OFFER:
                if not self._yields_to(sender_id):
                    raise AlreadyNegotiating(
                        f"Glare with {sender_id}: keeping our own offer, peer must answer it"
                    )
                logger.info("Glare with %s: rolling back local offer and answering", sender_id)
                await self._pc.rollback()
                if self.closed:
                    return None
                self.local_description = None
                self._transition(SignalingState.IDLE)
            elif self.state is not SignalingState.IDLE:
                raise AlreadyNegotiating(f"Ignoring offer while {self.state.value}")

            self._transition(SignalingState.HAVE_REMOTE_OFFER)
            remote_applied = False
            try:
                await self._pc.set_remote_description(offer)
                remote_applied = True
                if self.closed:
                    return None
                answer = await self._pc.create_answer()
                if self.closed:
                    return None
                await self._pc.set_local_description(answer)
            except Exception as exc:
                if self.closed:
                    return None
                await self._abandon_offer(remote_applied)
                raise InvalidSignal(f"Offer rejected: {exc}") from exc
            if self.closed:
                return None
            self.remote_description = offer
            self.local_description = self._pc.local_description or answer
            self._transition(SignalingState.STABLE)

            await self._flush_candidates()
            return self.local_description

    async def handle_remote_answer(self, payload) -> None:
        if self.closed:
            return None
        answer = parse_session_description(payload, ANSWER)

        async with self._lock:
            if self.closed:
                return None
            if self.state is not SignalingState.HAVE_LOCAL_OFFER:
                raise UnexpectedAnswer(f"Received an answer while {self.state.value}")
            try:
                await self._pc.set_remote_description(answer)
            except Exception as exc:
                raise InvalidSignal(f"Answer rejected: {exc}") from exc
            if self.closed:
                return None
            self.remote_description = answer
            self._transition(SignalingState.STABLE)
            await self._flush_candidates()

    async def handle_remote_candidate(self, payload) -> bool:
        """Apply now if possible, otherwise queue. Returns True when applied immediately."""
        if self.closed:
            return False
        candidate = parse_candidate(payload)

        async with self._lock:
            if self.closed:
                return False
            if self.remote_description is None:
                self._enqueue(candidate)
                return False
            try:
                await self._apply(candidate)
            except ValueError as exc:
                raise InvalidSignal(f"Candidate rejected: {exc}") from exc
            return True

    async def close(self) -> None:
        if self.closed:
            return
        self._transition(SignalingState.CLOSED)
        self._pending.clear()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._local_candidate_listeners.clear()
        self._remote_track_listeners.clear()
        self._state_listeners.clear()
        await self._pc.close()
        logger.info("Peer connection closed")

    # -- internals --------------------------------------------------------

    def _yields_to(self, sender_id: Optional[str]) -> bool:
        # Smaller connection id becomes the answerer.
        if self.local_id is None or sender_id is None:
            return False
        return self.local_id < sender_id

    async def _abandon_offer(self, remote_applied: bool) -> None:
        # A backend that already holds the remote offer is rebuilt.
        if remote_applied:
            await self._pc.rollback()
        self.remote_description = None
        self.local_description = None
        if not self.closed:
            self._transition(SignalingState.IDLE)

    def _enqueue(self, candidate: IceCandidate) -> None:
        if len(self._pending) >= self.candidate_limit:
            self._pending.popleft()
            self.dropped_candidates += 1
            logger.warning("Candidate queue full (%d), dropped the oldest", self.candidate_limit)
        self._pending.append(candidate)

    async def _apply(self, candidate: IceCandidate) -> None:
        await self._pc.add_ice_candidate(candidate)
        self.applied_candidates.append(candidate)

    async def _flush_candidates(self) -> None:
        while self._pending and not self.closed:
            candidate = self._pending.popleft()
            try:
                await self._apply(candidate)
            except ValueError:
                logger.warning("Dropping buffered candidate the backend rejected: %s", candidate.candidate)

    def _transition(self, new_state: SignalingState) -> None:
        previous = self.state
        self.state_machine.transition_to(new_state)
        logger.debug("Signaling state %s -> %s", previous.value, new_state.value)
        self._notify_state()

    def _notify_state(self) -> None:
        for callback in list(self._state_listeners):
            callback(self)

    def _handle_local_candidate(self, candidate: IceCandidate) -> None:
        if self.closed:
            return
        key = (candidate.candidate, candidate.sdp_mid, candidate.sdp_mline_index)
        if key in self._sent_candidates:
            return
        self._sent_candidates.add(key)
        for callback in list(self._local_candidate_listeners):
            callback(candidate)

    def _handle_remote_track(self, track) -> None:
        if self.closed:
            return
        for callback in list(self._remote_track_listeners):
            callback(track)

    def _handle_ice_state(self, value: str) -> None:
        if self.closed:
            return
        self.ice_state = IceConnectionState.from_value(value)
        self._notify_state()
