"""Tests covering the offer/answer/candidate state machine."""

from __future__ import annotations

import asyncio

import pytest

from core.models import IceCandidate
from core.negotiator import SessionNegotiator
from core.state_machine import ConnectionHealth, IceConnectionState, SignalingState
from fakes import FakePeerConnection, answer_payload, candidate_payload, offer_payload
from utils.error_codes import AlreadyNegotiating, InvalidSignal, UnexpectedAnswer


def make_negotiator(local_id="a", limit=64):
    pc = FakePeerConnection()
    return SessionNegotiator(pc, local_id=local_id, candidate_limit=limit), pc


@pytest.mark.asyncio
async def test_initiate_moves_to_have_local_offer() -> None:
    negotiator, pc = make_negotiator()

    offer = await negotiator.initiate()

    assert offer.type == "offer"
    assert negotiator.state is SignalingState.HAVE_LOCAL_OFFER
    assert pc.local_description == offer
    assert negotiator.local_description == offer


@pytest.mark.asyncio
async def test_second_initiate_fails_and_keeps_first_offer() -> None:
    negotiator, pc = make_negotiator()
    first = await negotiator.initiate()

    with pytest.raises(AlreadyNegotiating):
        await negotiator.initiate()

    assert negotiator.state is SignalingState.HAVE_LOCAL_OFFER
    assert negotiator.local_description == first
    assert pc.offers_created == 1


@pytest.mark.asyncio
async def test_concurrent_initiate_creates_one_offer() -> None:
    negotiator, pc = make_negotiator()

    results = await asyncio.gather(negotiator.initiate(), negotiator.initiate(), return_exceptions=True)

    assert sum(isinstance(r, AlreadyNegotiating) for r in results) == 1
    assert pc.offers_created == 1


@pytest.mark.asyncio
async def test_remote_offer_from_idle_produces_answer() -> None:
    negotiator, pc = make_negotiator()

    answer = await negotiator.handle_remote_offer(offer_payload(), "b")

    assert answer.type == "answer"
    assert negotiator.state is SignalingState.STABLE
    assert pc.remote_description.type == "offer"
    assert pc.local_description == answer


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [None, "offer", {}, {"sdp": "v=0"}, {"type": "answer", "sdp": "v=0"}, {"type": "offer"}],
)
async def test_malformed_offer_is_invalid_signal(payload) -> None:
    negotiator, pc = make_negotiator()

    with pytest.raises(InvalidSignal):
        await negotiator.handle_remote_offer(payload, "b")

    assert negotiator.state is SignalingState.IDLE
    assert pc.remote_description is None


@pytest.mark.asyncio
async def test_offer_rejected_by_backend_returns_to_idle() -> None:
    negotiator, _ = make_negotiator()

    with pytest.raises(InvalidSignal):
        await negotiator.handle_remote_offer({"type": "offer", "sdp": "malformed"}, "b")

    assert negotiator.state is SignalingState.IDLE
    # Still usable afterwards
    assert (await negotiator.handle_remote_offer(offer_payload(), "b")).type == "answer"


@pytest.mark.asyncio
async def test_offer_while_stable_is_rejected() -> None:
    negotiator, _ = make_negotiator()
    await negotiator.handle_remote_offer(offer_payload(), "b")

    with pytest.raises(AlreadyNegotiating):
        await negotiator.handle_remote_offer(offer_payload("again"), "b")
    assert negotiator.state is SignalingState.STABLE


@pytest.mark.asyncio
async def test_answer_completes_local_offer() -> None:
    negotiator, pc = make_negotiator()
    await negotiator.initiate()

    await negotiator.handle_remote_answer(answer_payload())

    assert negotiator.state is SignalingState.STABLE
    assert pc.remote_description.type == "answer"


@pytest.mark.asyncio
async def test_answer_from_idle_is_unexpected() -> None:
    negotiator, pc = make_negotiator()

    with pytest.raises(UnexpectedAnswer):
        await negotiator.handle_remote_answer(answer_payload())

    assert negotiator.state is SignalingState.IDLE
    assert pc.remote_description is None


@pytest.mark.asyncio
async def test_answer_from_stable_is_unexpected() -> None:
    negotiator, _ = make_negotiator()
    await negotiator.initiate()
    await negotiator.handle_remote_answer(answer_payload())

    with pytest.raises(UnexpectedAnswer):
        await negotiator.handle_remote_answer(answer_payload("duplicate"))
    assert negotiator.state is SignalingState.STABLE


@pytest.mark.asyncio
async def test_malformed_answer_leaves_offer_outstanding() -> None:
    negotiator, _ = make_negotiator()
    await negotiator.initiate()

    with pytest.raises(InvalidSignal):
        await negotiator.handle_remote_answer({"type": "offer", "sdp": "v=0"})

    assert negotiator.state is SignalingState.HAVE_LOCAL_OFFER


@pytest.mark.asyncio
async def test_candidates_before_remote_description_are_buffered_in_order() -> None:
    negotiator, pc = make_negotiator()
    await negotiator.initiate()

    for n in range(1, 4):
        applied = await negotiator.handle_remote_candidate(candidate_payload(n))
        assert applied is False

    assert pc.added_candidates == []
    buffered = negotiator.pending_candidates
    assert len(buffered) == 3

    await negotiator.handle_remote_answer(answer_payload())

    assert pc.added_candidates == list(buffered)
    assert negotiator.pending_candidates == ()


@pytest.mark.asyncio
async def test_buffered_candidates_flush_after_remote_offer() -> None:
    negotiator, pc = make_negotiator()
    await negotiator.handle_remote_candidate(candidate_payload(1))
    await negotiator.handle_remote_candidate(candidate_payload(2))

    await negotiator.handle_remote_offer(offer_payload(), "b")

    assert [c.candidate for c in pc.added_candidates] == [
        candidate_payload(1)["candidate"],
        candidate_payload(2)["candidate"],
    ]


@pytest.mark.asyncio
async def test_candidate_after_remote_description_is_applied_immediately() -> None:
    negotiator, pc = make_negotiator()
    await negotiator.handle_remote_offer(offer_payload(), "b")

    assert await negotiator.handle_remote_candidate(candidate_payload(7)) is True
    assert len(pc.added_candidates) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        None,
        {},
        {"candidate": 5, "sdpMid": "0"},
        {"candidate": "candidate:1 1 udp 1 10.0.0.1 9 typ host"},
        {"candidate": "candidate:1 1 udp 1 10.0.0.1 9 typ host", "sdpMLineIndex": -1},
    ],
)
async def test_malformed_candidate_is_invalid_signal(payload) -> None:
    negotiator, _ = make_negotiator()

    with pytest.raises(InvalidSignal):
        await negotiator.handle_remote_candidate(payload)

    assert negotiator.pending_candidates == ()
    assert negotiator.state is SignalingState.IDLE


@pytest.mark.asyncio
async def test_backend_rejected_candidate_does_not_break_session() -> None:
    negotiator, pc = make_negotiator()
    await negotiator.handle_remote_offer(offer_payload(), "b")

    with pytest.raises(InvalidSignal):
        await negotiator.handle_remote_candidate({"candidate": "bogus", "sdpMid": "0"})

    assert await negotiator.handle_remote_candidate(candidate_payload(1)) is True
    assert negotiator.state is SignalingState.STABLE


@pytest.mark.asyncio
async def test_rejected_candidate_during_flush_is_skipped() -> None:
    negotiator, pc = make_negotiator()
    await negotiator.handle_remote_candidate(candidate_payload(1))
    await negotiator.handle_remote_candidate({"candidate": "bogus", "sdpMid": "0"})
    await negotiator.handle_remote_candidate(candidate_payload(2))

    await negotiator.handle_remote_offer(offer_payload(), "b")

    assert len(pc.added_candidates) == 2


@pytest.mark.asyncio
async def test_candidate_queue_drops_oldest_when_full() -> None:
    negotiator, _ = make_negotiator(limit=2)

    for n in range(1, 4):
        await negotiator.handle_remote_candidate(candidate_payload(n))

    assert [c.candidate for c in negotiator.pending_candidates] == [
        candidate_payload(2)["candidate"],
        candidate_payload(3)["candidate"],
    ]
    assert negotiator.dropped_candidates == 1


@pytest.mark.asyncio
async def test_end_of_candidates_marker_is_accepted() -> None:
    negotiator, pc = make_negotiator()
    await negotiator.handle_remote_offer(offer_payload(), "b")

    await negotiator.handle_remote_candidate({"candidate": "", "sdpMid": None, "sdpMLineIndex": None})

    assert pc.added_candidates[-1].is_end_of_candidates


@pytest.mark.asyncio
async def test_local_candidates_are_forwarded_once_in_order() -> None:
    negotiator, pc = make_negotiator()
    forwarded = []
    negotiator.on_local_candidate(forwarded.append)

    first = IceCandidate("candidate:1 1 udp 1 10.0.0.1 9 typ host", "0", 0)
    second = IceCandidate("candidate:2 1 udp 1 10.0.0.2 9 typ host", "0", 0)
    pc.discover(first)
    pc.discover(second)
    pc.discover(first)

    assert forwarded == [first, second]


@pytest.mark.asyncio
async def test_ice_state_changes_are_exposed() -> None:
    negotiator, pc = make_negotiator()
    seen = []
    negotiator.on_state_change(lambda n: seen.append(n.ice_state))

    pc.report_ice_state("checking")
    pc.report_ice_state("completed")
    assert negotiator.health is ConnectionHealth.CONNECTED

    pc.report_ice_state("disconnected")
    assert negotiator.health is ConnectionHealth.DEGRADED

    pc.report_ice_state("failed")
    assert negotiator.health is ConnectionHealth.FAILED
    assert seen == [
        IceConnectionState.CHECKING,
        IceConnectionState.COMPLETED,
        IceConnectionState.DISCONNECTED,
        IceConnectionState.FAILED,
    ]


@pytest.mark.asyncio
async def test_remote_track_reaches_listener() -> None:
    negotiator, pc = make_negotiator()
    tracks = []
    negotiator.on_remote_track(tracks.append)

    pc.deliver_track("remote-video")

    assert tracks == ["remote-video"]


@pytest.mark.asyncio
async def test_close_is_idempotent() -> None:
    negotiator, pc = make_negotiator()
    await negotiator.initiate()

    await negotiator.close()
    await negotiator.close()

    assert negotiator.state is SignalingState.CLOSED
    assert pc.close_calls == 1
    assert pc.unsubscribed is True


@pytest.mark.asyncio
async def test_handlers_are_noops_after_close() -> None:
    negotiator, pc = make_negotiator()
    await negotiator.close()

    assert await negotiator.initiate() is None
    assert await negotiator.handle_remote_offer(offer_payload(), "b") is None
    assert await negotiator.handle_remote_answer(answer_payload()) is None
    assert await negotiator.handle_remote_candidate(candidate_payload(1)) is False
    assert pc.remote_description is None
    assert negotiator.state is SignalingState.CLOSED


@pytest.mark.asyncio
async def test_close_during_inflight_offer_handling() -> None:
    negotiator, pc = make_negotiator()

    task = asyncio.create_task(negotiator.handle_remote_offer(offer_payload(), "b"))
    await negotiator.close()
    result = await task

    assert result is None
    assert negotiator.state is SignalingState.CLOSED


@pytest.mark.asyncio
async def test_glare_smaller_id_answers_larger_id_keeps_offer() -> None:
    alice, alice_pc = make_negotiator(local_id="aaaa")
    bob, bob_pc = make_negotiator(local_id="bbbb")

    alice_offer = await alice.initiate()
    bob_offer = await bob.initiate()

    # Alice has the smaller id: she yields and answers Bob's offer.
    alice_answer = await alice.handle_remote_offer(bob_offer.to_dict(), "bbbb")
    assert alice_pc.rollbacks == 1
    assert alice.state is SignalingState.STABLE

    # Bob keeps his offer and ignores Alice's.
    with pytest.raises(AlreadyNegotiating):
        await bob.handle_remote_offer(alice_offer.to_dict(), "aaaa")
    assert bob.state is SignalingState.HAVE_LOCAL_OFFER

    await bob.handle_remote_answer(alice_answer.to_dict())
    assert bob.state is SignalingState.STABLE
    assert bob_pc.rollbacks == 0


@pytest.mark.asyncio
async def test_glare_with_unknown_sender_keeps_local_offer() -> None:
    negotiator, pc = make_negotiator(local_id="aaaa")
    await negotiator.initiate()

    with pytest.raises(AlreadyNegotiating):
        await negotiator.handle_remote_offer(offer_payload(), None)

    assert pc.rollbacks == 0
    assert negotiator.state is SignalingState.HAVE_LOCAL_OFFER


class AssertingPeerConnection(FakePeerConnection):
    async def set_remote_description(self, description):
        assert "m=video x y" not in description.sdp
        await super().set_remote_description(description)


class FailingAnswerPeerConnection(FakePeerConnection):
    fail_answers = 1

    async def create_answer(self):
        if self.fail_answers:
            self.fail_answers -= 1
            raise RuntimeError("no transceivers to answer with")
        return await super().create_answer()


@pytest.mark.asyncio
async def test_offer_failing_backend_assertion_returns_to_idle() -> None:
    pc = AssertingPeerConnection()
    negotiator = SessionNegotiator(pc, local_id="a")

    with pytest.raises(InvalidSignal):
        await negotiator.handle_remote_offer({"type": "offer", "sdp": "v=0\r\nm=video x y\r\n"}, "b")

    assert negotiator.state is SignalingState.IDLE
    assert negotiator.remote_description is None
    assert pc.rollbacks == 0
    assert (await negotiator.handle_remote_offer(offer_payload(), "b")).type == "answer"
    assert negotiator.state is SignalingState.STABLE


@pytest.mark.asyncio
async def test_answer_creation_failure_rolls_back_and_returns_to_idle() -> None:
    pc = FailingAnswerPeerConnection()
    negotiator = SessionNegotiator(pc, local_id="a")
    await negotiator.handle_remote_candidate(candidate_payload(1))

    with pytest.raises(InvalidSignal):
        await negotiator.handle_remote_offer(offer_payload(), "b")

    assert negotiator.state is SignalingState.IDLE
    assert negotiator.remote_description is None
    assert pc.rollbacks == 1
    assert len(negotiator.pending_candidates) == 1

    await negotiator.handle_remote_offer(offer_payload("retry"), "b")
    assert negotiator.state is SignalingState.STABLE
    assert negotiator.pending_candidates == ()


@pytest.mark.asyncio
async def test_answer_failing_backend_assertion_keeps_offer_outstanding() -> None:
    pc = AssertingPeerConnection()
    negotiator = SessionNegotiator(pc, local_id="a")
    await negotiator.initiate()

    with pytest.raises(InvalidSignal):
        await negotiator.handle_remote_answer({"type": "answer", "sdp": "v=0\r\nm=video x y\r\n"})

    assert negotiator.state is SignalingState.HAVE_LOCAL_OFFER
    await negotiator.handle_remote_answer(answer_payload())
    assert negotiator.state is SignalingState.STABLE
