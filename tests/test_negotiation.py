import asyncio
import itertools

import pytest

from reelgram.signaling.errors import MediaAcquisitionFailed
from reelgram.signaling.messages import (
    AnswerMessage,
    CandidateMessage,
    IceCandidate,
    OfferMessage,
    SessionDescription,
)
from reelgram.signaling.negotiation import CallSession, CallState


class FakeEngine:
    _offers = itertools.count(1)

    def __init__(self, fail=False, broken=None):
        self.fail = fail
        self.broken = broken
        self.acquired = False
        self.remote = None
        self.candidates = []
        self.closed = False

    async def acquire_media(self):
        if self.fail:
            raise PermissionError("camera permission denied")
        self.acquired = True

    def _check(self, step):
        if self.broken == step:
            raise ValueError(f"{step} failed")

    async def create_offer(self):
        self._check("create_offer")
        # Every offer a real engine makes carries a fresh session id
        return SessionDescription(type="offer", sdp=f"v=0 offer {next(self._offers)}")

    async def create_answer(self):
        self._check("create_answer")
        return SessionDescription(type="answer", sdp="v=0 answer")

    async def set_remote_description(self, description):
        self._check("set_remote_description")
        self.remote = description

    async def add_ice_candidate(self, candidate):
        self.candidates.append(candidate)

    async def close(self):
        self.closed = True


class Wire:
    """Records what a session sends; tests hand messages to the peer."""

    def __init__(self):
        self.sent = []
        self.down = False

    async def send(self, room_id, message):
        if self.down:
            raise ConnectionError("transport closed")
        self.sent.append((room_id, message))

    def of_type(self, kind):
        return [m for _, m in self.sent if m.type == kind]


def make_session(room="call-42", *, fail=False, broken=None, **kwargs):
    engines = []

    def factory():
        engines.append(FakeEngine(fail=fail, broken=broken))
        return engines[-1]

    wire = Wire()
    return CallSession(room, wire, factory, **kwargs), wire, engines


def candidate(n):
    return IceCandidate(candidate=f"candidate:{n} 1 udp 2122260223 10.0.0.{n} 5000{n} typ host",
                        sdpMid="0", sdpMLineIndex=0)


async def test_offer_answer_handshake():
    caller, caller_wire, caller_engines = make_session()
    callee, callee_wire, callee_engines = make_session(auto_answer=False)

    await caller.start_call()
    assert caller.state is CallState.OFFER_SENT
    assert caller_engines[0].acquired
    [(room, offer)] = caller_wire.sent
    assert room == "call-42"
    assert isinstance(offer, OfferMessage)

    await callee.handle_signal(offer)
    assert callee.state is CallState.OFFER_RECEIVED
    assert callee_engines[0].remote == offer.sdp
    assert callee_wire.sent == []

    assert await callee.accept() is True
    assert callee.state is CallState.ANSWER_EXCHANGED
    [(_, answer)] = callee_wire.sent
    assert isinstance(answer, AnswerMessage)

    await caller.handle_signal(answer)
    assert caller.state is CallState.ANSWER_EXCHANGED
    assert caller_engines[0].remote == answer.sdp

    caller.mark_connected()
    assert caller.state is CallState.CONNECTED


async def test_auto_answer_replies_immediately():
    callee, wire, _ = make_session()
    await callee.handle_signal({"type": "offer", "sdp": "v=0..."})

    assert callee.state is CallState.ANSWER_EXCHANGED
    assert len(wire.of_type("answer")) == 1


async def test_second_answer_is_ignored():
    caller, _, engines = make_session()
    await caller.start_call()
    await caller.handle_signal(AnswerMessage(sdp="v=0 first"))
    assert caller.state is CallState.ANSWER_EXCHANGED

    await caller.handle_signal(AnswerMessage(sdp="v=0 second"))

    assert caller.state is CallState.ANSWER_EXCHANGED
    assert engines[0].remote == "v=0 first"


async def test_answer_without_offer_is_ignored():
    session, _, engines = make_session()
    await session.handle_signal(AnswerMessage(sdp="v=0 stray"))
    assert session.state is CallState.IDLE
    assert engines == []


async def test_duplicate_offer_has_no_further_effect():
    once, once_wire, _ = make_session()
    twice, twice_wire, twice_engines = make_session()
    offer = OfferMessage(sdp="v=0...")

    await once.handle_signal(offer)
    await twice.handle_signal(offer)
    await twice.handle_signal(offer)

    assert twice.state is once.state is CallState.ANSWER_EXCHANGED
    assert len(twice_wire.sent) == len(once_wire.sent) == 1
    assert len(twice_engines) == 1


async def test_offer_while_waiting_for_answer_is_ignored():
    caller, wire, engines = make_session()
    await caller.start_call()
    await caller.handle_signal(OfferMessage(sdp="v=0 glare"))

    assert caller.state is CallState.OFFER_SENT
    assert engines[0].remote is None
    assert len(wire.sent) == 1


async def test_candidates_before_remote_description_are_buffered():
    callee, _, engines = make_session()
    await callee.handle_signal(CandidateMessage(candidate=candidate(1)))
    await callee.handle_signal(CandidateMessage(candidate=candidate(2)))
    assert callee.pending_candidates == 2
    assert engines == []

    await callee.handle_signal(OfferMessage(sdp="v=0..."))

    assert callee.pending_candidates == 0
    assert engines[0].candidates == [candidate(1), candidate(2)]


async def test_caller_buffers_candidates_until_answer():
    caller, _, engines = make_session()
    await caller.start_call()
    await caller.handle_signal(CandidateMessage(candidate=candidate(1)))
    assert engines[0].candidates == []

    await caller.handle_signal(AnswerMessage(sdp="v=0 answer"))
    assert engines[0].candidates == [candidate(1)]


async def test_duplicate_candidate_is_applied_once():
    callee, _, engines = make_session()
    await callee.handle_signal(OfferMessage(sdp="v=0..."))
    message = {"type": "candidate", "candidate": candidate(3).model_dump(by_alias=True)}

    await callee.handle_signal(message)
    await callee.handle_signal(message)

    assert engines[0].candidates == [candidate(3)]
    assert callee.state is CallState.ANSWER_EXCHANGED


async def test_local_candidates_are_sent_while_negotiating():
    caller, wire, _ = make_session()
    await caller.local_candidate(candidate(1))
    assert wire.sent == []

    await caller.start_call()
    await caller.local_candidate(candidate(1))
    assert [m.candidate for m in wire.of_type("candidate")] == [candidate(1)]


async def test_media_failure_resets_to_idle():
    caller, wire, _ = make_session(fail=True)
    with pytest.raises(MediaAcquisitionFailed):
        await caller.start_call()
    assert caller.state is CallState.IDLE
    assert wire.sent == []

    callee, _, _ = make_session(fail=True)
    with pytest.raises(MediaAcquisitionFailed):
        await callee.handle_signal(OfferMessage(sdp="v=0..."))
    assert callee.state is CallState.IDLE


async def test_unanswered_offer_times_out():
    caller, _, engines = make_session(negotiation_timeout=0.01)
    await caller.start_call()
    assert caller.state is CallState.OFFER_SENT

    await asyncio.sleep(0.1)

    assert caller.state is CallState.IDLE
    assert engines[0].closed


async def test_connecting_cancels_timeout():
    caller, _, _ = make_session(negotiation_timeout=0.05)
    await caller.start_call()
    await caller.handle_signal(AnswerMessage(sdp="v=0 answer"))
    caller.mark_connected()

    await asyncio.sleep(0.1)

    assert caller.state is CallState.CONNECTED


async def test_answered_call_that_never_connects_times_out():
    caller, _, engines = make_session(negotiation_timeout=0.05)
    await caller.start_call()
    await caller.handle_signal(AnswerMessage(sdp="v=0 answer"))

    await asyncio.sleep(0.1)

    assert caller.state is CallState.IDLE
    assert engines[0].closed


async def test_callee_times_out_when_caller_vanishes():
    callee, _, engines = make_session(negotiation_timeout=0.01)
    await callee.handle_signal(OfferMessage(sdp="v=0..."))
    assert callee.state is CallState.ANSWER_EXCHANGED

    await asyncio.sleep(0.1)

    assert callee.state is CallState.IDLE
    assert engines[0].closed


async def test_new_offer_after_answering_restarts_negotiation():
    callee, wire, engines = make_session()
    await callee.handle_signal(OfferMessage(sdp="v=0 first"))
    await callee.handle_signal(OfferMessage(sdp="v=0 second"))

    assert callee.state is CallState.ANSWER_EXCHANGED
    assert len(wire.of_type("answer")) == 2
    assert engines[0].closed
    assert engines[1].remote == "v=0 second"

    # The same offer delivered again is still a duplicate
    await callee.handle_signal(OfferMessage(sdp="v=0 second"))
    assert len(wire.of_type("answer")) == 2
    assert len(engines) == 2


async def test_caller_restart_recovers_lost_answer():
    caller, caller_wire, _ = make_session()
    callee, callee_wire, _ = make_session()

    await caller.start_call()
    await callee.handle_signal(caller_wire.sent[-1][1])
    callee_wire.sent.clear()  # the answer never arrives

    await caller.start_call()
    await callee.handle_signal(caller_wire.sent[-1][1])
    [(_, answer)] = callee_wire.sent
    await caller.handle_signal(answer)

    assert caller.state is callee.state is CallState.ANSWER_EXCHANGED


async def test_new_offer_after_connecting_restarts_negotiation():
    callee, wire, _ = make_session()
    await callee.handle_signal(OfferMessage(sdp="v=0 first"))
    callee.mark_connected()

    await callee.handle_signal(OfferMessage(sdp="v=0 second"))

    assert callee.state is CallState.ANSWER_EXCHANGED
    assert len(wire.of_type("answer")) == 2


async def test_bad_remote_offer_resets_to_idle():
    callee, wire, engines = make_session(broken="set_remote_description")
    with pytest.raises(ValueError):
        await callee.handle_signal(OfferMessage(sdp="v=0 garbled"))

    assert callee.state is CallState.IDLE
    assert engines[0].closed
    assert wire.sent == []


async def test_bad_remote_answer_resets_to_idle():
    caller, _, engines = make_session(broken="set_remote_description")
    await caller.start_call()
    with pytest.raises(ValueError):
        await caller.handle_signal(AnswerMessage(sdp="v=0 garbled"))

    assert caller.state is CallState.IDLE
    assert engines[0].closed


async def test_failed_answer_resets_to_idle():
    callee, _, engines = make_session(broken="create_answer", auto_answer=False)
    await callee.handle_signal(OfferMessage(sdp="v=0..."))
    assert callee.state is CallState.OFFER_RECEIVED

    with pytest.raises(ValueError):
        await callee.accept()
    assert callee.state is CallState.IDLE
    assert engines[0].closed


async def test_failed_send_resets_to_idle():
    caller, wire, engines = make_session()
    wire.down = True
    with pytest.raises(ConnectionError):
        await caller.start_call()
    assert caller.state is CallState.IDLE
    assert engines[0].closed

    callee, callee_wire, callee_engines = make_session()
    callee_wire.down = True
    with pytest.raises(ConnectionError):
        await callee.handle_signal(OfferMessage(sdp="v=0..."))
    assert callee.state is CallState.IDLE
    assert callee_engines[0].closed

    # A later offer is negotiated normally once the transport is back
    callee_wire.down = False
    await callee.handle_signal(OfferMessage(sdp="v=0..."))
    assert callee.state is CallState.ANSWER_EXCHANGED


async def test_peer_leaving_mid_offer_resets():
    caller, _, engines = make_session()
    await caller.start_call()
    await caller.peer_left()
    assert caller.state is CallState.IDLE
    assert engines[0].closed


async def test_hangup_releases_media_and_allows_new_call():
    caller, wire, engines = make_session()
    await caller.start_call()
    await caller.handle_signal(AnswerMessage(sdp="v=0 answer"))
    caller.mark_connected()

    await caller.hangup()
    assert caller.state is CallState.IDLE
    assert engines[0].closed
    assert caller.engine is None

    await caller.start_call()
    assert caller.state is CallState.OFFER_SENT
    assert len(engines) == 2
    assert len(wire.of_type("offer")) == 2


async def test_restarting_mid_negotiation_sends_fresh_offer():
    caller, wire, engines = make_session()
    await caller.start_call()
    await caller.start_call()

    assert caller.state is CallState.OFFER_SENT
    assert engines[0].closed
    assert len(wire.of_type("offer")) == 2


async def test_state_listeners_see_transitions():
    caller, _, _ = make_session()
    seen = []
    caller.on_state_change(lambda old, new: seen.append(new))

    await caller.start_call()
    await caller.handle_signal(AnswerMessage(sdp="v=0 answer"))
    await caller.hangup()

    assert seen == [
        CallState.AWAITING_MEDIA,
        CallState.OFFER_SENT,
        CallState.ANSWER_EXCHANGED,
        CallState.IDLE,
    ]
