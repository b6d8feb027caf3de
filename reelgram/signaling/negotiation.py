r"""Two-party call negotiation (offer / answer / ICE candidates) for one room.

A ``CallSession`` is one participant's view of a call. It never touches
media itself: a ``MediaEngine`` (a browser bridge, aiortc, or a fake in
tests) does that, and a ``SignalTransport`` carries messages to the peer.

States::

    IDLE -> AWAITING_MEDIA -> OFFER_SENT ---------> ANSWER_EXCHANGED -> CONNECTED
                           \-> OFFER_RECEIVED ---/

Any state goes back to IDLE on hangup, peer loss, negotiation timeout or any
failure while negotiating. The timeout runs on both sides from the offer
until ``mark_connected``.

Messages that arrive for a step already taken (the same offer again, a late
answer) are ignored, which keeps the session stable when the fallback
channel delivers the same message twice. A *different* offer after the
session has answered means the peer restarted, and negotiation starts over
from it.
"""
import asyncio
import logging
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol, Set, Union

from reelgram.signaling.errors import MediaAcquisitionFailed, StaleNegotiationMessage
from reelgram.signaling.messages import (
    AnswerMessage,
    CandidateMessage,
    IceCandidate,
    JoinMessage,
    OfferMessage,
    SessionDescription,
    candidate_key,
    parse_signal,
)

logger = logging.getLogger(__name__)

Description = Union[SessionDescription, str]


class CallState(str, Enum):
    IDLE = "idle"
    AWAITING_MEDIA = "awaiting_media"
    OFFER_SENT = "offer_sent"
    OFFER_RECEIVED = "offer_received"
    ANSWER_EXCHANGED = "answer_exchanged"
    CONNECTED = "connected"


class MediaEngine(Protocol):
    async def acquire_media(self) -> None: ...

    async def create_offer(self) -> Description: ...

    async def create_answer(self) -> Description: ...

    async def set_remote_description(self, description: Description) -> None: ...

    async def add_ice_candidate(self, candidate: IceCandidate) -> None: ...

    async def close(self) -> None: ...


class SignalTransport(Protocol):
    async def send(self, room_id: str, message) -> None: ...


StateListener = Callable[[CallState, CallState], None]

# States in which a different offer from the peer starts over
_RENEGOTIABLE = (CallState.OFFER_RECEIVED, CallState.ANSWER_EXCHANGED, CallState.CONNECTED)


class CallSession:
    def __init__(self, room_id: str, transport: SignalTransport, engine_factory: Callable[[], MediaEngine],
                 *, auto_answer: bool = True, negotiation_timeout: Optional[float] = 30.0):
        self.room_id = room_id
        self.transport = transport
        self.engine_factory = engine_factory
        self.auto_answer = auto_answer
        self.negotiation_timeout = negotiation_timeout
        self.state = CallState.IDLE
        self.engine: Optional[MediaEngine] = None
        self._remote_set = False
        self._remote_offer: Optional[Description] = None
        self._pending: Dict[str, IceCandidate] = {}
        self._applied: Set[str] = set()
        self._timeout_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        self._listeners: List[StateListener] = []

    def __repr__(self) -> str:
        return f"<CallSession {self.room_id} {self.state.value}>"

    def on_state_change(self, listener: StateListener) -> StateListener:
        self._listeners.append(listener)
        return listener

    @property
    def pending_candidates(self) -> int:
        return len(self._pending)

    # Caller side

    async def start_call(self) -> None:
        """Acquire media, send an offer and wait for the answer.

        Calling this mid-negotiation drops the current attempt and starts a
        fresh one, which is how a lost offer or answer is recovered from.
        Raises MediaAcquisitionFailed if media cannot be acquired. Any failure
        leaves the session back in IDLE.
        """
        async with self._lock:
            if self.state is not CallState.IDLE:
                logger.info(f"{self}: restarting negotiation")
                await self._reset()
            self._set_state(CallState.AWAITING_MEDIA)
            try:
                engine = await self._acquire()
                offer = await engine.create_offer()
                self._set_state(CallState.OFFER_SENT)
                await self.transport.send(self.room_id, OfferMessage(sdp=offer))
            except Exception:
                await self._reset()
                raise
            self._arm_timeout()

    # Callee side

    async def accept(self) -> bool:
        """Answer a received offer (only needed when ``auto_answer`` is off)."""
        async with self._lock:
            if self.state is not CallState.OFFER_RECEIVED:
                return False
            try:
                await self._send_answer()
            except Exception:
                await self._reset()
                raise
            return True

    # Inbound signals

    async def handle_signal(self, message) -> None:
        if isinstance(message, (dict, str, bytes)):
            message = parse_signal(message)
        async with self._lock:
            try:
                match message:
                    case OfferMessage():
                        await self._on_offer(message)
                    case AnswerMessage():
                        await self._on_answer(message)
                    case CandidateMessage(candidate=candidate):
                        await self._on_candidate(candidate)
                    case JoinMessage():
                        pass
                    case _:
                        raise TypeError(f"Unhandled signal message {message!r}")
            except StaleNegotiationMessage as e:
                logger.debug(f"{self}: ignored {message.type}: {e}")
            except Exception as e:
                logger.warning(f"{self}: {message.type} failed, resetting: {e}")
                await self._reset()
                raise

    async def _on_offer(self, message: OfferMessage) -> None:
        if self.state is not CallState.IDLE:
            if message.sdp == self._remote_offer:
                raise StaleNegotiationMessage("duplicate offer")
            if self.state not in _RENEGOTIABLE:
                raise StaleNegotiationMessage(f"offer while {self.state.value}")
            # The peer restarted; its new offer replaces the current call
            logger.info(f"{self}: new offer from peer, restarting negotiation")
            await self._reset()
        self._set_state(CallState.AWAITING_MEDIA)
        engine = await self._acquire()
        await engine.set_remote_description(message.sdp)
        self._remote_offer = message.sdp
        await self._flush_pending()
        self._set_state(CallState.OFFER_RECEIVED)
        self._arm_timeout()
        if self.auto_answer:
            await self._send_answer()

    async def _send_answer(self) -> None:
        answer = await self.engine.create_answer()
        await self.transport.send(self.room_id, AnswerMessage(sdp=answer))
        self._set_state(CallState.ANSWER_EXCHANGED)

    async def _on_answer(self, message: AnswerMessage) -> None:
        if self.state is not CallState.OFFER_SENT:
            raise StaleNegotiationMessage(f"answer while {self.state.value}")
        await self.engine.set_remote_description(message.sdp)
        await self._flush_pending()
        self._set_state(CallState.ANSWER_EXCHANGED)

    async def _on_candidate(self, candidate: IceCandidate) -> None:
        key = candidate_key(candidate)
        if key in self._applied or key in self._pending:
            raise StaleNegotiationMessage("duplicate candidate")
        if self.engine is None or not self._remote_set:
            self._pending[key] = candidate
            return
        await self._apply(key, candidate)

    async def _flush_pending(self) -> None:
        self._remote_set = True
        pending, self._pending = self._pending, {}
        for key, candidate in pending.items():
            await self._apply(key, candidate)

    async def _apply(self, key: str, candidate: IceCandidate) -> None:
        self._applied.add(key)
        try:
            await self.engine.add_ice_candidate(candidate)
        except Exception as e:
            logger.warning(f"{self}: candidate rejected by media engine: {e}")

    # Local events

    async def local_candidate(self, candidate: IceCandidate) -> None:
        """Send a locally gathered candidate to the peer."""
        if self.state is CallState.IDLE:
            return
        await self.transport.send(self.room_id, CandidateMessage(candidate=candidate))

    def mark_connected(self) -> None:
        if self.state is CallState.ANSWER_EXCHANGED:
            self._cancel_timeout()
            self._set_state(CallState.CONNECTED)

    async def hangup(self) -> None:
        """Release media and return to IDLE. The peer is not told."""
        async with self._lock:
            await self._reset()

    async def peer_left(self) -> None:
        async with self._lock:
            if self.state is not CallState.IDLE:
                logger.info(f"{self}: peer left, resetting")
                await self._reset()

    # Internals

    async def _acquire(self) -> MediaEngine:
        self.engine = self.engine_factory()
        try:
            await self.engine.acquire_media()
        except Exception as e:
            await self._reset()
            if isinstance(e, MediaAcquisitionFailed):
                raise
            raise MediaAcquisitionFailed(str(e)) from e
        return self.engine

    async def _reset(self) -> None:
        self._cancel_timeout()
        engine, self.engine = self.engine, None
        if engine is not None:
            try:
                await engine.close()
            except Exception as e:
                logger.warning(f"{self}: error releasing media: {e}")
        self._remote_set = False
        self._remote_offer = None
        self._pending.clear()
        self._applied.clear()
        self._set_state(CallState.IDLE)

    def _set_state(self, new: CallState) -> None:
        old, self.state = self.state, new
        if old is new:
            return
        logger.debug(f"{self.room_id}: {old.value} -> {new.value}")
        for listener in self._listeners:
            listener(old, new)

    def _arm_timeout(self) -> None:
        if self.negotiation_timeout is None:
            return
        self._cancel_timeout()
        self._timeout_task = asyncio.create_task(self._expire(self.negotiation_timeout))

    def _cancel_timeout(self) -> None:
        task, self._timeout_task = self._timeout_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _expire(self, delay: float) -> None:
        await asyncio.sleep(delay)
        async with self._lock:
            if self.state not in (CallState.IDLE, CallState.CONNECTED):
                logger.info(f"{self}: not connected after {delay}s, giving up")
                await self._reset()
