"""Client-side signal transports for a ``CallSession``.

``RelayTransport`` sends through the realtime relay WebSocket;
``FallbackTransport`` appends to and polls the fallback queue. Both speak
the same signal messages, so a session does not care which one it got.
``select_transport`` picks one when the connection is set up.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from reelgram.signaling.errors import TransportUnavailable
from reelgram.signaling.fallback import FallbackChannel
from reelgram.signaling.messages import dump_signal
from reelgram.signaling.negotiation import CallSession, SignalTransport

logger = logging.getLogger(__name__)


class RelayTransport:
    """Wraps anything with an async ``send_json`` (a WebSocket client)."""

    def __init__(self, send_json: Callable[[Dict[str, Any]], Awaitable[None]]):
        self._send_json = send_json

    async def send(self, room_id: str, message) -> None:
        payload = message if isinstance(message, dict) else dump_signal(message)
        await self._send_json({"event": "signal", "roomId": room_id, "message": payload})

    async def join(self, room_id: str) -> None:
        await self._send_json({"event": "join", "roomId": room_id})

    @staticmethod
    def unwrap(frame: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """The signal message inside a relay ``receiveMessage`` frame, if any."""
        if frame.get("event") != "receiveMessage":
            return None
        return frame.get("message")

    @staticmethod
    async def dispatch(frame: Dict[str, Any], session: CallSession) -> bool:
        """Route a relay frame for the session's room into the session.

        Signal messages go to ``handle_signal``; a ``peerLeft`` resets the
        session. Returns False for frames that are not the session's business.
        """
        if frame.get("roomId") != session.room_id:
            return False
        match frame.get("event"):
            case "receiveMessage":
                await session.handle_signal(frame["message"])
            case "peerLeft":
                await session.peer_left()
            case _:
                return False
        return True


class FallbackTransport:
    """Signals through a ``FallbackChannel`` on behalf of one sender.

    Keeps a cursor per room so each ``fetch`` only returns what arrived since
    the last one, and never hands a sender back its own messages.
    """

    def __init__(self, channel: FallbackChannel, sender_id: str):
        self.channel = channel
        self.sender_id = sender_id
        self._cursors: Dict[str, Optional[int]] = {}
        self._markers: Dict[str, Optional[int]] = {}

    async def send(self, room_id: str, message) -> None:
        self.channel.append(room_id, message, sender=self.sender_id)

    def has_updates(self, room_id: str) -> bool:
        return self.channel.changed_since(room_id, self._markers.get(room_id))

    def fetch(self, room_id: str, *, replay: bool = False) -> List[Dict[str, Any]]:
        since = None if replay else self._cursors.get(room_id)
        batch = self.channel.poll(room_id, since)
        self._markers[room_id] = batch.last_update
        if batch.cursor is not None:
            self._cursors[room_id] = max(batch.cursor, self._cursors.get(room_id) or 0)
        return [e.message for e in batch.entries if e.sender != self.sender_id]

    async def drain_into(self, session: CallSession, *, replay: bool = False) -> int:
        """Feed every new message for the session's room into it."""
        messages = self.fetch(session.room_id, replay=replay)
        for message in messages:
            await session.handle_signal(message)
        return len(messages)


def select_transport(relay: Optional[SignalTransport], fallback: Optional[SignalTransport],
                     *, relay_available: bool) -> SignalTransport:
    """Prefer the relay when it is reachable, otherwise fall back.

    Raises TransportUnavailable when neither can be used.
    """
    if relay is not None and relay_available:
        return relay
    if fallback is not None:
        logger.info("Realtime relay unavailable, signaling through the fallback channel")
        return fallback
    raise TransportUnavailable("No signaling transport available")
