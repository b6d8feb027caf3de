"""Room registry: which connections are in which signaling room.

A room exists only while it has at least one participant. It is created by
the first ``join`` and removed by the ``leave`` (or disconnect cleanup) that
empties it. The registry performs no authorization; see ``policy`` for that.

Architecture:
    - _rooms: room_id -> set of participants
    - _memberships: participant -> set of room_ids (for disconnect cleanup)

All mutation happens under a single asyncio.Lock. Broadcasts take a snapshot
of the room under the lock and deliver outside it.
"""
import asyncio
import logging
from typing import Any, Dict, FrozenSet, Hashable, List, Optional, Protocol, Set

from reelgram.signaling.errors import RoomNotFound

logger = logging.getLogger(__name__)


class Participant(Protocol):
    """Anything that can sit in a room and accept room-scoped messages."""

    def deliver(self, room_id: str, message: Dict[str, Any]) -> None:
        ...


class RoomRegistry:
    def __init__(self):
        self._rooms: Dict[str, Set[Hashable]] = {}
        self._memberships: Dict[Hashable, Set[str]] = {}
        self._lock = asyncio.Lock()

    async def join(self, participant: Participant, room_id: str) -> bool:
        """Add ``participant`` to ``room_id``, creating the room if needed.

        Returns False when the participant was already a member.
        """
        async with self._lock:
            members = self._rooms.get(room_id)
            if members is None:
                members = self._rooms[room_id] = set()
                logger.info(f"🆕 Room {room_id} created")
            if participant in members:
                return False
            members.add(participant)
            self._memberships.setdefault(participant, set()).add(room_id)
            logger.info(f"✅ {participant} joined room {room_id} ({len(members)} in room)")
            return True

    async def leave(self, participant: Participant, room_id: str) -> bool:
        async with self._lock:
            return self._remove(participant, room_id)

    async def leave_all(self, participant: Participant) -> List[str]:
        """Remove ``participant`` from every room; used on disconnect."""
        async with self._lock:
            room_ids = sorted(self._memberships.get(participant, ()))
            for room_id in room_ids:
                self._remove(participant, room_id)
            return room_ids

    def _remove(self, participant: Participant, room_id: str) -> bool:
        members = self._rooms.get(room_id)
        if not members or participant not in members:
            return False
        members.discard(participant)
        rooms = self._memberships.get(participant)
        if rooms is not None:
            rooms.discard(room_id)
            if not rooms:
                del self._memberships[participant]
        logger.info(f"❌ {participant} left room {room_id}")
        if not members:
            del self._rooms[room_id]
            logger.info(f"🗑️  Room {room_id} is now empty")
        return True

    async def broadcast(self, room_id: str, message: Dict[str, Any],
                        exclude: Optional[Participant] = None) -> int:
        """Deliver ``message`` to everyone in the room except ``exclude``.

        An unknown or empty room is a no-op. A participant whose delivery
        fails is skipped; the sender is never told. Returns the number of
        participants the message was handed to.
        """
        try:
            targets = await self.recipients(room_id, exclude)
        except RoomNotFound:
            logger.debug(f"Broadcast to unknown room {room_id} dropped")
            return 0

        delivered = 0
        for participant in targets:
            try:
                participant.deliver(room_id, message)
                delivered += 1
            except Exception as e:
                logger.warning(f"⚠️  Delivery to {participant} in room {room_id} failed: {e}")
        return delivered

    async def recipients(self, room_id: str, exclude: Optional[Participant] = None) -> List[Participant]:
        """Snapshot of the room's participants other than ``exclude``.

        Raises RoomNotFound when the room does not exist.
        """
        async with self._lock:
            members = self._rooms.get(room_id)
            if members is None:
                raise RoomNotFound(room_id)
            return [p for p in members if p is not exclude]

    def members(self, room_id: str) -> FrozenSet[Participant]:
        return frozenset(self._rooms.get(room_id, ()))

    def rooms_of(self, participant: Participant) -> FrozenSet[str]:
        return frozenset(self._memberships.get(participant, ()))

    def is_member(self, participant: Participant, room_id: str) -> bool:
        return participant in self._rooms.get(room_id, ())

    def room_count(self, room_id: str) -> int:
        return len(self._rooms.get(room_id, ()))

    def __contains__(self, room_id: str) -> bool:
        return room_id in self._rooms

    def __len__(self) -> int:
        return len(self._rooms)
