"""Who may join which room.

Room ids are opaque and chosen by clients. Two shapes are in use: direct
rooms named after a pair of user ids (``"3|17"``) and ad-hoc call codes.

Policies:
    open    anyone who knows a room id may join it
    pair    pair rooms are restricted to their two users, other ids are open
    strict  only pair rooms may be joined, and only by their two users
"""
from typing import Callable, Dict, Optional, Tuple

from reelgram.signaling.errors import RoomAccessDenied

PAIR_SEPARATOR = "|"

AccessPolicy = Callable[[str, str], None]


def room_for(a, b) -> str:
    """Room id shared by two users: their ids sorted and joined."""
    return PAIR_SEPARATOR.join(sorted((str(a), str(b))))


def pair_members(room_id: str) -> Optional[Tuple[str, str]]:
    parts = room_id.split(PAIR_SEPARATOR)
    if len(parts) != 2 or not all(parts):
        return None
    return parts[0], parts[1]


def allow_all(user_id: str, room_id: str) -> None:
    return None


def pair_only_members(user_id: str, room_id: str) -> None:
    members = pair_members(room_id)
    if members is not None and str(user_id) not in members:
        raise RoomAccessDenied(f"Room {room_id} belongs to other users")


def strict_pairs(user_id: str, room_id: str) -> None:
    if pair_members(room_id) is None:
        raise RoomAccessDenied(f"Room {room_id} is not a direct room")
    pair_only_members(user_id, room_id)


POLICIES: Dict[str, AccessPolicy] = {
    "open": allow_all,
    "pair": pair_only_members,
    "strict": strict_pairs,
}


def get_access_policy(name: str) -> AccessPolicy:
    try:
        return POLICIES[name.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown room access policy {name!r}; expected one of {sorted(POLICIES)}")
