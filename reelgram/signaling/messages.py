"""Wire types for call signaling and relay events.

Signal messages are what peers exchange to negotiate a call; relay events are
the frames a client sends to the server over its WebSocket. Both are closed
unions discriminated by a tag field, so an unknown tag fails validation
instead of falling through a string switch.
"""
import json
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SessionDescription(_WireModel):
    type: Literal["offer", "answer", "pranswer", "rollback"]
    sdp: str


class IceCandidate(_WireModel):
    candidate: str
    sdp_mid: Optional[str] = Field(default=None, alias="sdpMid")
    sdp_m_line_index: Optional[int] = Field(default=None, alias="sdpMLineIndex")
    username_fragment: Optional[str] = Field(default=None, alias="usernameFragment")


class OfferMessage(_WireModel):
    type: Literal["offer"] = "offer"
    sdp: Union[SessionDescription, str]


class AnswerMessage(_WireModel):
    type: Literal["answer"] = "answer"
    sdp: Union[SessionDescription, str]


class CandidateMessage(_WireModel):
    type: Literal["candidate"] = "candidate"
    candidate: IceCandidate


class JoinMessage(_WireModel):
    type: Literal["join"] = "join"
    room_id: str = Field(alias="roomId", min_length=1)


SignalMessage = Annotated[
    Union[OfferMessage, AnswerMessage, CandidateMessage, JoinMessage],
    Field(discriminator="type"),
]
signal_adapter = TypeAdapter(SignalMessage)


def parse_signal(data: Any):
    """Validate a dict (or JSON text) into one of the signal message models."""
    if isinstance(data, (str, bytes)):
        return signal_adapter.validate_json(data)
    return signal_adapter.validate_python(data)


def dump_signal(message) -> Dict[str, Any]:
    return message.model_dump(mode="json", by_alias=True, exclude_none=True)


def candidate_key(candidate: IceCandidate) -> str:
    """Stable identity of a candidate, used to apply duplicates only once."""
    return json.dumps(candidate.model_dump(by_alias=True), sort_keys=True)


# Relay events (client -> server)

class JoinEvent(_WireModel):
    event: Literal["join"]
    room_id: str = Field(alias="roomId", min_length=1, max_length=255)


class LeaveEvent(_WireModel):
    event: Literal["leave"]
    room_id: str = Field(alias="roomId", min_length=1, max_length=255)


class SignalEvent(_WireModel):
    event: Literal["signal"]
    room_id: str = Field(alias="roomId", min_length=1, max_length=255)
    message: SignalMessage


class ChatSendEvent(_WireModel):
    event: Literal["chatSend"]
    to_user: str = Field(alias="toUser", min_length=1)
    text: str = Field(min_length=1)


RelayEvent = Annotated[
    Union[JoinEvent, LeaveEvent, SignalEvent, ChatSendEvent],
    Field(discriminator="event"),
]
relay_event_adapter = TypeAdapter(RelayEvent)
