"""Realtime relay: one WebSocket per client, rooms fan-out through the registry.

Client -> server frames (tagged by ``event``):
    join       {"event": "join", "roomId"}
    leave      {"event": "leave", "roomId"}
    signal     {"event": "signal", "roomId", "message": {...}}
    chatSend   {"event": "chatSend", "toUser", "text"}

Server -> client frames:
    connected       sent once after the socket is accepted
    joined          ack of a join, with the other participants
    peerJoined      someone else joined a room you are in
    peerLeft        someone else left (or dropped out of) a room you are in
    receiveMessage  a signal message from another participant, unchanged
    chatMessage     a direct message to or from you
    error           your last frame was rejected; the socket stays open

Every connection has its own FIFO outbox drained by a writer task, so frames
from one sender reach each recipient in the order they were sent. Room-scoped
frames still queued for a room the recipient has since left are dropped.
"""
import asyncio
import contextlib
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from fastapi import WebSocket, WebSocketDisconnect

from reelgram.signaling.errors import RoomAccessDenied
from reelgram.signaling.messages import (
    ChatSendEvent,
    JoinEvent,
    JoinMessage,
    LeaveEvent,
    SignalEvent,
    relay_event_adapter,
)
from reelgram.signaling.policy import AccessPolicy, allow_all
from reelgram.signaling.registry import RoomRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    """Who is on the other end of a connection, as established at connect time."""

    user_id: str
    username: str
    display_name: str = ""

    def as_dict(self) -> Dict[str, str]:
        return {"id": self.user_id, "username": self.username, "displayName": self.display_name or self.username}


@dataclass(frozen=True)
class ChatDelivery:
    to_user_id: str
    payload: Dict[str, Any]


# (sender, toUser, text) -> delivery, or None when nothing was delivered
ChatSink = Callable[[Identity, str, str], Awaitable[Optional[ChatDelivery]]]
MessageHandler = Callable[["Connection", Any], Awaitable[None]]
LifecycleHandler = Callable[["Connection"], Awaitable[None]]


class Connection:
    def __init__(self, websocket: WebSocket, identity: Identity, registry: RoomRegistry):
        self.id = uuid.uuid4().hex
        self.websocket = websocket
        self.identity = identity
        self._registry = registry
        self._outbox: "asyncio.Queue[Tuple[Optional[str], Dict[str, Any]]]" = asyncio.Queue()
        self._writer: Optional[asyncio.Task] = None
        self.closed = False

    def __repr__(self) -> str:
        return f"<Connection {self.id[:8]} {self.identity.username}>"

    def describe(self) -> Dict[str, Any]:
        return {"connectionId": self.id, "user": self.identity.as_dict()}

    def start(self) -> None:
        self._writer = asyncio.create_task(self._drain())

    def send(self, message: Dict[str, Any]) -> None:
        if not self.closed:
            self._outbox.put_nowait((None, message))

    def deliver(self, room_id: str, message: Dict[str, Any]) -> None:
        if not self.closed:
            self._outbox.put_nowait((room_id, message))

    async def _drain(self) -> None:
        while True:
            room_id, message = await self._outbox.get()
            if room_id is not None and not self._registry.is_member(self, room_id):
                logger.debug(f"Dropped {message.get('event')} for {self}: no longer in room {room_id}")
                continue
            try:
                await self.websocket.send_json(message)
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.error(f"❌ Error sending to {self}: {e}")
                self.closed = True
                return

    async def stop(self) -> None:
        self.closed = True
        if self._writer is not None:
            self._writer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._writer
            self._writer = None


class Relay:
    def __init__(self, registry: RoomRegistry, *, access_policy: AccessPolicy = allow_all,
                 chat_sink: Optional[ChatSink] = None):
        self.registry = registry
        self.access_policy = access_policy
        self.chat_sink = chat_sink
        self._connections: Dict[str, Connection] = {}
        self._by_user: Dict[str, Set[Connection]] = {}
        self._message_handlers: List[MessageHandler] = []
        self._connect_handlers: List[LifecycleHandler] = []
        self._disconnect_handlers: List[LifecycleHandler] = []

    # Hooks

    def on_message(self, handler: MessageHandler) -> MessageHandler:
        self._message_handlers.append(handler)
        return handler

    def on_connect(self, handler: LifecycleHandler) -> LifecycleHandler:
        self._connect_handlers.append(handler)
        return handler

    def on_disconnect(self, handler: LifecycleHandler) -> LifecycleHandler:
        self._disconnect_handlers.append(handler)
        return handler

    # Lifecycle

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def connections_of(self, user_id: str) -> Set[Connection]:
        return set(self._by_user.get(str(user_id), ()))

    async def connect(self, websocket: WebSocket, identity: Identity) -> Connection:
        await websocket.accept()
        conn = Connection(websocket, identity, self.registry)
        self._connections[conn.id] = conn
        self._by_user.setdefault(identity.user_id, set()).add(conn)
        conn.start()
        conn.send({"event": "connected", **conn.describe()})
        logger.info(f"🔌 {conn} connected ({len(self._connections)} open)")
        for handler in self._connect_handlers:
            await handler(conn)
        return conn

    async def disconnect(self, conn: Connection) -> None:
        if self._connections.pop(conn.id, None) is None:
            return
        peers = self._by_user.get(conn.identity.user_id)
        if peers is not None:
            peers.discard(conn)
            if not peers:
                del self._by_user[conn.identity.user_id]

        for room_id in await self.registry.leave_all(conn):
            await self.registry.broadcast(room_id, self._peer_left(conn, room_id), exclude=conn)
        await conn.stop()
        logger.info(f"🔌 {conn} disconnected ({len(self._connections)} open)")
        for handler in self._disconnect_handlers:
            await handler(conn)

    async def serve(self, websocket: WebSocket, identity: Identity) -> None:
        """Run one client's receive loop until it goes away."""
        conn = await self.connect(websocket, identity)
        try:
            while True:
                raw = await websocket.receive_text()
                await self.handle_frame(conn, raw)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.exception(f"❌ Error in websocket for {conn}: {e}")
        finally:
            await self.disconnect(conn)

    async def close(self) -> None:
        """Close every open connection; called on server shutdown."""
        for conn in list(self._connections.values()):
            with contextlib.suppress(RuntimeError):
                await conn.websocket.close(code=1001)
            await self.disconnect(conn)

    # Outbound

    def send(self, conn: Connection, event: Dict[str, Any]) -> None:
        conn.send(event)

    async def broadcast_to_room(self, room_id: str, event: Dict[str, Any],
                                exclude: Optional[Connection] = None) -> int:
        return await self.registry.broadcast(room_id, event, exclude=exclude)

    # Inbound

    async def handle_frame(self, conn: Connection, raw: str) -> None:
        try:
            frame = json.loads(raw)
            event = relay_event_adapter.validate_python(frame)
        except ValueError as e:
            logger.info(f"📨 Rejected frame from {conn}: {e}")
            conn.send({"event": "error", "detail": "Malformed event"})
            return

        logger.debug(f"📨 {event.event} from {conn}")
        for handler in self._message_handlers:
            await handler(conn, event)
        await self.dispatch(conn, event, frame)

    async def dispatch(self, conn: Connection, event, frame: Dict[str, Any]) -> None:
        match event:
            case JoinEvent(room_id=room_id):
                await self.join(conn, room_id)
            case LeaveEvent(room_id=room_id):
                await self.leave(conn, room_id)
            case SignalEvent(message=JoinMessage(room_id=room_id)):
                await self.join(conn, room_id)
            case SignalEvent(room_id=room_id):
                await self.relay_signal(conn, room_id, frame["message"])
            case ChatSendEvent(to_user=to_user, text=text):
                await self.chat(conn, to_user, text)
            case _:
                raise TypeError(f"Unhandled relay event {event!r}")

    def _allowed(self, conn: Connection, room_id: str) -> bool:
        try:
            self.access_policy(conn.identity.user_id, room_id)
        except RoomAccessDenied as e:
            logger.warning(f"🚫 {conn} denied room {room_id}: {e}")
            conn.send({"event": "error", "detail": "Room access denied", "roomId": room_id})
            return False
        return True

    async def join(self, conn: Connection, room_id: str) -> None:
        if not self._allowed(conn, room_id):
            return
        changed = await self.registry.join(conn, room_id)
        others = [m.describe() for m in self.registry.members(room_id) if m is not conn]
        conn.send({"event": "joined", "roomId": room_id, "connectionId": conn.id, "participants": others})
        if changed:
            await self.registry.broadcast(
                room_id, {"event": "peerJoined", "roomId": room_id, **conn.describe()}, exclude=conn
            )

    async def leave(self, conn: Connection, room_id: str) -> None:
        if await self.registry.leave(conn, room_id):
            await self.registry.broadcast(room_id, self._peer_left(conn, room_id), exclude=conn)

    async def relay_signal(self, conn: Connection, room_id: str, message: Dict[str, Any]) -> None:
        if not self._allowed(conn, room_id):
            return
        await self.registry.broadcast(
            room_id,
            {"event": "receiveMessage", "roomId": room_id, "from": conn.id, "message": message},
            exclude=conn,
        )

    async def chat(self, conn: Connection, to_user: str, text: str) -> None:
        if self.chat_sink is None:
            conn.send({"event": "error", "detail": "Chat is not available"})
            return
        delivery = await self.chat_sink(conn.identity, to_user, text)
        if delivery is None:
            conn.send({"event": "error", "detail": "Message not delivered", "toUser": to_user})
            return
        targets = self.connections_of(delivery.to_user_id) | self.connections_of(conn.identity.user_id)
        targets.discard(conn)
        for target in targets:
            target.send(delivery.payload)

    @staticmethod
    def _peer_left(conn: Connection, room_id: str) -> Dict[str, Any]:
        return {"event": "peerLeft", "roomId": room_id, **conn.describe()}
