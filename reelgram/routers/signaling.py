"""WebSocket relay endpoint and the HTTP fallback signaling queue."""
from typing import Any, Dict, Optional
import logging

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, WebSocket
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from reelgram.db import SessionLocal
from reelgram.db_models import User
from reelgram.security import get_current_user, user_from_token
from reelgram.signaling.errors import RoomAccessDenied
from reelgram.signaling.fallback import FallbackChannel
from reelgram.signaling.relay import Identity, Relay

logger = logging.getLogger(__name__)

router = APIRouter(tags=["signaling"])


def _identity_for_token(token: Optional[str]) -> Optional[Identity]:
    with SessionLocal() as db:
        user = user_from_token(db, token)
        if user is None:
            return None
        return Identity(user_id=str(user.id), username=user.username, display_name=user.display_name)


@router.websocket("/ws")
async def relay_endpoint(websocket: WebSocket, token: Optional[str] = Query(None)):
    relay: Relay = websocket.app.state.relay
    identity = await run_in_threadpool(_identity_for_token, token)
    if identity is None:
        await websocket.close(code=4001, reason="Unauthorized")
        return
    await relay.serve(websocket, identity)


def get_fallback(request: Request) -> FallbackChannel:
    return request.app.state.fallback


def _check_room(request: Request, user: User, room_id: str) -> None:
    try:
        request.app.state.access_policy(str(user.id), room_id)
    except RoomAccessDenied as e:
        raise HTTPException(status_code=403, detail=str(e))


@router.post("/api/signal/{room_id}")
def append_signal(
    room_id: str,
    request: Request,
    message: Dict[str, Any] = Body(...),
    sender: Optional[str] = Query(None, max_length=64, description="Client context id, defaults to the user id"),
    current_user: User = Depends(get_current_user),
    channel: FallbackChannel = Depends(get_fallback),
):
    _check_room(request, current_user, room_id)
    try:
        entry = channel.append(room_id, message, sender=sender or str(current_user.id))
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))
    return {"seq": entry.seq, "last_update": channel.last_update(room_id)}


@router.get("/api/signal/{room_id}")
def poll_signals(
    room_id: str,
    request: Request,
    since: Optional[int] = Query(None, ge=0, description="Only entries after this sequence number"),
    current_user: User = Depends(get_current_user),
    channel: FallbackChannel = Depends(get_fallback),
):
    _check_room(request, current_user, room_id)
    batch = channel.poll(room_id, since)
    return {
        "room_id": room_id,
        "entries": [e.as_dict() for e in batch.entries],
        "cursor": batch.cursor,
        "last_update": batch.last_update,
    }


@router.get("/api/signal/{room_id}/last")
def last_update(
    room_id: str,
    request: Request,
    current_user: User = Depends(get_current_user),
    channel: FallbackChannel = Depends(get_fallback),
):
    _check_room(request, current_user, room_id)
    return {"room_id": room_id, "last_update": channel.last_update(room_id)}
