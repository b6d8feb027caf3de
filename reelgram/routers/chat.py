from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from reelgram.db import get_db
from reelgram.db_models import Message, User
from reelgram.schemas import ChatHistory, ChatMessageRead, UserRead
from reelgram.security import get_current_user
from reelgram.services.chat import find_user_by_name
from reelgram.signaling.policy import room_for

router = APIRouter(prefix="/api/chat", tags=["chat"])


@router.get("/{partner}", response_model=ChatHistory)
def chat_history(
    partner: str,
    limit: int = Query(200, ge=1, le=200),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    other = find_user_by_name(db, partner)
    if not other:
        raise HTTPException(status_code=404, detail="Partner not found")

    room = room_for(current_user.id, other.id)
    rows = (
        db.query(Message)
        .filter(Message.room == room)
        .order_by(Message.id.desc())
        .limit(limit)
        .all()
    )
    return ChatHistory(
        partner=UserRead.model_validate(other),
        messages=[ChatMessageRead.model_validate(m) for m in reversed(rows)],
    )
