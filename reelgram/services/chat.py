"""Direct messages: recipient lookup and persistence for the relay's chatSend."""
import logging
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from reelgram.db_models import Message, User
from reelgram.signaling.policy import room_for
from reelgram.signaling.relay import ChatDelivery, Identity

logger = logging.getLogger(__name__)

MAX_CHAT_TEXT = 2000


def find_user_by_name(db: Session, name: str) -> Optional[User]:
    name = (name or "").strip()
    if not name:
        return None
    return (
        db.query(User).filter(User.username == name).first()
        or db.query(User).filter(User.display_name == name).first()
    )


class ChatService:
    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    async def __call__(self, sender: Identity, to_user: str, text: str) -> Optional[ChatDelivery]:
        return await run_in_threadpool(self.store, sender, to_user, text)

    def store(self, sender: Identity, to_user: str, text: str) -> Optional[ChatDelivery]:
        text = text.strip()[:MAX_CHAT_TEXT]
        if not text:
            return None
        with self.session_factory() as db:
            recipient = find_user_by_name(db, to_user)
            if recipient is None:
                logger.info(f"💬 {sender.username} -> unknown recipient {to_user!r}")
                return None
            msg = Message(
                room=room_for(sender.user_id, recipient.id),
                from_user=int(sender.user_id),
                to_user=recipient.id,
                text=text,
            )
            try:
                db.add(msg)
                db.commit()
                db.refresh(msg)
            except SQLAlchemyError as e:
                db.rollback()
                logger.exception("Failed to save chat message: %s", e)
                return None

            payload = {
                "event": "chatMessage",
                "id": msg.id,
                "roomId": msg.room,
                "fromUser": sender.as_dict(),
                "toUser": {"id": str(recipient.id), "username": recipient.username,
                           "displayName": recipient.display_name},
                "text": msg.text,
                "createdAt": msg.created_at.isoformat(),
            }
            return ChatDelivery(to_user_id=str(recipient.id), payload=payload)
