from pathlib import Path
import logging
import secrets
import shutil
import time

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from reelgram.config import settings
from reelgram.db import get_db
from reelgram.db_models import Comment, Like, Reel, User
from reelgram.schemas import (
    CommentCreate,
    CommentCreated,
    CommentList,
    CommentRead,
    LikeToggle,
    ReelCreated,
    ReelList,
    ReelRead,
)
from reelgram.security import get_current_user

router = APIRouter(prefix="/api/reels", tags=["reels"])
logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 20
MAX_COMMENT_LENGTH = 500
MAX_CAPTION_LENGTH = 500


def reels_dir() -> Path:
    path = Path(settings.UPLOAD_DIR) / "reels"
    path.mkdir(parents=True, exist_ok=True)
    return path


def _get_reel(db: Session, reel_id: int) -> Reel:
    reel = db.get(Reel, reel_id)
    if not reel:
        raise HTTPException(status_code=404, detail="Reel not found")
    return reel


@router.post("", response_model=ReelCreated)
def create_reel(
    video: UploadFile = File(...),
    caption: str = Form(""),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if video.content_type and not video.content_type.startswith("video/"):
        raise HTTPException(status_code=400, detail="Only video uploads are accepted")

    ext = Path(video.filename or "").suffix.lower() or ".mp4"
    name = f"{int(time.time() * 1000)}_{secrets.token_hex(5)}{ext}"
    target = reels_dir() / name
    with target.open("wb") as out:
        shutil.copyfileobj(video.file, out)

    reel = Reel(user_id=current_user.id, caption=caption.strip()[:MAX_CAPTION_LENGTH], video_url=f"/uploads/reels/{name}")
    try:
        db.add(reel)
        db.commit()
        db.refresh(reel)
    except SQLAlchemyError as e:
        db.rollback()
        target.unlink(missing_ok=True)
        logger.exception("Failed to save reel: %s", e)
        raise HTTPException(status_code=500, detail="Database error while saving reel")
    logger.info("Saved reel %s for user %s (%s)", reel.id, current_user.username, name)
    return ReelCreated(reel=ReelRead.model_validate(reel))


@router.get("", response_model=ReelList)
def list_reels(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1),
    db: Session = Depends(get_db),
):
    limit = min(MAX_PAGE_SIZE, limit)
    rows = (
        db.query(Reel)
        .order_by(Reel.created_at.desc(), Reel.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return ReelList(reels=[ReelRead.model_validate(r) for r in rows])


@router.post("/{reel_id}/like", response_model=LikeToggle)
def toggle_like(reel_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    reel = _get_reel(db, reel_id)
    try:
        db.add(Like(user_id=current_user.id, reel_id=reel.id))
        reel.likes_count = (reel.likes_count or 0) + 1
        db.commit()
        liked = True
    except IntegrityError:
        # Already liked: toggle off
        db.rollback()
        db.query(Like).filter(Like.user_id == current_user.id, Like.reel_id == reel_id).delete()
        reel = _get_reel(db, reel_id)
        reel.likes_count = max(0, (reel.likes_count or 0) - 1)
        db.commit()
        liked = False
    db.refresh(reel)
    return LikeToggle(liked=liked, likes_count=reel.likes_count)


@router.get("/{reel_id}/comments", response_model=CommentList)
def list_comments(reel_id: int, db: Session = Depends(get_db)):
    _get_reel(db, reel_id)
    rows = db.query(Comment).filter(Comment.reel_id == reel_id).order_by(Comment.created_at.asc(), Comment.id.asc()).all()
    return CommentList(comments=[CommentRead.model_validate(c) for c in rows])


@router.post("/{reel_id}/comments", response_model=CommentCreated)
def add_comment(
    reel_id: int,
    payload: CommentCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    text = payload.text.strip()[:MAX_COMMENT_LENGTH]
    if not text:
        raise HTTPException(status_code=400, detail="Comment text is empty")

    reel = _get_reel(db, reel_id)
    comment = Comment(reel_id=reel.id, user_id=current_user.id, text=text)
    try:
        db.add(comment)
        reel.comments_count = (reel.comments_count or 0) + 1
        db.commit()
        db.refresh(comment)
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("Failed to save comment: %s", e)
        raise HTTPException(status_code=500, detail="Database error while saving comment")
    return CommentCreated(comment=CommentRead.model_validate(comment))
