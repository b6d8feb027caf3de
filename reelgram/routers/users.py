from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from reelgram.db import get_db
from reelgram.db_models import User
from reelgram.schemas import UserRead
from reelgram.services.chat import find_user_by_name

router = APIRouter(prefix="/api/users", tags=["users"])


@router.get("/suggested")
def suggested_users(limit: int = Query(10, ge=1, le=50), db: Session = Depends(get_db)):
    rows = db.query(User).order_by(User.created_at.desc(), User.id.desc()).limit(limit).all()
    return {"users": [UserRead.model_validate(u) for u in rows]}


@router.get("/by-name")
def user_by_name(name: str = Query("", description="Username or display name"), db: Session = Depends(get_db)):
    user = find_user_by_name(db, name)
    if not user:
        raise HTTPException(status_code=404, detail="Not found")
    return {"user": UserRead.model_validate(user)}
