"""Password hashing, access tokens and the current-user dependency."""
from datetime import datetime, timedelta, timezone
from typing import Optional
import logging

import bcrypt
import jwt
from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from reelgram.config import settings
from reelgram.db import get_db
from reelgram.db_models import User

logger = logging.getLogger(__name__)


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=10)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hash or an over-long password
        return False


def create_access_token(user_id: int, *, expires_in: Optional[timedelta] = None) -> str:
    expires_in = expires_in or timedelta(days=settings.JWT_EXPIRES_DAYS)
    now = datetime.now(timezone.utc)
    payload = {"sub": str(user_id), "iat": now, "exp": now + expires_in}
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> int:
    """Return the user id carried by ``token``.

    Raises ``jwt.InvalidTokenError`` (including ``ExpiredSignatureError``)
    for anything that is not a valid, unexpired token of ours.
    """
    payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    try:
        return int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise jwt.InvalidTokenError("Token has no usable subject")


def user_from_token(db: Session, token: Optional[str]) -> Optional[User]:
    if not token:
        return None
    try:
        user_id = decode_access_token(token)
    except jwt.InvalidTokenError as e:
        logger.info(f"Rejected token: {e}")
        return None
    return db.get(User, user_id)


def _extract_token(authorization: Optional[str], x_auth_token: Optional[str]) -> Optional[str]:
    if authorization:
        parts = authorization.split(" ")
        if len(parts) == 2 and parts[0].lower() == "bearer":
            return parts[1]
    return x_auth_token


def get_current_user(
    authorization: Optional[str] = Header(None),
    x_auth_token: Optional[str] = Header(None),
    db: Session = Depends(get_db),
) -> User:
    token = _extract_token(authorization, x_auth_token)
    if not token:
        raise HTTPException(status_code=401, detail="No token, authorization denied")
    user = user_from_token(db, token)
    if user is None:
        raise HTTPException(status_code=401, detail="Token is not valid")
    return user
