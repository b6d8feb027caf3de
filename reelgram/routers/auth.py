from datetime import datetime, timedelta
import logging
import secrets

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from reelgram.config import settings
from reelgram.db import get_db
from reelgram.db_models import User
from reelgram.schemas import (
    AccountRead,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    RegisterRequest,
    RegisterResponse,
    ResendVerificationRequest,
    ResetPasswordRequest,
)
from reelgram.security import create_access_token, get_current_user, hash_password, verify_password
from reelgram.services import email as email_service

router = APIRouter(prefix="/api/auth", tags=["auth"])
logger = logging.getLogger(__name__)

RESET_TTL = timedelta(hours=1)


def _new_token() -> str:
    return secrets.token_hex(32)


def _commit(db: Session, what: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("Failed to %s: %s", what, e)
        raise HTTPException(status_code=500, detail="Server error")


@router.post("/register", status_code=201, response_model=RegisterResponse)
def register(payload: RegisterRequest, db: Session = Depends(get_db)):
    email = payload.email.lower()
    existing = db.query(User).filter(or_(User.email == email, User.username == payload.username)).first()
    if existing:
        raise HTTPException(status_code=400, detail="Email or username already registered")

    token = _new_token()
    user = User(
        username=payload.username,
        display_name=(payload.display_name or "").strip() or payload.username,
        email=email,
        password_hash=hash_password(payload.password),
        is_verified=not settings.REQUIRE_EMAIL_VERIFICATION,
        verification_token=token,
        verification_token_expires=datetime.utcnow() + timedelta(hours=settings.VERIFICATION_TTL_HOURS),
    )
    db.add(user)
    _commit(db, "register user")
    logger.info("Registered user %s (%s)", user.username, user.email)

    result = email_service.send_verification_email(user.email, user.username, token)
    if result.success:
        message = "User registered successfully. Please check your email to verify your account."
    else:
        message = ("User registered successfully, but there was an issue sending the verification email. "
                   "You can request a new verification email.")
    return RegisterResponse(message=message, email_sent=result.success)


@router.post("/login", response_model=LoginResponse)
def login(payload: LoginRequest, db: Session = Depends(get_db)):
    q = db.query(User)
    if payload.email:
        user = q.filter(User.email == payload.email.strip().lower()).first()
    else:
        user = q.filter(User.username == payload.username.strip()).first()

    if not user or not verify_password(payload.password, user.password_hash):
        raise HTTPException(status_code=400, detail="Invalid email or password")

    if settings.REQUIRE_EMAIL_VERIFICATION and not user.is_verified:
        return JSONResponse(
            status_code=401,
            content={
                "detail": "Please verify your email address before logging in. "
                          "Check your email for the verification link.",
                "needs_verification": True,
                "email": user.email,
            },
        )

    return LoginResponse(token=create_access_token(user.id), user=AccountRead.model_validate(user))


@router.get("/verify-email")
def verify_email(token: str | None = Query(None), db: Session = Depends(get_db)):
    if not token:
        raise HTTPException(status_code=400, detail="Verification token is required")

    user = (
        db.query(User)
        .filter(User.verification_token == token, User.verification_token_expires > datetime.utcnow())
        .first()
    )
    if not user:
        raise HTTPException(
            status_code=400,
            detail="Invalid or expired verification token. Please request a new verification email.",
        )

    user.is_verified = True
    user.verification_token = None
    user.verification_token_expires = None
    _commit(db, "verify email")
    logger.info("Verified email for %s", user.username)
    return RedirectResponse(f"{settings.FRONTEND_URL}/?verified=true", status_code=302)


@router.post("/resend-verification")
def resend_verification(payload: ResendVerificationRequest, db: Session = Depends(get_db)):
    if not payload.email:
        raise HTTPException(status_code=400, detail="Email is required")

    user = db.query(User).filter(User.email == payload.email.strip().lower()).first()
    if not user:
        raise HTTPException(status_code=400, detail="User not found")
    if user.is_verified:
        raise HTTPException(status_code=400, detail="Email is already verified")

    token = _new_token()
    user.verification_token = token
    user.verification_token_expires = datetime.utcnow() + timedelta(hours=settings.VERIFICATION_TTL_HOURS)
    _commit(db, "store verification token")

    result = email_service.send_verification_email(user.email, user.username, token)
    if not result.success:
        raise HTTPException(status_code=500, detail="Failed to send verification email. Please try again later.")
    return {"message": "Verification email sent successfully. Please check your email.", "email_sent": True}


@router.post("/forgot-password")
def forgot_password(payload: ForgotPasswordRequest, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.email == payload.email.strip().lower()).first()
    if user:
        token = _new_token()
        user.reset_token = token
        user.reset_token_expires = datetime.utcnow() + RESET_TTL
        _commit(db, "store reset token")
        email_service.send_password_reset_email(user.email, user.username, token)
    # Same answer whether or not the account exists
    return {"message": "If that email is registered, a reset link has been sent."}


@router.post("/reset-password")
def reset_password(payload: ResetPasswordRequest, db: Session = Depends(get_db)):
    user = (
        db.query(User)
        .filter(User.reset_token == payload.token, User.reset_token_expires > datetime.utcnow())
        .first()
    )
    if not user:
        raise HTTPException(status_code=400, detail="Invalid or expired reset token")

    user.password_hash = hash_password(payload.password)
    user.reset_token = None
    user.reset_token_expires = None
    _commit(db, "reset password")
    logger.info("Password reset for %s", user.username)
    return {"message": "Password updated"}


@router.get("/me", response_model=AccountRead)
def me(current_user: User = Depends(get_current_user)):
    return current_user
