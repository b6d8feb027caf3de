from pydantic import BaseModel, EmailStr, Field, model_validator
from typing import Optional
from datetime import datetime


class RegisterRequest(BaseModel):
    username: str = Field(min_length=3, max_length=64, pattern=r"^[A-Za-z0-9_.-]+$")
    email: EmailStr
    password: str = Field(min_length=6, max_length=72)
    display_name: Optional[str] = Field(default=None, max_length=128, description="Defaults to username")


class RegisterResponse(BaseModel):
    message: str
    email_sent: bool


class LoginRequest(BaseModel):
    email: Optional[str] = None
    username: Optional[str] = None
    password: str

    @model_validator(mode="after")
    def _needs_identifier(self):
        if not (self.email or self.username):
            raise ValueError("email or username is required")
        return self


class ResendVerificationRequest(BaseModel):
    email: Optional[str] = None


class ForgotPasswordRequest(BaseModel):
    email: str


class ResetPasswordRequest(BaseModel):
    token: str
    password: str = Field(min_length=6, max_length=72)


class UserRead(BaseModel):
    id: int
    username: str
    display_name: str

    class Config:
        from_attributes = True


class AccountRead(UserRead):
    email: str
    is_verified: bool


class LoginResponse(BaseModel):
    token: str
    user: AccountRead


class ReelRead(BaseModel):
    id: int
    user_id: int
    caption: str
    video_url: str
    likes_count: int
    comments_count: int
    created_at: datetime

    class Config:
        from_attributes = True


class ReelCreated(BaseModel):
    ok: bool = True
    reel: ReelRead


class ReelList(BaseModel):
    reels: list[ReelRead]


class LikeToggle(BaseModel):
    liked: bool
    likes_count: int


class CommentCreate(BaseModel):
    text: str = Field(min_length=1, description="Comment text, truncated to 500 chars")


class CommentRead(BaseModel):
    id: int
    reel_id: int
    user_id: int
    text: str
    created_at: datetime

    class Config:
        from_attributes = True


class CommentCreated(BaseModel):
    ok: bool = True
    comment: CommentRead


class CommentList(BaseModel):
    comments: list[CommentRead]


class ChatMessageRead(BaseModel):
    id: int
    room: str
    from_user: int
    to_user: int
    text: str
    created_at: datetime

    class Config:
        from_attributes = True


class ChatHistory(BaseModel):
    partner: UserRead
    messages: list[ChatMessageRead]
