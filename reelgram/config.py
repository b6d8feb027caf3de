import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from dotenv import load_dotenv


# Load .env once at import time (support running from any cwd)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR / ".env")


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    # Server
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "3001"))
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "*")

    # Database
    DATABASE_URL: str = os.getenv("DATABASE_URL", f"sqlite:///{BASE_DIR / 'reelgram.db'}")

    # Auth
    JWT_SECRET: str = os.getenv("JWT_SECRET", "dev-secret-change-me")
    JWT_ALGORITHM: str = os.getenv("JWT_ALGORITHM", "HS256")
    JWT_EXPIRES_DAYS: int = int(os.getenv("JWT_EXPIRES_DAYS", "7"))
    REQUIRE_EMAIL_VERIFICATION: bool = _flag("REQUIRE_EMAIL_VERIFICATION", "true")
    VERIFICATION_TTL_HOURS: int = int(os.getenv("VERIFICATION_TTL_HOURS", "24"))

    # Links used in e-mails and redirects
    BASE_URL: str = os.getenv("BASE_URL", "http://localhost:3001")
    FRONTEND_URL: str = os.getenv("FRONTEND_URL", "http://localhost:3000")

    # Uploaded reels
    UPLOAD_DIR: str = os.getenv("UPLOAD_DIR", str(BASE_DIR / "uploads"))

    # E-mail ("console" logs messages instead of sending them)
    EMAIL_BACKEND: str = os.getenv("EMAIL_BACKEND", "console")
    EMAIL_FROM: str = os.getenv("EMAIL_FROM", "noreply@reelgram.com")
    SMTP_HOST: str = os.getenv("SMTP_HOST", "smtp.ethereal.email")
    SMTP_PORT: int = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USER: str | None = os.getenv("SMTP_USER")
    SMTP_PASSWORD: str | None = os.getenv("SMTP_PASSWORD")
    SMTP_STARTTLS: bool = _flag("SMTP_STARTTLS", "true")

    # STUN/TURN
    STUN_SERVER: str | None = os.getenv("STUN_SERVER")
    TURN_URL: str | None = os.getenv("TURN_URL")
    TURN_USERNAME: str | None = os.getenv("TURN_USERNAME")
    TURN_PASSWORD: str | None = os.getenv("TURN_PASSWORD")

    # Signaling
    ROOM_ACCESS_POLICY: str = os.getenv("ROOM_ACCESS_POLICY", "open")
    FALLBACK_QUEUE_SIZE: int = int(os.getenv("FALLBACK_QUEUE_SIZE", "20"))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()

# Convenient module-level alias
settings = get_settings()
