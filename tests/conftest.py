import os
import tempfile
from types import SimpleNamespace

# Settings are read at import time, so configure before importing reelgram
_tmp = tempfile.mkdtemp(prefix="reelgram-test-")
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["UPLOAD_DIR"] = os.path.join(_tmp, "uploads")
os.environ["EMAIL_BACKEND"] = "console"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["REQUIRE_EMAIL_VERIFICATION"] = "true"
os.environ["ROOM_ACCESS_POLICY"] = "open"
os.environ["FALLBACK_QUEUE_SIZE"] = "20"
os.environ["LOG_LEVEL"] = "DEBUG"

import pytest
from fastapi.testclient import TestClient

from reelgram.db import Base, SessionLocal, engine
from reelgram.db_models import User
from reelgram.main import app
from reelgram.security import create_access_token, hash_password


@pytest.fixture
def db_tables():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(db_tables):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def make_user(db_tables):
    def _make(username: str, *, verified: bool = True, password: str = "secret123", display_name: str = None):
        with SessionLocal() as db:
            user = User(
                username=username,
                display_name=display_name or username.title(),
                email=f"{username}@example.com",
                password_hash=hash_password(password),
                is_verified=verified,
            )
            db.add(user)
            db.commit()
            db.refresh(user)
            token = create_access_token(user.id)
            return SimpleNamespace(
                id=user.id,
                username=user.username,
                email=user.email,
                password=password,
                token=token,
                headers={"Authorization": f"Bearer {token}"},
            )

    return _make
