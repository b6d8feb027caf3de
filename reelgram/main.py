from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles
from fastapi.middleware.cors import CORSMiddleware
from pathlib import Path
import logging

from reelgram.routers import auth, chat, reels, signaling, users
from reelgram.db import Base, SessionLocal, engine
# Ensure models are imported so metadata is populated before create_all
from reelgram import db_models  # noqa: F401
from reelgram.config import settings
from reelgram.services.chat import ChatService
from reelgram.signaling.fallback import FallbackChannel, SqlQueueStore
from reelgram.signaling.policy import get_access_policy
from reelgram.signaling.registry import RoomRegistry
from reelgram.signaling.relay import Relay

logging.basicConfig(level=settings.LOG_LEVEL.upper())
logger = logging.getLogger(__name__)

app = FastAPI(title="Reelgram")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

uploads_path = Path(settings.UPLOAD_DIR)
uploads_path.mkdir(parents=True, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=uploads_path), name="uploads")

app.include_router(auth.router)
app.include_router(users.router)
app.include_router(reels.router)
app.include_router(chat.router)
app.include_router(signaling.router)


@app.get("/config")
async def rtc_config():
    """Expose ICE server config to the frontend.

    Environment variables (optional):
    - STUN_SERVER: e.g. stun:stun.example.com:3478
    - TURN_URL: e.g. turn:turn.example.com:3478
    - TURN_USERNAME
    - TURN_PASSWORD
    """
    ice_servers = []
    if settings.STUN_SERVER:
        ice_servers.append({"urls": settings.STUN_SERVER})
    # Always include Google public STUN as fallback
    ice_servers.append({"urls": "stun:stun.l.google.com:19302"})

    if settings.TURN_URL and settings.TURN_USERNAME and settings.TURN_PASSWORD:
        ice_servers.append({
            "urls": settings.TURN_URL,
            "username": settings.TURN_USERNAME,
            "credential": settings.TURN_PASSWORD,
        })

    return {"iceServers": ice_servers}


@app.get("/health")
async def health_check():
    relay = getattr(app.state, "relay", None)
    return {
        "status": "healthy",
        "connections": relay.connection_count if relay else 0,
        "rooms": len(relay.registry) if relay else 0,
    }


@app.on_event("startup")
def on_startup():
    # Create DB tables if they don't exist
    Base.metadata.create_all(bind=engine)

    access_policy = get_access_policy(settings.ROOM_ACCESS_POLICY)
    app.state.access_policy = access_policy
    app.state.relay = Relay(RoomRegistry(), access_policy=access_policy, chat_sink=ChatService(SessionLocal))
    app.state.fallback = FallbackChannel(SqlQueueStore(SessionLocal), max_entries=settings.FALLBACK_QUEUE_SIZE)
    logger.info(f"Signaling ready (room access policy: {settings.ROOM_ACCESS_POLICY})")


@app.on_event("shutdown")
async def on_shutdown():
    relay = getattr(app.state, "relay", None)
    if relay is not None:
        await relay.close()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)
