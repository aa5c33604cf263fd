import sys
if sys.platform == "win32":
    import asyncio
    asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

import logging

from fastapi import FastAPI, HTTPException, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from .auth import CredentialStore
from .config import CREDENTIALS_PATH, get_cors_origins
from .generation import PracticeGenerator
from .languages import SUPPORTED_LANGUAGES
from .ws_handler import websocket_editor

logger = logging.getLogger(__name__)

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Shared across connections: one token file, one pooled generation client
credential_store = CredentialStore(CREDENTIALS_PATH)
practice_generator = PracticeGenerator()


@app.on_event("startup")
async def startup_event():
    if await credential_store.is_logged_in():
        logger.info("Practice sync: user session restored")


@app.on_event("shutdown")
async def shutdown_event():
    await practice_generator.shutdown()


@app.get("/api/health")
async def health():
    return {"status": "ok"}


@app.get("/api/languages")
async def languages():
    return {"languages": SUPPORTED_LANGUAGES}


@app.get("/api/auth/status")
async def auth_status():
    return {"logged_in": await credential_store.is_logged_in()}


@app.get("/auth/callback")
async def auth_callback(token: str | None = None):
    """Browser login redirects here with ``?token=...``."""
    if not token:
        raise HTTPException(status_code=400, detail="No token received.")
    await credential_store.save_token(token)
    logger.info("Stored practice-sync token from login callback")
    return {"status": "ok", "message": "Login successful! You can close this tab."}


@app.websocket("/ws/editor")
async def editor_socket(websocket: WebSocket):
    await websocket_editor(websocket, generator=practice_generator, credentials=credential_store)
