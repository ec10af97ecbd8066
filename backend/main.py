"""
PeerDrop HTTP entry point.

The REST API drives pairing and transfers; ``/ws`` streams every session
event to the browser.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from api.routes import init_routes, router
from api.websocket import ConnectionManager
from config import API_HOST, API_PORT, CORS_ORIGINS, LOG_FORMAT, LOG_LEVEL
from session.manager import SessionManager

logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
logger = logging.getLogger(__name__)

session_manager = SessionManager()
ws_manager = ConnectionManager()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Forward session events to WebSocket clients; close the session on exit."""
    session_manager.on_event(ws_manager.handle_event)
    logger.info(f"PeerDrop API listening on {API_HOST}:{API_PORT}")
    try:
        yield
    finally:
        logger.info("PeerDrop API shutting down")
        await session_manager.stop()


app = FastAPI(title="PeerDrop", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

init_routes(session_manager)
app.include_router(router)


@app.websocket("/ws")
async def events_stream(websocket: WebSocket):
    await ws_manager.connect(websocket, snapshot=session_manager.snapshot())
    try:
        # Inbound messages are ignored; reading detects the disconnect
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        await ws_manager.disconnect(websocket)


def run() -> None:
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT, log_level=LOG_LEVEL.lower())


if __name__ == "__main__":
    run()
