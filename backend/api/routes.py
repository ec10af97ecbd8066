"""REST API routes for PeerDrop."""

import logging
import os

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from errors import ProtocolViolation, SignalDecodeError, TransportError
from session.manager import NoActiveSession
from transport.base import Role

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# Injected by main.py at startup
_session_manager = None


def init_routes(session_manager) -> None:
    """Inject service dependencies into the routes module."""
    global _session_manager
    _session_manager = session_manager


def _current():
    try:
        return _session_manager.require()
    except NoActiveSession as e:
        raise HTTPException(status_code=404, detail=str(e))


# --- Session lifecycle ---

class StartSessionBody(BaseModel):
    role: Role


class SignalBody(BaseModel):
    blob: str


@router.get("/session")
async def get_session():
    """Return the current session state and the local signal to share."""
    return _session_manager.snapshot()


@router.post("/session")
async def start_session(body: StartSessionBody):
    """Start a new session, replacing any previous one."""
    try:
        await _session_manager.start_session(body.role)
    except TransportError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return _session_manager.snapshot()


@router.post("/session/signal")
async def supply_signal(body: SignalBody):
    """Apply the blob pasted from the other peer."""
    session = _current()
    try:
        await session.supply_remote_signal(body.blob)
    except SignalDecodeError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ProtocolViolation as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _session_manager.snapshot()


# --- Transfer ---

class SendFileBody(BaseModel):
    file_path: str


@router.post("/session/send")
async def send_file(body: SendFileBody):
    """Offer a file to the connected peer.

    No upload is involved; the backend reads the file directly from disk.
    """
    session = _current()
    if not os.path.isfile(body.file_path):
        raise HTTPException(status_code=404, detail="File not found")
    try:
        metadata = await session.send_file(body.file_path)
    except ProtocolViolation as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"metadata": metadata.model_dump(), "state": session.state.value}


async def _command(name: str):
    session = _current()
    try:
        await getattr(session, name)()
    except ProtocolViolation as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"state": session.state.value}


@router.post("/session/accept")
async def accept_transfer():
    return await _command("accept")


@router.post("/session/decline")
async def decline_transfer():
    return await _command("decline")


@router.post("/session/cancel")
async def cancel_transfer():
    return await _command("cancel")


# --- Settings ---

class SettingsBody(BaseModel):
    save_dir: str | None = None


@router.get("/settings")
async def get_settings():
    return {
        "save_dir": _session_manager.save_dir,
        "session": _session_manager.settings.model_dump(),
    }


@router.put("/settings")
async def update_settings(body: SettingsBody):
    if body.save_dir is not None:
        try:
            _session_manager.save_dir = body.save_dir
        except OSError as e:
            raise HTTPException(
                status_code=400, detail=f"Invalid directory: {e}"
            )
    return {"status": "updated"}
