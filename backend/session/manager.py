"""
Session Manager: owns the application's current peer session.

Creates a fresh PeerSession for every pairing attempt, turns session events
into JSON-ready payloads for the WebSocket layer, and saves received files
into the save directory.
"""

import asyncio
import logging
import os

from config import DEFAULT_SAVE_DIR
from errors import FailureReason
from session.models import SessionSettings, SessionState
from session.peer import PeerSession
from transfer.models import CompletedTransfer, FileMetadata, ProgressSample, TransferDirection
from transport.base import Role
from transport.tcp import TcpTransport

logger = logging.getLogger(__name__)


class NoActiveSession(LookupError):
    pass


def unique_path(directory: str, file_name: str) -> str:
    """Path inside ``directory`` that does not overwrite an existing file."""
    name = os.path.basename(file_name) or "received.bin"
    stem, ext = os.path.splitext(name)
    candidate = os.path.join(directory, name)
    counter = 1
    while os.path.exists(candidate):
        candidate = os.path.join(directory, f"{stem} ({counter}){ext}")
        counter += 1
    return candidate


class SessionManager:
    """Keeps at most one live session and relays its events."""

    def __init__(
        self,
        transport_factory=TcpTransport,
        settings: SessionSettings | None = None,
        save_dir: str = DEFAULT_SAVE_DIR,
    ) -> None:
        self._transport_factory = transport_factory
        self.settings = settings or SessionSettings()
        self._session: PeerSession | None = None
        self._lock = asyncio.Lock()
        self._event_callbacks: list = []  # async fn(event_type, data)
        self._save_dir = save_dir
        self.saved_files: list[str] = []

    @property
    def save_dir(self) -> str:
        return self._save_dir

    @save_dir.setter
    def save_dir(self, path: str) -> None:
        os.makedirs(path, exist_ok=True)
        self._save_dir = path

    @property
    def current(self) -> PeerSession | None:
        return self._session

    def require(self) -> PeerSession:
        if self._session is None:
            raise NoActiveSession("no session has been started")
        return self._session

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data: dict) -> None:
        """Emit an event to all registered callbacks."""
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    async def start_session(self, role: Role | str) -> PeerSession:
        """Drop any previous session and start a new one with ``role``."""
        async with self._lock:
            if self._session is not None:
                await self._session.close()

            session = PeerSession(self._transport_factory(), self.settings)
            session.on_event(self._on_session_event)
            self._session = session
            await session.start(role)
            logger.info(f"Started {session.role.value} session {session.share_code}")
            return session

    async def stop(self) -> None:
        """Close the current session, if any."""
        if self._session is not None:
            await self._session.close()
        logger.info("Session manager stopped")

    def snapshot(self) -> dict:
        """JSON-ready view of the current session."""
        session = self._session
        if session is None:
            return {"state": SessionState.IDLE.value}

        data = {
            "share_code": session.share_code,
            "role": session.role.value if session.role else None,
            "state": session.state.value,
            "local_signal": session.local_signal,
            "failure": session.failure.model_dump(mode="json") if session.failure else None,
            "incoming": None,
            "outgoing": None,
        }
        if session.incoming is not None:
            data["incoming"] = {
                "metadata": session.incoming.metadata.model_dump(),
                "bytes_received": session.incoming.bytes_received,
                "chunks_received": len(session.incoming.chunks_received),
            }
        if session.outgoing is not None:
            data["outgoing"] = {
                "metadata": session.outgoing.metadata.model_dump(),
                "bytes_sent": session.outgoing.estimator.bytes_so_far,
            }
        return data

    async def save_received(self, transfer: CompletedTransfer) -> str:
        os.makedirs(self._save_dir, exist_ok=True)
        path = unique_path(self._save_dir, transfer.metadata.name)
        await asyncio.to_thread(_write_file, path, transfer.data)
        self.saved_files.append(path)
        logger.info(f"Saved {transfer.metadata.name} to {path}")
        return path

    async def _on_session_event(self, event_type: str, data) -> None:
        """Translate session events into plain dicts for the frontend."""
        payload: dict
        notification = None

        if event_type == "state_changed":
            payload = {"state": data.value}
        elif event_type == "signal":
            payload = {"blob": data, "local_signal": self._session.local_signal}
        elif isinstance(data, FileMetadata):
            payload = data.model_dump()
            if event_type == "declined":
                notification = {
                    "type": "warning",
                    "message": f"Transfer of '{data.name}' was declined.",
                }
        elif isinstance(data, ProgressSample):
            payload = data.model_dump(mode="json")
        elif isinstance(data, CompletedTransfer):
            payload = {
                "metadata": data.metadata.model_dump(),
                "direction": data.direction.value,
                "elapsed_seconds": data.elapsed_seconds,
            }
            if data.direction == TransferDirection.RECEIVING:
                try:
                    payload["saved_path"] = await self.save_received(data)
                except OSError as e:
                    logger.error(f"Could not save {data.metadata.name}: {e}")
                    notification = {
                        "type": "error",
                        "message": f"'{data.metadata.name}' received but could not be saved: {e}",
                    }
            if notification is None:
                verb = "sent" if data.direction == TransferDirection.SENDING else "received"
                notification = {
                    "type": "success",
                    "message": f"'{data.metadata.name}' {verb} successfully!",
                }
        elif isinstance(data, FailureReason):
            payload = data.model_dump(mode="json")
            notification = {
                "type": "error",
                "message": f"Session failed: {data.message}",
            }
        else:
            payload = {"value": data}

        await self._emit(event_type, payload)
        if notification:
            await self._emit("notification", notification)


def _write_file(path: str, data: bytes | None) -> None:
    with open(path, "wb") as f:
        f.write(data or b"")
