"""WebSocket fan-out of session events."""

import json
import logging

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Browsers subscribed to the event stream."""

    def __init__(self) -> None:
        self._clients: set[WebSocket] = set()

    @property
    def connection_count(self) -> int:
        return len(self._clients)

    async def connect(self, websocket: WebSocket, snapshot: dict | None = None) -> None:
        """Accept a client and bring it up to date with the current session."""
        await websocket.accept()
        self._clients.add(websocket)
        logger.info(f"Event stream client joined ({len(self._clients)} connected)")
        if snapshot is not None:
            await websocket.send_text(_envelope("snapshot", snapshot))

    async def disconnect(self, websocket: WebSocket) -> None:
        self._clients.discard(websocket)
        logger.info(f"Event stream client left ({len(self._clients)} connected)")

    async def handle_event(self, event_type: str, data: dict) -> None:
        """Session manager callback: push the event to every client."""
        message = _envelope(event_type, data)
        for client in list(self._clients):
            try:
                await client.send_text(message)
            except Exception as e:
                logger.debug(f"Dropping event stream client: {e}")
                self._clients.discard(client)


def _envelope(event_type: str, data: dict) -> str:
    return json.dumps({"event": event_type, "data": data})
