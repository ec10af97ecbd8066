"""
In-process transport.

Both peers live in the same event loop and share one ``LoopbackTransport``.
Signaling has the same shape as the TCP transport (offer + candidate from
the initiator, answer from the responder) and each direction is a bounded
queue, so a fast sender is held back exactly like on a real socket.
"""

import asyncio
import json
import logging
import secrets

from errors import SignalDecodeError, TransportError
from signaling.models import SignalEnvelope, SignalKind
from transport.base import Channel, ChannelEvents, Role, Transport, TransportState

logger = logging.getLogger(__name__)

_CLOSE = object()


class LoopbackChannel(Channel):
    def __init__(
        self, transport: "LoopbackTransport", role: Role, events: ChannelEvents
    ) -> None:
        super().__init__(role, events)
        self._transport = transport
        self._key = secrets.token_hex(16)
        self._token = ""
        self._peer: LoopbackChannel | None = None
        self._peer_key = ""
        self._answer_key = ""
        self._verified = False
        self._closed = False
        self._inbox: asyncio.Queue = asyncio.Queue(maxsize=transport.queue_size)
        self._pump: asyncio.Task | None = None

    # --- negotiation ---

    async def start(self) -> None:
        if self.role != Role.INITIATOR:
            return
        self._token = secrets.token_hex(8)
        self._transport._listening[self._token] = self
        await self.events.on_local_signal(SignalEnvelope(
            kind=SignalKind.OFFER,
            payload=json.dumps({"token": self._token, "key": self._key}).encode(),
        ))
        await self.events.on_local_signal(SignalEnvelope(
            kind=SignalKind.CANDIDATE,
            payload=json.dumps({"token": self._token, "address": "loopback"}).encode(),
        ))

    async def apply_remote_signal(self, envelope: SignalEnvelope) -> None:
        try:
            data = json.loads(envelope.payload)
        except ValueError as e:
            raise SignalDecodeError(f"unreadable {envelope.kind.value} payload") from e

        if envelope.kind == SignalKind.OFFER:
            self._token = data.get("token", "")
            self._peer_key = data.get("key", "")
            await self.events.on_local_signal(SignalEnvelope(
                kind=SignalKind.ANSWER,
                payload=json.dumps({"token": self._token, "key": self._key}).encode(),
            ))
        elif envelope.kind == SignalKind.ANSWER:
            self._answer_key = data.get("key", "")
            await self._verify()
        elif envelope.kind == SignalKind.CANDIDATE and self.role == Role.RESPONDER:
            await self._connect(data.get("token", ""))

    async def _connect(self, token: str) -> None:
        if self._peer is not None:
            return
        initiator = self._transport._listening.pop(token, None)
        if initiator is None:
            logger.warning(f"No loopback listener for token {token}")
            return

        self._peer = initiator
        initiator._peer = self
        initiator._peer_key = self._key

        await self.events.on_state_change(TransportState.CONNECTING)
        await initiator.events.on_state_change(TransportState.CONNECTING)

        self._start_pump()
        await self.events.on_open()
        await initiator.events.on_open()
        await initiator._verify()

    async def _verify(self) -> None:
        """Initiator: deliver messages once the answer matches the peer."""
        if self._verified or self._peer is None or not self._answer_key:
            return
        if self._answer_key != self._peer_key:
            await self.events.on_error("answer does not match the connected peer")
            return
        self._verified = True
        await self.events.on_state_change(TransportState.CONNECTED)
        self._start_pump()

    # --- data ---

    def _start_pump(self) -> None:
        if self._pump is None:
            self._pump = asyncio.create_task(self._deliver())

    async def _deliver(self) -> None:
        while True:
            message = await self._inbox.get()
            if message is _CLOSE:
                self._closed = True
                await self.events.on_state_change(TransportState.CLOSED)
                await self.events.on_close()
                return
            try:
                await self.events.on_message(message)
            except Exception as e:
                logger.error(f"Loopback message handler error: {e}")
            if self._closed:
                return

    async def send(self, data: bytes | str) -> None:
        if self._closed or self._peer is None:
            raise TransportError("loopback channel is not open")
        await self._peer._inbox.put(data)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._pump and self._pump is not asyncio.current_task():
            self._pump.cancel()
        self._transport._listening.pop(self._token, None)
        self._notify_peer()

    def _notify_peer(self) -> None:
        if self._peer is None or self._peer._closed:
            return
        try:
            self._peer._inbox.put_nowait(_CLOSE)
        except asyncio.QueueFull:
            asyncio.create_task(self._peer._inbox.put(_CLOSE))

    async def fail(self, reason: str) -> None:
        """Simulate a fatal transport failure on this side."""
        self._closed = True
        if self._pump and self._pump is not asyncio.current_task():
            self._pump.cancel()
        self._notify_peer()
        await self.events.on_error(reason)


class LoopbackTransport(Transport):
    """Shared by both peers; pairs channels by the offer's token."""

    def __init__(self, queue_size: int = 8) -> None:
        self.queue_size = queue_size
        self._listening: dict[str, LoopbackChannel] = {}
        self.channels: list[LoopbackChannel] = []

    def create_channel(self, role: Role, events: ChannelEvents) -> LoopbackChannel:
        channel = LoopbackChannel(self, role, events)
        self.channels.append(channel)
        return channel
