"""
Direct TCP transport.

The initiator listens on a port from the configured range and signals an
offer (session token + X25519 public key) followed by one candidate per
local address. The responder answers with its own public key, dials the
candidates and opens the stream with a HELLO frame. Every frame after the
HELLO is AES-256-GCM encrypted.

The initiator reports the channel open on HELLO, but only delivers messages
once the pasted answer confirms that the HELLO came from the peer the
human is pairing with.
"""

import asyncio
import json
import logging
import random
import secrets
import socket
import struct
from enum import IntEnum

from config import (
    ADVERTISE_HOSTS,
    CONNECT_TIMEOUT,
    HELLO_TIMEOUT,
    TRANSFER_PORT_MAX,
    TRANSFER_PORT_MIN,
)
from errors import SignalDecodeError, TransportError
from security.crypto import decrypt_frame, derive_channel_key, encrypt_frame, generate_keypair
from signaling.models import SignalEnvelope, SignalKind
from transport.base import Channel, ChannelEvents, Role, Transport, TransportState

logger = logging.getLogger(__name__)

# --- Wire framing ---

HEADER_FORMAT = "!BI"  # 1-byte type + 4-byte length (big-endian)
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)
MAX_FRAME_SIZE = 16 * 1024 * 1024


class FrameType(IntEnum):
    HELLO = 0x01
    TEXT = 0x02
    BINARY = 0x03
    CLOSE = 0x04


async def send_frame(
    writer: asyncio.StreamWriter, frame_type: int, payload: bytes = b""
) -> None:
    """Send a type-length-payload frame and wait for the buffer to drain."""
    header = struct.pack(HEADER_FORMAT, frame_type, len(payload))
    writer.write(header + payload)
    await writer.drain()


async def recv_frame(reader: asyncio.StreamReader) -> tuple[int, bytes]:
    """Receive a type-length-payload frame. Returns (type, payload)."""
    header = await reader.readexactly(HEADER_SIZE)
    frame_type, length = struct.unpack(HEADER_FORMAT, header)
    if length > MAX_FRAME_SIZE:
        raise TransportError(f"frame of {length} bytes exceeds the limit")
    payload = b""
    if length > 0:
        payload = await reader.readexactly(length)
    return frame_type, payload


def local_addresses() -> list[str]:
    """Hosts to advertise as candidates, most useful first."""
    if ADVERTISE_HOSTS:
        return list(ADVERTISE_HOSTS)

    hosts = []
    try:
        _, _, ips = socket.gethostbyname_ex(socket.gethostname())
        hosts.extend(ip for ip in ips if not ip.startswith("127."))
    except OSError as e:
        logger.debug(f"Error resolving local IPs: {e}")
    hosts.append("127.0.0.1")
    return list(dict.fromkeys(hosts))


class TcpChannel(Channel):
    def __init__(
        self,
        role: Role,
        events: ChannelEvents,
        hosts: list[str] | None = None,
        port_range: tuple[int, int] = (TRANSFER_PORT_MIN, TRANSFER_PORT_MAX),
        connect_timeout: float = CONNECT_TIMEOUT,
    ) -> None:
        super().__init__(role, events)
        self._hosts = hosts
        self._port_range = port_range
        self._connect_timeout = connect_timeout

        self._private_key, self._public_key = generate_keypair()
        self._token = ""
        self._peer_key = b""  # from the offer (responder) or HELLO (initiator)
        self._answer_key = b""
        self._channel_key = b""
        self._verified = False
        self._closed = False

        self._server: asyncio.Server | None = None
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._read_task: asyncio.Task | None = None
        self._attempts: set[asyncio.Task] = set()
        self._attempts_failed = 0
        self._announced_connecting = False

    @property
    def port(self) -> int:
        if self._server is None:
            return 0
        return self._server.sockets[0].getsockname()[1]

    # --- initiator ---

    async def start(self) -> None:
        if self.role != Role.INITIATOR:
            return

        self._token = secrets.token_urlsafe(12)
        await self._listen()

        await self.events.on_local_signal(SignalEnvelope(
            kind=SignalKind.OFFER,
            payload=json.dumps({
                "token": self._token,
                "key": self._public_key.hex(),
            }).encode("utf-8"),
        ))
        for host in self._hosts or local_addresses():
            await self.events.on_local_signal(SignalEnvelope(
                kind=SignalKind.CANDIDATE,
                payload=json.dumps({"host": host, "port": self.port}).encode("utf-8"),
            ))

    async def _listen(self) -> None:
        low, high = self._port_range
        # Try a few ports if the first one is busy
        for attempt in range(10):
            port = random.randint(low, high)
            try:
                self._server = await asyncio.start_server(
                    self._handle_incoming, "0.0.0.0", port
                )
                logger.info(f"Waiting for peer on TCP port {port}")
                return
            except OSError:
                continue

        raise TransportError("Could not bind to any transfer port")

    async def _handle_incoming(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        peer = writer.get_extra_info("peername")
        if self._writer is not None or self._closed:
            logger.warning(f"Rejecting extra connection from {peer}")
            writer.close()
            return

        try:
            frame_type, payload = await asyncio.wait_for(
                recv_frame(reader), timeout=HELLO_TIMEOUT
            )
            if frame_type != FrameType.HELLO:
                raise TransportError(f"Expected HELLO, got {frame_type:#x}")
            hello = json.loads(payload.decode("utf-8"))
            if hello.get("token") != self._token:
                raise TransportError("HELLO carries a token from another session")
            peer_key = bytes.fromhex(hello["key"])
            channel_key = derive_channel_key(self._private_key, peer_key, self._token)
        except (asyncio.TimeoutError, asyncio.IncompleteReadError, OSError,
                ValueError, KeyError, TransportError) as e:
            # Strays never become the peer; keep listening for the real one
            logger.warning(f"Ignoring connection from {peer}: handshake failed: {e}")
            writer.close()
            return

        if self._writer is not None or self._closed:
            logger.warning(f"Rejecting extra connection from {peer}")
            writer.close()
            return

        self._reader, self._writer = reader, writer
        self._peer_key, self._channel_key = peer_key, channel_key
        await self.events.on_state_change(TransportState.CONNECTING)

        # One peer per session: stop accepting further connections
        self._server.close()
        logger.info(f"Peer connected from {peer}")
        await self.events.on_open()
        await self._verify()

    async def _verify(self) -> None:
        if self._verified or not self._peer_key or not self._answer_key:
            return
        if not secrets.compare_digest(self._peer_key, self._answer_key):
            await self._abort("answer does not match the connected peer")
            return
        self._verified = True
        await self.events.on_state_change(TransportState.CONNECTED)
        self._read_task = asyncio.create_task(self._read_loop())

    # --- responder ---

    async def _dial(self, host: str, port: int) -> None:
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=self._connect_timeout
            )
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Candidate {host}:{port} unreachable: {e}")
            self._attempts_failed += 1
            if self._writer is None and self._attempts_failed == len(self._attempts):
                await self._abort("could not reach the peer on any candidate")
            return

        if self._writer is not None or self._closed:
            writer.close()
            return

        self._reader, self._writer = reader, writer
        try:
            self._channel_key = derive_channel_key(
                self._private_key, self._peer_key, self._token
            )
            hello = json.dumps({"token": self._token, "key": self._public_key.hex()})
            await send_frame(writer, FrameType.HELLO, hello.encode("utf-8"))
        except (OSError, TransportError) as e:
            await self._abort(f"HELLO to {host}:{port} failed: {e}")
            return

        logger.info(f"Connected to peer at {host}:{port}")
        self._verified = True
        self._read_task = asyncio.create_task(self._read_loop())
        await self.events.on_open()

    # --- signaling ---

    async def apply_remote_signal(self, envelope: SignalEnvelope) -> None:
        try:
            data = json.loads(envelope.payload.decode("utf-8"))
            token = data.get("token", "")
            key = bytes.fromhex(data.get("key", ""))
        except (ValueError, AttributeError, TypeError) as e:
            raise SignalDecodeError(f"unreadable {envelope.kind.value} payload") from e

        if envelope.kind == SignalKind.OFFER:
            self._token = token
            self._peer_key = key
            await self.events.on_local_signal(SignalEnvelope(
                kind=SignalKind.ANSWER,
                payload=json.dumps({
                    "token": self._token,
                    "key": self._public_key.hex(),
                }).encode("utf-8"),
            ))
        elif envelope.kind == SignalKind.ANSWER:
            if token != self._token:
                raise SignalDecodeError("answer belongs to another session")
            self._answer_key = key
            await self._verify()
        elif envelope.kind == SignalKind.CANDIDATE and self.role == Role.RESPONDER:
            if self._writer is not None:
                return
            if not self._announced_connecting:
                self._announced_connecting = True
                await self.events.on_state_change(TransportState.CONNECTING)
            try:
                host, port = data["host"], int(data["port"])
            except (KeyError, ValueError, TypeError) as e:
                raise SignalDecodeError("unreadable candidate payload") from e
            task = asyncio.create_task(self._dial(host, port))
            self._attempts.add(task)

    # --- data ---

    async def _read_loop(self) -> None:
        try:
            while True:
                frame_type, payload = await recv_frame(self._reader)
                if frame_type == FrameType.CLOSE:
                    break
                if frame_type not in (FrameType.TEXT, FrameType.BINARY):
                    logger.warning(f"Ignoring unexpected frame type {frame_type:#x}")
                    continue

                body = await asyncio.to_thread(
                    decrypt_frame, self._channel_key, payload, frame_type
                )
                if frame_type == FrameType.TEXT:
                    await self.events.on_message(body.decode("utf-8"))
                else:
                    await self.events.on_message(body)
        except asyncio.CancelledError:
            return
        except asyncio.IncompleteReadError:
            logger.info("Peer closed the connection")
        except (OSError, UnicodeDecodeError, TransportError) as e:
            if not self._closed:
                await self._abort(f"Channel read failed: {e}")
            return

        if not self._closed:
            self._closed = True
            self._close_streams()
            await self.events.on_state_change(TransportState.CLOSED)
            await self.events.on_close()

    async def send(self, data: bytes | str) -> None:
        if self._closed or self._writer is None or not self._verified:
            raise TransportError("channel is not open")

        if isinstance(data, str):
            frame_type, body = FrameType.TEXT, data.encode("utf-8")
        else:
            frame_type, body = FrameType.BINARY, data
        encrypted = await asyncio.to_thread(
            encrypt_frame, self._channel_key, body, frame_type
        )
        try:
            await send_frame(self._writer, frame_type, encrypted)
        except OSError as e:
            raise TransportError(f"send failed: {e}") from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._writer is not None and not self._writer.is_closing():
            try:
                await send_frame(self._writer, FrameType.CLOSE)
            except OSError:
                pass
        current = asyncio.current_task()
        if self._read_task and self._read_task is not current:
            self._read_task.cancel()
        for task in self._attempts:
            if task is not current:
                task.cancel()
        self._close_streams()

    async def _abort(self, reason: str) -> None:
        logger.error(reason)
        self._closed = True
        self._close_streams()
        await self.events.on_error(reason)

    def _close_streams(self) -> None:
        if self._writer is not None:
            self._writer.close()
        if self._server is not None:
            self._server.close()


class TcpTransport(Transport):
    def __init__(
        self,
        hosts: list[str] | None = None,
        port_range: tuple[int, int] = (TRANSFER_PORT_MIN, TRANSFER_PORT_MAX),
        connect_timeout: float = CONNECT_TIMEOUT,
    ) -> None:
        self.hosts = hosts
        self.port_range = port_range
        self.connect_timeout = connect_timeout

    def create_channel(self, role: Role, events: ChannelEvents) -> TcpChannel:
        return TcpChannel(
            role,
            events,
            hosts=self.hosts,
            port_range=self.port_range,
            connect_timeout=self.connect_timeout,
        )
