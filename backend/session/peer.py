"""
Peer Session: the connection lifecycle and single-file transfer between
two endpoints.

The session drives a transport channel through copy-paste signaling, then
speaks the transfer protocol over it: the sender announces a file and
streams its chunks, the receiver confirms (accept/decline) and rebuilds the
file. Everything the application needs to know is published through
``on_event`` callbacks.
"""

import asyncio
import logging
import os
import secrets
import string
import time

from config import SHARE_CODE_LENGTH
from errors import (
    FailureReason,
    PeerDropError,
    ProtocolViolation,
    SessionTimeout,
    SignalDecodeError,
    TransferCancelled,
    TransportError,
)
from session.models import (
    OutgoingTransfer,
    SessionSettings,
    SessionState,
    TransferSession,
    can_transition,
)
from signaling import codec
from signaling.models import SignalEnvelope, SignalKind
from transfer.chunks import ChunkPlanner, count_chunks
from transfer.models import (
    Chunk,
    CompletedTransfer,
    ControlAction,
    ControlMessage,
    FileInfoMessage,
    FileMetadata,
    ProgressSample,
    TransferDirection,
)
from transfer.progress import ProgressEstimator
from transfer.protocol import decode_message, encode_chunk, encode_control, encode_file_info
from transport.base import Channel, ChannelEvents, Role, Transport, TransportState

logger = logging.getLogger(__name__)

_CODE_ALPHABET = string.ascii_letters + string.digits + "_-"


def generate_share_code(length: int = SHARE_CODE_LENGTH) -> str:
    """Short URL-safe id shown to both users while pairing."""
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(length))


async def read_next_chunk(chunks):
    """
    Pull the next chunk from a planner iterator in a worker thread.

    If the caller is cancelled mid-read, the read still runs to completion
    before the cancellation propagates, so the file under the iterator
    stays open for as long as a thread is using it.
    """
    read = asyncio.ensure_future(asyncio.to_thread(next, chunks, None))
    try:
        return await asyncio.shield(read)
    except asyncio.CancelledError:
        await asyncio.wait([read])
        if not read.cancelled() and read.exception() is not None:
            logger.debug(f"Read abandoned on cancel failed: {read.exception()}")
        raise


class PeerSession:
    """One peer pairing and the file transfer carried over it."""

    def __init__(
        self, transport: Transport, settings: SessionSettings | None = None
    ) -> None:
        self.settings = settings or SessionSettings()
        self.share_code = generate_share_code()
        self.state = SessionState.IDLE
        self.role: Role | None = None
        self.failure: FailureReason | None = None

        self._transport = transport
        self._channel: Channel | None = None
        self._planner = ChunkPlanner(self.settings.chunk_size)
        self._event_callbacks: list = []  # async fn(event_type, data)
        self._changed = asyncio.Event()

        self._local_signals: list[SignalEnvelope] = []
        self._pending_candidates: list[SignalEnvelope] = []
        self._description_applied = False

        self._incoming: TransferSession | None = None
        self._outgoing: OutgoingTransfer | None = None
        self._declined_ids: set[str] = set()
        self._last_declined = False

        self._last_activity = time.monotonic()
        self._watchdog: asyncio.Task | None = None
        self._offer_timer: asyncio.Task | None = None

    # --- events ---

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data) -> None:
        """Emit an event to all registered callbacks."""
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error ({event_type}): {e}")

    async def _set_state(self, new_state: SessionState) -> None:
        if not can_transition(self.state, new_state):
            raise ProtocolViolation(
                f"invalid transition {self.state.value} -> {new_state.value}"
            )
        logger.info(f"[{self.share_code}] {self.state.value} -> {new_state.value}")
        self.state = new_state
        self._changed.set()
        self._changed = asyncio.Event()
        await self._emit("state_changed", new_state)

    async def wait_for(
        self, *states: SessionState, timeout: float | None = None
    ) -> SessionState:
        """Wait until the session reaches one of ``states`` or a terminal state."""
        async def _wait() -> SessionState:
            while self.state not in states and not self.state.is_terminal:
                await self._changed.wait()
            return self.state

        return await asyncio.wait_for(_wait(), timeout=timeout)

    # --- introspection ---

    @property
    def local_signal(self) -> str:
        """Every local envelope so far, joined into one pasteable blob."""
        return codec.encode_many(self._local_signals)

    @property
    def incoming(self) -> TransferSession | None:
        return self._incoming

    @property
    def outgoing(self) -> OutgoingTransfer | None:
        return self._outgoing

    # --- establishment ---

    async def start(self, role: Role | str) -> "PeerSession":
        if self.state != SessionState.IDLE:
            raise ProtocolViolation(f"session already started ({self.state.value})")

        self.role = Role(role)
        self._channel = self._transport.create_channel(
            self.role,
            ChannelEvents(
                on_local_signal=self._on_local_signal,
                on_state_change=self._on_transport_state,
                on_open=self._on_open,
                on_message=self._on_message,
                on_close=self._on_close,
                on_error=self._on_error,
            ),
        )
        await self._set_state(
            SessionState.AWAITING_LOCAL_SIGNAL
            if self.role == Role.INITIATOR
            else SessionState.AWAITING_REMOTE_SIGNAL
        )
        try:
            await self._channel.start()
        except TransportError as e:
            await self._fail(e)
            raise
        return self

    async def supply_remote_signal(self, blob: str) -> None:
        """Apply signaling text pasted from the other side.

        Raises SignalDecodeError for unreadable or misdirected blobs; the
        session is left as it was so the caller can ask again.
        """
        if self.state == SessionState.IDLE or self.state.is_terminal:
            raise ProtocolViolation(
                f"cannot apply a remote signal while {self.state.value}"
            )

        envelopes = codec.decode_many(blob)
        expected = SignalKind.ANSWER if self.role == Role.INITIATOR else SignalKind.OFFER
        for env in envelopes:
            if env.is_description and env.kind != expected:
                raise SignalDecodeError(
                    f"the {self.role.value} expects an {expected.value}, "
                    f"got an {env.kind.value} (was the blob pasted on the wrong side?)"
                )

        for env in envelopes:
            if env.is_description:
                if self._description_applied:
                    logger.warning(f"[{self.share_code}] Ignoring repeated {env.kind.value}")
                    continue
                await self._apply(env)
                self._description_applied = True
                queued, self._pending_candidates = self._pending_candidates, []
                for candidate in queued:
                    await self._apply(candidate)
            elif self._description_applied:
                await self._apply(env)
            else:
                logger.debug(f"[{self.share_code}] Queueing candidate until the {expected.value} arrives")
                self._pending_candidates.append(env)

    async def _apply(self, envelope: SignalEnvelope) -> None:
        if self.state.is_terminal:
            return
        try:
            await self._channel.apply_remote_signal(envelope)
        except TransportError as e:
            await self._fail(e)

    async def _on_local_signal(self, envelope: SignalEnvelope) -> None:
        self._local_signals.append(envelope)
        await self._emit("signal", codec.encode(envelope))

    async def _on_transport_state(self, transport_state: TransportState) -> None:
        if transport_state == TransportState.CONNECTING:
            if self.state in (
                SessionState.AWAITING_LOCAL_SIGNAL,
                SessionState.AWAITING_REMOTE_SIGNAL,
            ):
                await self._set_state(SessionState.CONNECTING)
        elif transport_state == TransportState.CONNECTED:
            if self.state == SessionState.WAITING:
                await self._set_state(SessionState.CONNECTED)

    async def _on_open(self) -> None:
        if self.state in (
            SessionState.AWAITING_LOCAL_SIGNAL,
            SessionState.AWAITING_REMOTE_SIGNAL,
        ):
            await self._set_state(SessionState.CONNECTING)
        if self.state != SessionState.CONNECTING:
            return
        if self.role == Role.INITIATOR:
            # Channel is up; the responder's answer still has to vouch for it
            await self._set_state(SessionState.WAITING)
        else:
            await self._set_state(SessionState.CONNECTED)

    async def _on_close(self) -> None:
        if self.state.is_terminal:
            return
        if self.state == SessionState.CONNECTED and self._last_declined:
            await self._set_state(SessionState.DECLINED)
            await self._teardown()
            return
        await self._fail(TransportError("peer closed the channel"))

    async def _on_error(self, reason: str) -> None:
        await self._fail(TransportError(reason))

    # --- inbound messages ---

    async def _on_message(self, message: bytes | str) -> None:
        if self.state.is_terminal:
            return
        self._last_activity = time.monotonic()
        try:
            decoded = decode_message(message)
            if isinstance(decoded, Chunk):
                await self._handle_chunk(decoded)
            elif isinstance(decoded, FileInfoMessage):
                await self._handle_file_info(decoded.metadata)
            else:
                await self._handle_control(decoded)
        except PeerDropError as e:
            await self._fail(e)

    async def _handle_file_info(self, metadata: FileMetadata) -> None:
        if self.state != SessionState.CONNECTED:
            raise ProtocolViolation(f"file offer received while {self.state.value}")
        if metadata.total_chunks != count_chunks(metadata.size_bytes, metadata.chunk_size):
            raise ProtocolViolation(
                f"file offer for {metadata.name} has an inconsistent chunk count"
            )
        if not self.settings.verify_checksum:
            metadata = metadata.model_copy(update={"sha256": ""})

        self._incoming = TransferSession.open(metadata)
        self._last_declined = False
        logger.info(
            f"[{self.share_code}] Offered {metadata.name} "
            f"({metadata.size_bytes} bytes, {metadata.total_chunks} chunks)"
        )
        await self._set_state(SessionState.CONFIRMING)
        await self._emit("file_offered", metadata)

        if self.settings.accept_timeout is not None:
            self._offer_timer = asyncio.create_task(self._expire_offer(metadata.id))

    async def _handle_chunk(self, chunk: Chunk) -> None:
        if chunk.file_id in self._declined_ids:
            logger.debug(f"Dropping chunk {chunk.index} of declined file {chunk.file_id}")
            return
        incoming = self._incoming
        if incoming is None or chunk.file_id != incoming.metadata.id:
            raise ProtocolViolation(
                f"chunk {chunk.index} for file {chunk.file_id} without a file offer"
            )

        if not incoming.reassembler.add(chunk):
            return

        incoming.estimator.observe(len(chunk.payload), time.monotonic())
        await self._report_progress(
            incoming, TransferDirection.RECEIVING, len(chunk.payload)
        )
        await self._maybe_complete()

    async def _handle_control(self, message: ControlMessage) -> None:
        outgoing = self._outgoing
        incoming = self._incoming
        ours = (
            (outgoing is not None and outgoing.metadata.id == message.file_id)
            or (incoming is not None and incoming.metadata.id == message.file_id)
        )
        if not ours:
            logger.warning(
                f"[{self.share_code}] Ignoring {message.action.value} for unknown file {message.file_id}"
            )
            return

        if message.action == ControlAction.CANCEL:
            reason = message.reason or "transfer cancelled by peer"
            await self._fail(TransferCancelled(reason))
            return
        if outgoing is None:
            raise ProtocolViolation(f"{message.action.value} sent to the receiving side")

        if message.action == ControlAction.ACCEPTED:
            logger.info(f"[{self.share_code}] Peer accepted {outgoing.metadata.name}")
            await self._emit("accepted", outgoing.metadata)

        elif message.action == ControlAction.DECLINED:
            logger.info(f"[{self.share_code}] Peer declined {outgoing.metadata.name}")
            self._stop_pump()
            self._outgoing = None
            self._last_declined = True
            await self._set_state(SessionState.CONNECTED)
            await self._emit("declined", outgoing.metadata)

        elif message.action == ControlAction.COMPLETE:
            if self.state != SessionState.TRANSFERRING:
                raise ProtocolViolation(f"completion received while {self.state.value}")
            self._stop_pump()
            await self._set_state(SessionState.COMPLETED)
            await self._emit("completed", CompletedTransfer(
                metadata=outgoing.metadata,
                direction=TransferDirection.SENDING,
                elapsed_seconds=time.monotonic() - outgoing.start_time,
            ))
            await self._teardown()

    async def _maybe_complete(self) -> None:
        incoming = self._incoming
        if (
            incoming is None
            or self.state != SessionState.TRANSFERRING
            or not incoming.reassembler.is_complete
        ):
            return

        data = await asyncio.to_thread(incoming.reassembler.reassemble)
        if self.state != SessionState.TRANSFERRING or self._incoming is not incoming:
            return

        await self._send(encode_control(ControlAction.COMPLETE, incoming.metadata.id))
        self._incoming = None
        await self._set_state(SessionState.COMPLETED)
        logger.info(f"[{self.share_code}] Received {incoming.metadata.name}")
        await self._emit("completed", CompletedTransfer(
            metadata=incoming.metadata,
            direction=TransferDirection.RECEIVING,
            data=data,
            elapsed_seconds=time.monotonic() - incoming.start_time,
        ))
        await self._teardown()

    # --- commands ---

    async def send_file(self, path: str) -> FileMetadata:
        """Offer ``path`` to the peer and start streaming it.

        Returns the announced metadata; completion is reported through the
        ``completed`` event once the receiver has every byte.
        """
        if self.state != SessionState.CONNECTED:
            raise ProtocolViolation(f"cannot send a file while {self.state.value}")
        if not os.path.isfile(path):
            raise FileNotFoundError(path)

        metadata = await asyncio.to_thread(
            self._planner.describe, path, self.settings.verify_checksum
        )
        if self.state != SessionState.CONNECTED:
            raise ProtocolViolation(f"cannot send a file while {self.state.value}")

        estimator = ProgressEstimator(metadata.size_bytes)
        outgoing = OutgoingTransfer(metadata=metadata, path=path, estimator=estimator)
        estimator.start(outgoing.start_time)
        self._outgoing = outgoing
        self._last_declined = False
        self._last_activity = time.monotonic()

        await self._set_state(SessionState.TRANSFERRING)
        logger.info(
            f"[{self.share_code}] Sending {metadata.name} "
            f"({metadata.size_bytes} bytes, {metadata.total_chunks} chunks)"
        )
        if not await self._send(encode_file_info(metadata)):
            return metadata

        outgoing.task = asyncio.create_task(self._pump_chunks(outgoing))
        self._start_watchdog()
        return metadata

    async def _pump_chunks(self, outgoing: OutgoingTransfer) -> None:
        """Stream chunks in index order, one send at a time."""
        metadata = outgoing.metadata
        try:
            with open(outgoing.path, "rb") as f:
                chunks = self._planner.plan(f, metadata)
                while True:
                    chunk = await read_next_chunk(chunks)
                    if chunk is None:
                        break
                    if self._outgoing is not outgoing or self.state != SessionState.TRANSFERRING:
                        return

                    # Returns only once the transport can take more
                    await self._channel.send(encode_chunk(chunk))
                    self._last_activity = time.monotonic()
                    outgoing.estimator.observe(len(chunk.payload), self._last_activity)
                    await self._report_progress(
                        outgoing, TransferDirection.SENDING, len(chunk.payload)
                    )
            logger.info(
                f"[{self.share_code}] All {metadata.total_chunks} chunks of "
                f"{metadata.name} sent, waiting for the receiver"
            )
        except asyncio.CancelledError:
            raise
        except PeerDropError as e:
            await self._fail(e)
        except OSError as e:
            await self._fail(TransportError(f"cannot read {outgoing.path}: {e}"))

    async def accept(self) -> None:
        if self.state != SessionState.CONFIRMING:
            raise ProtocolViolation(f"nothing to accept while {self.state.value}")

        incoming = self._incoming
        self._cancel(self._offer_timer)
        self._last_activity = time.monotonic()
        await self._set_state(SessionState.TRANSFERRING)
        logger.info(f"[{self.share_code}] Accepted {incoming.metadata.name}")
        if not await self._send(encode_control(ControlAction.ACCEPTED, incoming.metadata.id)):
            return
        self._start_watchdog()
        try:
            await self._maybe_complete()
        except PeerDropError as e:
            await self._fail(e)

    async def decline(self, reason: str = "") -> None:
        if self.state != SessionState.CONFIRMING:
            raise ProtocolViolation(f"nothing to decline while {self.state.value}")

        incoming = self._incoming
        self._cancel(self._offer_timer)
        self._declined_ids.add(incoming.metadata.id)
        self._incoming = None
        self._last_declined = True
        await self._set_state(SessionState.CONNECTED)
        logger.info(f"[{self.share_code}] Declined {incoming.metadata.name}")
        if not await self._send(
            encode_control(ControlAction.DECLINED, incoming.metadata.id, reason)
        ):
            return
        await self._emit("declined", incoming.metadata)

    async def cancel(self) -> None:
        """Abort the running transfer; the session ends in FAILED."""
        if self.state not in (SessionState.TRANSFERRING, SessionState.CONFIRMING):
            raise ProtocolViolation(f"nothing to cancel while {self.state.value}")

        current = self._outgoing or self._incoming
        self._stop_pump()
        try:
            await self._channel.send(encode_control(
                ControlAction.CANCEL, current.metadata.id, "transfer cancelled by peer"
            ))
        except TransportError as e:
            logger.debug(f"Could not notify peer of cancel: {e}")
        await self._fail(TransferCancelled("transfer cancelled"))

    async def close(self) -> None:
        """Leave the session; a live one ends in DECLINED or FAILED."""
        if self.state == SessionState.IDLE:
            return
        if self.state.is_terminal:
            await self._teardown()
        elif self.state == SessionState.CONNECTED and self._last_declined:
            await self._set_state(SessionState.DECLINED)
            await self._teardown()
        else:
            await self._fail(TransferCancelled("session closed"))

    # --- helpers ---

    async def _send(self, data: bytes | str) -> bool:
        try:
            await self._channel.send(data)
            self._last_activity = time.monotonic()
            return True
        except TransportError as e:
            await self._fail(e)
            return False

    async def _report_progress(
        self,
        transfer: TransferSession | OutgoingTransfer,
        direction: TransferDirection,
        bytes_delta: int,
    ) -> None:
        estimator = transfer.estimator
        now = time.monotonic()
        final = estimator.bytes_so_far >= transfer.metadata.size_bytes
        if not final and now - transfer.last_progress < self.settings.progress_interval:
            return
        transfer.last_progress = now

        await self._emit("progress", ProgressSample(
            file_id=transfer.metadata.id,
            direction=direction,
            bytes_delta=bytes_delta,
            time_delta=estimator.last_time_delta,
            transferred_bytes=estimator.bytes_so_far,
            total_bytes=transfer.metadata.size_bytes,
            progress_percent=estimator.percent(),
            speed_bps=estimator.speed(),
            eta_seconds=estimator.eta(),
        ))

    def _start_watchdog(self) -> None:
        if self._watchdog is None or self._watchdog.done():
            self._watchdog = asyncio.create_task(self._watch_activity())

    async def _watch_activity(self) -> None:
        timeout = self.settings.transfer_timeout
        while self.state == SessionState.TRANSFERRING:
            idle = time.monotonic() - self._last_activity
            if idle >= timeout:
                await self._fail(
                    SessionTimeout(f"no transfer activity for {timeout:g} seconds")
                )
                return
            await asyncio.sleep(timeout - idle)

    async def _expire_offer(self, file_id: str) -> None:
        await asyncio.sleep(self.settings.accept_timeout)
        incoming = self._incoming
        if (
            self.state == SessionState.CONFIRMING
            and incoming is not None
            and incoming.metadata.id == file_id
        ):
            logger.info(f"[{self.share_code}] Offer of {incoming.metadata.name} timed out")
            await self.decline("not accepted in time")

    @staticmethod
    def _cancel(task: asyncio.Task | None) -> None:
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _stop_pump(self) -> None:
        if self._outgoing is not None:
            self._cancel(self._outgoing.task)

    async def _fail(self, error: PeerDropError) -> None:
        if self.state.is_terminal:
            logger.debug(f"[{self.share_code}] Ignoring {error!r} after {self.state.value}")
            return

        self.failure = error.to_reason()
        logger.error(f"[{self.share_code}] Session failed ({self.failure.kind.value}): {error}")
        self._stop_pump()
        self._incoming = None
        await self._set_state(SessionState.FAILED)
        await self._emit("failed", self.failure)
        await self._teardown()

    async def _teardown(self) -> None:
        self._cancel(self._watchdog)
        self._cancel(self._offer_timer)
        self._stop_pump()
        if self._channel is not None:
            await self._channel.close()
