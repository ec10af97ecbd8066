"""Session state, settings and per-transfer bookkeeping."""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, Field, model_validator

from config import (
    ACCEPT_TIMEOUT,
    CHUNK_SIZE,
    MAX_CHUNK_SIZE,
    MIN_CHUNK_SIZE,
    PROGRESS_INTERVAL,
    TRANSFER_TIMEOUT,
)
from transfer.chunks import Reassembler
from transfer.models import FileMetadata
from transfer.progress import ProgressEstimator


class SessionState(str, Enum):
    """All possible states of a peer session."""
    IDLE = "idle"
    AWAITING_LOCAL_SIGNAL = "awaiting_local_signal"
    AWAITING_REMOTE_SIGNAL = "awaiting_remote_signal"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    WAITING = "waiting"
    CONFIRMING = "confirming"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    DECLINED = "declined"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    SessionState.COMPLETED,
    SessionState.DECLINED,
    SessionState.FAILED,
})

ALLOWED_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.IDLE: frozenset({
        SessionState.AWAITING_LOCAL_SIGNAL,
        SessionState.AWAITING_REMOTE_SIGNAL,
    }),
    SessionState.AWAITING_LOCAL_SIGNAL: frozenset({SessionState.CONNECTING}),
    SessionState.AWAITING_REMOTE_SIGNAL: frozenset({SessionState.CONNECTING}),
    SessionState.CONNECTING: frozenset({SessionState.WAITING, SessionState.CONNECTED}),
    SessionState.WAITING: frozenset({SessionState.CONNECTED}),
    SessionState.CONNECTED: frozenset({
        SessionState.TRANSFERRING,
        SessionState.CONFIRMING,
        SessionState.DECLINED,
    }),
    SessionState.CONFIRMING: frozenset({
        SessionState.TRANSFERRING,
        SessionState.CONNECTED,
    }),
    SessionState.TRANSFERRING: frozenset({
        SessionState.COMPLETED,
        SessionState.CONNECTED,
    }),
}


def can_transition(current: SessionState, target: SessionState) -> bool:
    if current.is_terminal:
        return False
    if target == SessionState.FAILED:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


class SessionSettings(BaseModel):
    """Per-session tunables, defaulting to the values in config."""
    chunk_size: int = Field(default=CHUNK_SIZE, ge=MIN_CHUNK_SIZE, le=MAX_CHUNK_SIZE)
    transfer_timeout: float = Field(default=TRANSFER_TIMEOUT, gt=0)
    accept_timeout: float | None = Field(default=ACCEPT_TIMEOUT, gt=0)
    progress_interval: float = Field(default=PROGRESS_INTERVAL, ge=0)
    verify_checksum: bool = True

    @model_validator(mode="after")
    def _accept_before_timeout(self) -> "SessionSettings":
        # An unanswered offer is declined before the sender times out
        if self.accept_timeout is not None and self.accept_timeout >= self.transfer_timeout:
            raise ValueError("accept_timeout must be shorter than transfer_timeout")
        return self


@dataclass
class TransferSession:
    """Receiving side of one file: owned by the session until reassembly."""
    metadata: FileMetadata
    reassembler: Reassembler
    estimator: ProgressEstimator
    start_time: float = field(default_factory=time.monotonic)
    last_progress: float = 0.0

    @classmethod
    def open(cls, metadata: FileMetadata) -> "TransferSession":
        now = time.monotonic()
        estimator = ProgressEstimator(metadata.size_bytes)
        estimator.start(now)
        return cls(metadata, Reassembler(metadata), estimator, start_time=now)

    @property
    def bytes_received(self) -> int:
        return self.reassembler.bytes_received

    @property
    def chunks_received(self) -> list[int]:
        return self.reassembler.chunks_received


@dataclass
class OutgoingTransfer:
    """Sending side of one file; the pump task owns the file handle."""
    metadata: FileMetadata
    path: str
    estimator: ProgressEstimator
    start_time: float = field(default_factory=time.monotonic)
    last_progress: float = 0.0
    task: asyncio.Task | None = None
