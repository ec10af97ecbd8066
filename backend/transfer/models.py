"""Models for file transfer."""

import uuid
from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, Field


class TransferDirection(str, Enum):
    SENDING = "sending"
    RECEIVING = "receiving"


class FileMetadata(BaseModel):
    """Metadata sent once, before any chunk of the file."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str
    mime_type: str = "application/octet-stream"
    size_bytes: int = Field(ge=0)
    total_chunks: int = Field(ge=0)
    chunk_size: int = Field(gt=0)
    sha256: str = ""


@dataclass(frozen=True, slots=True)
class Chunk:
    file_id: str
    index: int
    payload: bytes
    is_last: bool


class ProgressSample(BaseModel):
    """Progress snapshot exposed through the ``progress`` event."""
    file_id: str
    direction: TransferDirection
    bytes_delta: int
    time_delta: float
    transferred_bytes: int
    total_bytes: int
    progress_percent: float
    speed_bps: float = 0.0
    eta_seconds: float | None = None


class CompletedTransfer(BaseModel):
    """Payload of the ``completed`` event.

    ``data`` holds the reassembled file on the receiving side and is None
    for the sender.
    """
    metadata: FileMetadata
    direction: TransferDirection
    data: bytes | None = None
    elapsed_seconds: float = 0.0


# --- Wire protocol message types ---

class MessageType(str, Enum):
    FILE_INFO = "file-info"
    CONTROL = "control"


class ControlAction(str, Enum):
    ACCEPTED = "accepted"
    DECLINED = "declined"
    COMPLETE = "complete"
    CANCEL = "cancel"


class FileInfoMessage(BaseModel):
    type: MessageType = MessageType.FILE_INFO
    metadata: FileMetadata


class ControlMessage(BaseModel):
    type: MessageType = MessageType.CONTROL
    action: ControlAction
    file_id: str
    reason: str = ""
