"""
Transfer protocol spoken over an open channel.

Text frames carry JSON handshake/control messages, binary frames carry
file chunks behind a small fixed header.
"""

import json
import struct

from pydantic import ValidationError

from errors import ProtocolViolation
from transfer.models import (
    Chunk,
    ControlAction,
    ControlMessage,
    FileInfoMessage,
    FileMetadata,
    MessageType,
)

# --- Binary chunk framing ---

CHUNK_MAGIC = 0xC5
FLAG_LAST = 0x01
CHUNK_HEADER_FORMAT = "!BBHI"  # magic, flags, file id length, chunk index
CHUNK_HEADER_SIZE = struct.calcsize(CHUNK_HEADER_FORMAT)


def encode_file_info(metadata: FileMetadata) -> str:
    return FileInfoMessage(metadata=metadata).model_dump_json()


def encode_control(action: ControlAction, file_id: str, reason: str = "") -> str:
    return ControlMessage(action=action, file_id=file_id, reason=reason).model_dump_json()


def encode_chunk(chunk: Chunk) -> bytes:
    file_id = chunk.file_id.encode("utf-8")
    header = struct.pack(
        CHUNK_HEADER_FORMAT,
        CHUNK_MAGIC,
        FLAG_LAST if chunk.is_last else 0,
        len(file_id),
        chunk.index,
    )
    return header + file_id + chunk.payload


def decode_chunk(data: bytes) -> Chunk:
    if len(data) < CHUNK_HEADER_SIZE:
        raise ProtocolViolation("binary frame too short to be a chunk")

    magic, flags, id_len, index = struct.unpack(
        CHUNK_HEADER_FORMAT, data[:CHUNK_HEADER_SIZE]
    )
    if magic != CHUNK_MAGIC:
        raise ProtocolViolation(f"unexpected binary frame magic {magic:#x}")

    id_end = CHUNK_HEADER_SIZE + id_len
    if len(data) < id_end:
        raise ProtocolViolation("chunk header truncated")

    try:
        file_id = data[CHUNK_HEADER_SIZE:id_end].decode("utf-8")
    except UnicodeDecodeError as e:
        raise ProtocolViolation("chunk file id is not valid UTF-8") from e

    return Chunk(
        file_id=file_id,
        index=index,
        payload=bytes(data[id_end:]),
        is_last=bool(flags & FLAG_LAST),
    )


def decode_text(text: str) -> FileInfoMessage | ControlMessage:
    """Parse a JSON text frame into a handshake or control message."""
    try:
        data = json.loads(text)
        msg_type = MessageType(data.get("type"))
        if msg_type == MessageType.FILE_INFO:
            return FileInfoMessage.model_validate(data)
        return ControlMessage.model_validate(data)
    except (ValueError, AttributeError, ValidationError) as e:
        raise ProtocolViolation(f"unreadable text frame: {e}") from e


def decode_message(message: bytes | str) -> FileInfoMessage | ControlMessage | Chunk:
    """Dispatch a raw channel message by frame kind."""
    if isinstance(message, str):
        return decode_text(message)
    return decode_chunk(message)
