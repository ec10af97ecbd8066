"""
Chunk planning and reassembly.

The sender describes a file and then streams it as fixed-size chunks read
on demand; the receiver collects chunks by index and rebuilds the file once
every byte is in.
"""

import hashlib
import logging
import math
import mimetypes
import os
from typing import BinaryIO, Iterable, Iterator

from config import CHUNK_SIZE
from errors import IncompleteTransfer, ProtocolViolation
from transfer.models import Chunk, FileMetadata

logger = logging.getLogger(__name__)

_HASH_BLOCK = 1024 * 1024


def count_chunks(size_bytes: int, chunk_size: int) -> int:
    return math.ceil(size_bytes / chunk_size)


def file_digest(path: str) -> str:
    """SHA-256 of a file, read in blocks."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        while block := f.read(_HASH_BLOCK):
            digest.update(block)
    return digest.hexdigest()


class ChunkPlanner:
    """Splits files into ordered chunks of ``chunk_size`` bytes."""

    def __init__(self, chunk_size: int = CHUNK_SIZE) -> None:
        if chunk_size <= 0:
            raise ValueError(f"chunk size must be positive, got {chunk_size}")
        self.chunk_size = chunk_size

    def describe(self, path: str, with_digest: bool = True) -> FileMetadata:
        """Build the metadata announced to the receiver for ``path``."""
        size = os.path.getsize(path)
        name = os.path.basename(path)
        mime_type, _ = mimetypes.guess_type(name)
        return FileMetadata(
            name=name,
            mime_type=mime_type or "application/octet-stream",
            size_bytes=size,
            total_chunks=count_chunks(size, self.chunk_size),
            chunk_size=self.chunk_size,
            sha256=file_digest(path) if with_digest else "",
        )

    def plan(self, source: BinaryIO, metadata: FileMetadata) -> Iterator[Chunk]:
        """Lazily read ``source`` and yield its chunks in index order.

        Raises IncompleteTransfer if the source does not hold exactly
        ``metadata.size_bytes`` bytes.
        """
        sent = 0
        for index in range(metadata.total_chunks):
            payload = source.read(metadata.chunk_size)
            if not payload:
                raise IncompleteTransfer(
                    f"{metadata.name} ended after {sent} of {metadata.size_bytes} bytes"
                )
            sent += len(payload)
            yield Chunk(
                file_id=metadata.id,
                index=index,
                payload=payload,
                is_last=index == metadata.total_chunks - 1,
            )

        if sent != metadata.size_bytes or source.read(1):
            raise IncompleteTransfer(
                f"{metadata.name} changed size while being sent"
            )


class Reassembler:
    """Collects one file's chunks, placing them by index.

    Duplicate indices are ignored; anything that could push the byte count
    past the announced size is a protocol violation.
    """

    def __init__(self, metadata: FileMetadata) -> None:
        self.metadata = metadata
        self._chunks: dict[int, bytes] = {}
        self.bytes_received = 0

    @property
    def chunks_received(self) -> list[int]:
        return sorted(self._chunks)

    @property
    def is_complete(self) -> bool:
        return self.bytes_received == self.metadata.size_bytes

    def add(self, chunk: Chunk) -> bool:
        """Store a chunk. Returns False if it was a duplicate."""
        meta = self.metadata
        if chunk.file_id != meta.id:
            raise ProtocolViolation(
                f"chunk for file {chunk.file_id} arrived during transfer of {meta.id}"
            )
        if not 0 <= chunk.index < meta.total_chunks:
            raise ProtocolViolation(
                f"chunk index {chunk.index} out of range (total {meta.total_chunks})"
            )
        if chunk.is_last != (chunk.index == meta.total_chunks - 1):
            raise ProtocolViolation(f"chunk {chunk.index} has a wrong last-chunk flag")
        # Chunk i covers bytes [i*C, (i+1)*C); only the last one may be shorter
        expected = (
            meta.size_bytes - chunk.index * meta.chunk_size
            if chunk.is_last
            else meta.chunk_size
        )
        if len(chunk.payload) != expected:
            raise ProtocolViolation(
                f"chunk {chunk.index} carries {len(chunk.payload)} bytes, expected {expected}"
            )

        if chunk.index in self._chunks:
            logger.debug(f"Ignoring duplicate chunk {chunk.index} of {meta.name}")
            return False

        self._chunks[chunk.index] = chunk.payload
        self.bytes_received += len(chunk.payload)
        return True

    def reassemble(self) -> bytes:
        return reassemble(
            (Chunk(self.metadata.id, i, p, i == self.metadata.total_chunks - 1)
             for i, p in self._chunks.items()),
            self.metadata,
        )


def reassemble(chunks: Iterable[Chunk], metadata: FileMetadata) -> bytes:
    """Concatenate chunks in index order and verify the result."""
    ordered = sorted(chunks, key=lambda c: c.index)
    indices = [c.index for c in ordered]
    if indices != list(range(metadata.total_chunks)):
        missing = sorted(set(range(metadata.total_chunks)) - set(indices))
        raise IncompleteTransfer(
            f"{metadata.name}: expected {metadata.total_chunks} chunks, "
            f"got {len(indices)} (missing {missing[:10]})"
        )

    data = b"".join(c.payload for c in ordered)
    if len(data) != metadata.size_bytes:
        raise IncompleteTransfer(
            f"{metadata.name}: reassembled {len(data)} bytes, expected {metadata.size_bytes}"
        )
    if metadata.sha256 and hashlib.sha256(data).hexdigest() != metadata.sha256:
        raise IncompleteTransfer(f"{metadata.name}: checksum mismatch")
    return data
