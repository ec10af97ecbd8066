"""Tests for chunk planning and reassembly."""

import hashlib
import io
import random

import pytest

from errors import IncompleteTransfer, ProtocolViolation
from transfer.chunks import ChunkPlanner, Reassembler, count_chunks, reassemble
from transfer.models import Chunk, FileMetadata


def _metadata(data: bytes, chunk_size: int, with_digest: bool = True) -> FileMetadata:
    return FileMetadata(
        name="data.bin",
        size_bytes=len(data),
        total_chunks=count_chunks(len(data), chunk_size),
        chunk_size=chunk_size,
        sha256=hashlib.sha256(data).hexdigest() if with_digest else "",
    )


def _plan(data: bytes, chunk_size: int) -> tuple[FileMetadata, list[Chunk]]:
    metadata = _metadata(data, chunk_size)
    planner = ChunkPlanner(chunk_size)
    return metadata, list(planner.plan(io.BytesIO(data), metadata))


class TestPlanner:
    def test_rejects_non_positive_chunk_size(self):
        with pytest.raises(ValueError):
            ChunkPlanner(0)

    def test_150000_bytes_in_64k_chunks(self):
        data = bytes(150000)
        metadata, chunks = _plan(data, 65536)
        assert metadata.total_chunks == 3
        assert [len(c.payload) for c in chunks] == [65536, 65536, 18928]
        assert [c.index for c in chunks] == [0, 1, 2]
        assert [c.is_last for c in chunks] == [False, False, True]

    def test_exact_multiple_has_no_trailing_empty_chunk(self):
        _, chunks = _plan(bytes(4096), 1024)
        assert len(chunks) == 4
        assert all(len(c.payload) == 1024 for c in chunks)

    def test_empty_file_has_no_chunks(self):
        metadata, chunks = _plan(b"", 1024)
        assert metadata.total_chunks == 0
        assert chunks == []

    def test_plan_is_lazy(self):
        data = bytes(10 * 1024)
        metadata = _metadata(data, 1024)
        source = io.BytesIO(data)
        chunks = ChunkPlanner(1024).plan(source, metadata)
        next(chunks)
        assert source.tell() == 1024

    def test_source_shorter_than_announced(self):
        metadata = _metadata(bytes(3000), 1024)
        with pytest.raises(IncompleteTransfer):
            list(ChunkPlanner(1024).plan(io.BytesIO(bytes(1500)), metadata))

    def test_source_grew_while_sending(self):
        metadata = _metadata(bytes(2048), 1024)
        with pytest.raises(IncompleteTransfer):
            list(ChunkPlanner(1024).plan(io.BytesIO(bytes(4096)), metadata))

    def test_describe(self, tmp_path):
        path = tmp_path / "notes.txt"
        data = b"hello " * 1000
        path.write_bytes(data)

        metadata = ChunkPlanner(1024).describe(str(path))
        assert metadata.name == "notes.txt"
        assert metadata.mime_type == "text/plain"
        assert metadata.size_bytes == len(data)
        assert metadata.total_chunks == 6
        assert metadata.sha256 == hashlib.sha256(data).hexdigest()

        assert ChunkPlanner(1024).describe(str(path), with_digest=False).sha256 == ""


class TestReassembly:
    @pytest.mark.parametrize("size,chunk_size", [
        (1, 1024),
        (1024, 1024),
        (1025, 1024),
        (150000, 65536),
        (300001, 7),
    ])
    def test_round_trip(self, size, chunk_size):
        data = random.Random(size).randbytes(size)
        metadata, chunks = _plan(data, chunk_size)
        assert reassemble(chunks, metadata) == data

    def test_out_of_order_arrival(self):
        data = random.Random(1).randbytes(50000)
        metadata, chunks = _plan(data, 4096)
        random.Random(2).shuffle(chunks)

        reassembler = Reassembler(metadata)
        for chunk in chunks:
            assert reassembler.add(chunk)
        assert reassembler.is_complete
        assert reassembler.reassemble() == data

    def test_duplicate_chunk_counted_once(self):
        data = bytes(range(256)) * 10
        metadata, chunks = _plan(data, 1024)

        reassembler = Reassembler(metadata)
        assert reassembler.add(chunks[0])
        assert not reassembler.add(chunks[0])
        assert reassembler.bytes_received == 1024
        assert reassembler.chunks_received == [0]

    def test_missing_chunk(self):
        data = bytes(5000)
        metadata, chunks = _plan(data, 1024)
        with pytest.raises(IncompleteTransfer):
            reassemble(chunks[:2] + chunks[3:], metadata)

    def test_checksum_mismatch(self):
        data = bytes(5000)
        metadata, chunks = _plan(data, 1024)
        chunks[1] = Chunk(chunks[1].file_id, 1, b"\x01" * 1024, False)
        with pytest.raises(IncompleteTransfer):
            reassemble(chunks, metadata)

    def test_missing_chunk_leaves_transfer_incomplete(self):
        data = bytes(3000)
        metadata, chunks = _plan(data, 1024)

        reassembler = Reassembler(metadata)
        reassembler.add(chunks[0])
        reassembler.add(chunks[2])
        assert not reassembler.is_complete
        with pytest.raises(IncompleteTransfer):
            reassembler.reassemble()


class TestReassemblerViolations:
    @pytest.fixture
    def setup(self):
        data = bytes(3000)
        metadata, chunks = _plan(data, 1024)
        return Reassembler(metadata), chunks

    def test_wrong_file(self, setup):
        reassembler, chunks = setup
        with pytest.raises(ProtocolViolation):
            reassembler.add(Chunk("other", 0, chunks[0].payload, False))

    def test_index_out_of_range(self, setup):
        reassembler, chunks = setup
        with pytest.raises(ProtocolViolation):
            reassembler.add(Chunk(chunks[0].file_id, 3, b"x", True))

    def test_wrong_last_flag(self, setup):
        reassembler, chunks = setup
        with pytest.raises(ProtocolViolation):
            reassembler.add(Chunk(chunks[0].file_id, 0, chunks[0].payload, True))

    def test_oversized_payload(self, setup):
        reassembler, chunks = setup
        with pytest.raises(ProtocolViolation):
            reassembler.add(Chunk(chunks[0].file_id, 0, bytes(1025), False))

    def test_short_middle_chunk(self, setup):
        reassembler, chunks = setup
        with pytest.raises(ProtocolViolation):
            reassembler.add(Chunk(chunks[0].file_id, 0, bytes(952), False))
        assert reassembler.bytes_received == 0

    def test_misaligned_split_is_rejected(self, setup):
        reassembler, chunks = setup
        reassembler.add(chunks[0])
        reassembler.add(chunks[1])
        with pytest.raises(ProtocolViolation):
            reassembler.add(Chunk(chunks[2].file_id, 2, bytes(1024), True))

    def test_short_last_chunk(self, setup):
        reassembler, chunks = setup
        with pytest.raises(ProtocolViolation):
            reassembler.add(Chunk(chunks[2].file_id, 2, bytes(951), True))
