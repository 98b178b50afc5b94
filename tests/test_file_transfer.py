"""Tests for chunking and inbound transfer reassembly."""

from __future__ import annotations

import os

import pytest

from raabta.file_transfer import (
    CHUNK_SIZE,
    IncomingTransfer,
    TransferRegistry,
    chunk_count,
    new_transfer_id,
    split_chunks,
)


@pytest.fixture
def registry() -> TransferRegistry:
    return TransferRegistry()


def _start(registry: TransferRegistry, total: int, room: str = "room-a-b") -> IncomingTransfer:
    return registry.start(
        "t1", total_chunks=total, filename="doc.bin", size=total * 10,
        mime_type="application/octet-stream", sender="02aa", room_id=room,
    )


# ---------------------------------------------------------------------------
# Chunking
# ---------------------------------------------------------------------------


class TestChunking:
    """Splitting outbound files."""

    def test_chunk_count(self) -> None:
        assert chunk_count(0) == 1
        assert chunk_count(1) == 1
        assert chunk_count(CHUNK_SIZE) == 1
        assert chunk_count(CHUNK_SIZE + 1) == 2
        assert chunk_count(40 * 1024) == 3

    def test_split_covers_data(self) -> None:
        data = os.urandom(40 * 1024)
        chunks = list(split_chunks(data))
        assert [i for i, _ in chunks] == [0, 1, 2]
        assert [len(c) for _, c in chunks] == [CHUNK_SIZE, CHUNK_SIZE, 8 * 1024]
        assert b"".join(c for _, c in chunks) == data

    def test_empty_file_yields_one_chunk(self) -> None:
        assert list(split_chunks(b"")) == [(0, b"")]

    def test_transfer_ids_unique(self) -> None:
        assert new_transfer_id() != new_transfer_id()


# ---------------------------------------------------------------------------
# Reassembly
# ---------------------------------------------------------------------------


class TestReassembly:
    """Receiver-side state."""

    def test_in_order(self, registry: TransferRegistry) -> None:
        _start(registry, 3)
        progress = []
        for index, part in enumerate([b"aa", b"bb", b"c"]):
            transfer, done = registry.add_chunk("t1", index, part)
            progress.append(transfer.progress)
        assert progress == pytest.approx([1 / 3, 2 / 3, 1.0])
        assert done is not None
        assert done.data == b"aabbc"
        assert done.filename == "doc.bin"
        assert done.sender == "02aa"

    def test_out_of_order(self, registry: TransferRegistry) -> None:
        _start(registry, 3)
        assert registry.add_chunk("t1", 2, b"3")[1] is None
        assert registry.add_chunk("t1", 0, b"1")[1] is None
        _, done = registry.add_chunk("t1", 1, b"2")
        assert done is not None and done.data == b"123"

    def test_duplicate_chunk_not_double_counted(self, registry: TransferRegistry) -> None:
        _start(registry, 2)
        registry.add_chunk("t1", 0, b"a")
        transfer, done = registry.add_chunk("t1", 0, b"a")
        assert done is None
        assert transfer.received_count == 1
        assert transfer.progress == pytest.approx(0.5)

    def test_state_discarded_on_completion(self, registry: TransferRegistry) -> None:
        _start(registry, 1)
        registry.add_chunk("t1", 0, b"x")
        assert "t1" not in registry
        assert len(registry) == 0

    def test_unknown_transfer_ignored(self, registry: TransferRegistry) -> None:
        assert registry.add_chunk("nope", 0, b"x") == (None, None)

    def test_index_out_of_range(self, registry: TransferRegistry) -> None:
        _start(registry, 2)
        with pytest.raises(ValueError):
            registry.add_chunk("t1", 2, b"x")
        with pytest.raises(ValueError):
            registry.add_chunk("t1", -1, b"x")

    def test_drop_room(self, registry: TransferRegistry) -> None:
        _start(registry, 3, room="room-1")
        registry.start("t2", 2, "b", 2, "text/plain", "03bb", "room-2")
        assert registry.drop_room("room-1") == ["t1"]
        assert "t1" not in registry
        assert "t2" in registry

    def test_restart_replaces_state(self, registry: TransferRegistry) -> None:
        _start(registry, 3)
        registry.add_chunk("t1", 0, b"old")
        fresh = _start(registry, 3)
        assert fresh.received_count == 0
        assert registry.get("t1") is fresh

    def test_zero_chunks_coerced_to_one(self, registry: TransferRegistry) -> None:
        transfer = _start(registry, 0)
        assert transfer.total_chunks == 1
