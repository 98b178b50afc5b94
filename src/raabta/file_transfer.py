"""
Chunked file transfer over a direct channel — in memory, best effort.

Files are split into 16 KB chunks and streamed as ``file-start`` +
``file-chunk`` records. There is no resumability: if the channel
closes mid-transfer the partial state is dropped. The relay-backed
encrypted upload path is the durable alternative.

Architecture:
    Sender:
        1. Split the file into 16 KB chunks.
        2. Send one file-start record (id, chunk count, name, size, MIME).
        3. Stream file-chunk records (index + bytes), pausing every 10.

    Receiver:
        1. Allocate an IncomingTransfer on file-start.
        2. Store each chunk at its index (arrival order does not matter).
        3. Report progress after every chunk.
        4. Concatenate by index once every chunk has arrived.

Usage:
    registry = TransferRegistry()
    registry.start(start_record, sender="02ab...", room_id="room-...")
    done = registry.add_chunk(transfer_id, index, data)
"""

from __future__ import annotations

import logging
import uuid
from typing import Iterator, Optional

from pydantic import BaseModel, Field

from .models import ReceivedFile

logger = logging.getLogger("raabta.file_transfer")

CHUNK_SIZE = 16 * 1024  # 16 KB
PACING_EVERY = 10


# ---------------------------------------------------------------------------
# Chunking
# ---------------------------------------------------------------------------


def chunk_count(size: int, chunk_size: int = CHUNK_SIZE) -> int:
    """Number of chunks needed for ``size`` bytes (at least one)."""
    return max(1, (size + chunk_size - 1) // chunk_size)


def split_chunks(data: bytes, chunk_size: int = CHUNK_SIZE) -> Iterator[tuple[int, bytes]]:
    """Yield ``(index, chunk)`` pairs covering ``data``.

    An empty file still produces one empty chunk so the receiver sees
    a completion.
    """
    total = chunk_count(len(data), chunk_size)
    for i in range(total):
        start = i * chunk_size
        yield i, data[start:start + chunk_size]


def new_transfer_id() -> str:
    return uuid.uuid4().hex[:12]


# ---------------------------------------------------------------------------
# Receiver state
# ---------------------------------------------------------------------------


class IncomingTransfer(BaseModel):
    """State for one in-flight inbound transfer."""

    transfer_id: str
    total_chunks: int
    filename: str = "file"
    size: int = 0
    mime_type: str = "application/octet-stream"
    sender: str = ""
    room_id: str = ""
    chunks: dict[int, bytes] = Field(default_factory=dict)

    @property
    def received_count(self) -> int:
        return len(self.chunks)

    @property
    def progress(self) -> float:
        """Transfer progress as a fraction (0.0 to 1.0)."""
        if self.total_chunks <= 0:
            return 0.0
        return min(1.0, self.received_count / self.total_chunks)

    @property
    def is_complete(self) -> bool:
        return self.received_count >= self.total_chunks

    def add_chunk(self, index: int, data: bytes) -> bool:
        """Store a chunk at its index. Returns True when the transfer is complete.

        Raises:
            ValueError: If the index is outside the declared chunk range.
        """
        if index < 0 or index >= self.total_chunks:
            raise ValueError(
                f"Chunk index {index} out of range for transfer "
                f"{self.transfer_id} ({self.total_chunks} chunks)"
            )
        if index in self.chunks:
            logger.debug("Duplicate chunk %d for transfer %s", index, self.transfer_id)
        self.chunks[index] = data
        return self.is_complete

    def assemble(self) -> bytes:
        """Concatenate chunks in index order."""
        return b"".join(self.chunks[i] for i in range(self.total_chunks))


class TransferRegistry:
    """All inbound transfers owned by one direct transport."""

    def __init__(self) -> None:
        self._transfers: dict[str, IncomingTransfer] = {}

    def __len__(self) -> int:
        return len(self._transfers)

    def __contains__(self, transfer_id: str) -> bool:
        return transfer_id in self._transfers

    def get(self, transfer_id: str) -> Optional[IncomingTransfer]:
        return self._transfers.get(transfer_id)

    def start(
        self,
        transfer_id: str,
        total_chunks: int,
        filename: str,
        size: int,
        mime_type: str,
        sender: str,
        room_id: str,
    ) -> IncomingTransfer:
        """Allocate state for a new transfer, replacing a stale one with the same id."""
        if transfer_id in self._transfers:
            logger.info("Restarting transfer %s", transfer_id)
        transfer = IncomingTransfer(
            transfer_id=transfer_id,
            total_chunks=max(1, total_chunks),
            filename=filename,
            size=size,
            mime_type=mime_type,
            sender=sender,
            room_id=room_id,
        )
        self._transfers[transfer_id] = transfer
        logger.info(
            "Receiving transfer %s: %s (%d chunks, %d bytes) from %s",
            transfer_id, filename, transfer.total_chunks, size, sender[:16],
        )
        return transfer

    def add_chunk(
        self, transfer_id: str, index: int, data: bytes,
    ) -> tuple[Optional[IncomingTransfer], Optional[ReceivedFile]]:
        """Apply one chunk.

        Returns:
            ``(transfer, None)`` while in progress, ``(transfer, file)`` on
            completion (the state is discarded), ``(None, None)`` for an
            unknown transfer id.
        """
        transfer = self._transfers.get(transfer_id)
        if transfer is None:
            logger.warning("Ignoring chunk %d for unknown transfer %s", index, transfer_id)
            return None, None

        if not transfer.add_chunk(index, data):
            return transfer, None

        del self._transfers[transfer_id]
        blob = transfer.assemble()
        logger.info(
            "Completed transfer %s: %s (%d bytes)",
            transfer_id, transfer.filename, len(blob),
        )
        return transfer, ReceivedFile(
            transfer_id=transfer_id,
            sender=transfer.sender,
            filename=transfer.filename,
            mime_type=transfer.mime_type,
            data=blob,
        )

    def drop_room(self, room_id: str) -> list[str]:
        """Discard every transfer that arrived on a room's channel."""
        dropped = [t.transfer_id for t in self._transfers.values() if t.room_id == room_id]
        for transfer_id in dropped:
            del self._transfers[transfer_id]
        if dropped:
            logger.info("Abandoned %d incomplete transfer(s) on %s", len(dropped), room_id)
        return dropped

    def clear(self) -> None:
        self._transfers.clear()
