"""
Pydantic models for everything the sync engine stores or moves.

Timestamps are integer milliseconds since the epoch, the unit both
transports agree on once relay seconds are scaled up.
"""

from __future__ import annotations

import time
from enum import Enum
from pathlib import Path
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field

RETENTION_MS = 365 * 24 * 60 * 60 * 1000


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class TransportKind(str, Enum):
    """Which path carried a message."""

    RELAY = "relay"
    DIRECT = "direct"


class Identity(BaseModel):
    """The local key pair. The public half is this instance's address."""

    private_key: str
    public_key: str
    username: str = ""
    created_at: int = Field(default_factory=now_ms)


class Contact(BaseModel):
    """A known peer, keyed by native address."""

    address: str
    display_name: str = ""
    added_at: int = Field(default_factory=now_ms)
    last_seen: int = Field(default_factory=now_ms)


class FileAttachment(BaseModel):
    """Descriptor for a file carried alongside a message.

    Uploaded blobs carry ``url`` and ``iv``; files received over a
    direct channel carry ``local_path`` and ``transfer_id``.
    """

    name: str
    mime_type: str = "application/octet-stream"
    size: int = 0
    url: Optional[str] = None
    iv: Optional[str] = None
    local_path: Optional[Path] = None
    transfer_id: Optional[str] = None

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")

    @property
    def is_video(self) -> bool:
        return self.mime_type.startswith("video/")

    @property
    def is_audio(self) -> bool:
        return self.mime_type.startswith("audio/")


class Message(BaseModel):
    """One message in a conversation, sent or received."""

    id: Optional[int] = None
    conversation_id: str
    sender: str
    recipient: str
    text: str = ""
    ciphertext: str = ""
    timestamp: int = Field(default_factory=now_ms)
    is_sent: bool = False
    is_read: bool = False
    expires_at: int = 0
    envelope_id: Optional[str] = None
    content_hash: Optional[str] = None
    attachment: Optional[FileAttachment] = None
    delivered_via: list[TransportKind] = Field(default_factory=list)
    delivery_errors: dict[str, str] = Field(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        if not self.expires_at:
            self.expires_at = self.timestamp + RETENTION_MS

    @property
    def has_attachment(self) -> bool:
        return self.attachment is not None


# ---------------------------------------------------------------------------
# Transport units
# ---------------------------------------------------------------------------


class RelayEvent(BaseModel):
    """A signed relay envelope (NIP-01 event)."""

    id: str
    pubkey: str
    created_at: int
    kind: int
    tags: list[list[str]] = Field(default_factory=list)
    content: str
    sig: str

    @property
    def recipients(self) -> list[str]:
        return [t[1] for t in self.tags if len(t) >= 2 and t[0] == "p"]


class InboundEnvelope(BaseModel):
    """A transport-neutral inbound ciphertext awaiting the sync pipeline.

    ``sender`` is in the transport's own address format: a 64-char
    x-only key for the relay, the full native address for direct links.
    """

    transport: TransportKind
    envelope_id: str
    sender: str
    recipient: Optional[str] = None
    ciphertext: str
    timestamp: int = Field(default_factory=now_ms)
    content_hash: Optional[str] = None
    source: Optional[str] = None


class DeleteRequest(BaseModel):
    """A peer asking us to drop a message it sent earlier."""

    sender: str
    content_hash: str


class FileProgress(BaseModel):
    """Fractional progress of a chunked transfer in either direction."""

    transfer_id: str
    peer: str
    direction: Literal["send", "receive"]
    progress: float
    filename: str = ""


class ReceivedFile(BaseModel):
    """A fully reassembled file handed over by the direct transport."""

    transfer_id: str
    sender: str
    filename: str
    mime_type: str = "application/octet-stream"
    data: bytes
    timestamp: int = Field(default_factory=now_ms)

    @property
    def size(self) -> int:
        return len(self.data)


TransportEvent = Union[InboundEnvelope, DeleteRequest, FileProgress, ReceivedFile]


class PublishResult(BaseModel):
    """Per-endpoint outcome of a relay publish."""

    event_id: str
    accepted: int = 0
    attempted: int = 0
    accepted_by: list[str] = Field(default_factory=list)
    errors: dict[str, str] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.accepted > 0
