"""
Wire envelopes for both transports.

Relay envelopes are NIP-01 events: the id is the SHA-256 of a
canonical JSON array and the signature is BIP-340 Schnorr over that id.
Direct-link envelopes are ``DirectRecord`` objects with an explicit
``type`` discriminant; raw file bytes travel base64-encoded.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import os
import time
from typing import Any, Literal, Optional

from coincurve import PrivateKey
from coincurve.keys import PublicKeyXOnly
from pydantic import BaseModel, Field, ValidationError

from .models import RelayEvent

logger = logging.getLogger("raabta.envelope")

RAABTA_MESSAGE_KIND = 14141
TRANSFER_ID_PATTERN = r"^[A-Za-z0-9_-]{1,64}$"


# ---------------------------------------------------------------------------
# Relay events
# ---------------------------------------------------------------------------


def compute_event_id(
    pubkey: str,
    created_at: int,
    kind: int,
    tags: list[list[str]],
    content: str,
) -> str:
    """SHA-256 over the canonical ``[0, pubkey, created_at, kind, tags, content]``."""
    serialized = json.dumps(
        [0, pubkey, created_at, kind, tags, content],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def sign_event(
    private_key: str,
    recipient: str,
    content: str,
    kind: int = RAABTA_MESSAGE_KIND,
    created_at: Optional[int] = None,
) -> RelayEvent:
    """Build and sign an event addressed to one recipient.

    Args:
        private_key: Sender's hex private key.
        recipient: Recipient's 64-char transport address (``p`` tag).
        content: Ciphertext payload.
        kind: Event kind.
        created_at: Unix seconds. Defaults to now.

    Returns:
        RelayEvent ready to publish.
    """
    key = PrivateKey(bytes.fromhex(private_key))
    pubkey = key.public_key.format(compressed=True)[1:].hex()
    created = int(time.time()) if created_at is None else created_at
    tags = [["p", recipient]]
    event_id = compute_event_id(pubkey, created, kind, tags, content)
    sig = key.sign_schnorr(bytes.fromhex(event_id), os.urandom(32))
    return RelayEvent(
        id=event_id,
        pubkey=pubkey,
        created_at=created,
        kind=kind,
        tags=tags,
        content=content,
        sig=sig.hex(),
    )


def verify_event(event: RelayEvent) -> bool:
    """Check an event's id and Schnorr signature."""
    expected = compute_event_id(
        event.pubkey, event.created_at, event.kind, event.tags, event.content,
    )
    if expected != event.id:
        return False
    try:
        return PublicKeyXOnly(bytes.fromhex(event.pubkey)).verify(
            bytes.fromhex(event.sig), bytes.fromhex(event.id),
        )
    except ValueError:
        return False


def parse_event(raw: Any) -> Optional[RelayEvent]:
    """Validate a raw event dict. Returns None if it is not an event."""
    try:
        return RelayEvent.model_validate(raw)
    except ValidationError:
        return None


# ---------------------------------------------------------------------------
# Direct-link records
# ---------------------------------------------------------------------------

RecordType = Literal["message", "delete-message", "file-start", "file-chunk"]


class DirectRecord(BaseModel):
    """One structured record on a direct data channel."""

    type: RecordType
    from_pub_key: str = ""

    # message
    encrypted_text: Optional[str] = None
    message_id: Optional[str] = None
    content_hash: Optional[str] = None
    timestamp: Optional[int] = None

    # file-start / file-chunk
    transfer_id: Optional[str] = Field(default=None, pattern=TRANSFER_ID_PATTERN)
    total_chunks: Optional[int] = None
    filename: Optional[str] = None
    size: Optional[int] = None
    mime_type: Optional[str] = None
    index: Optional[int] = None
    data: Optional[str] = None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)

    @property
    def chunk_bytes(self) -> bytes:
        """Decoded file-chunk payload.

        Raises:
            ValueError: If the chunk carries no data or invalid base64.
        """
        if self.data is None:
            raise ValueError("record carries no chunk data")
        try:
            return base64.b64decode(self.data, validate=True)
        except binascii.Error as exc:
            raise ValueError(f"invalid chunk encoding: {exc}") from exc


def encode_chunk(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def parse_record(raw: Any) -> Optional[DirectRecord]:
    """Validate a raw channel payload. Unknown shapes yield None."""
    try:
        return DirectRecord.model_validate(raw)
    except ValidationError as exc:
        logger.debug("Ignoring malformed direct record: %s", exc)
        return None
