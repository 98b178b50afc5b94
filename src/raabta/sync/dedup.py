"""
Delivery deduplicator — has this inbound message been applied already?

Both transports redeliver: the relay through every endpoint that holds
the event, the direct link through retransmission, and the same
ciphertext may arrive once over each. An envelope counts as seen when
either its envelope id or its content hash has been recorded.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from ..bridge import to_transport_address
from ..models import InboundEnvelope

logger = logging.getLogger("raabta.sync.dedup")


class Deduplicator:
    """In-memory set of applied envelope ids and content hashes."""

    def __init__(self, ids: Iterable[str] = ()) -> None:
        self._seen: set[str] = set()
        self.rebuild(ids)

    def __len__(self) -> int:
        return len(self._seen)

    def rebuild(self, ids: Iterable[str]) -> None:
        """Replace the set with ids recorded by the store."""
        self._seen = {i for i in ids if i}
        logger.debug("Deduplicator rebuilt with %d ids", len(self._seen))

    def seen(self, identifier: Optional[str]) -> bool:
        return bool(identifier) and identifier in self._seen

    def mark_seen(self, *identifiers: Optional[str]) -> None:
        for identifier in identifiers:
            if identifier:
                self._seen.add(identifier)

    def is_duplicate(self, envelope: InboundEnvelope) -> bool:
        return self.seen(envelope.envelope_id) or self.seen(envelope.content_hash)

    @staticmethod
    def is_self(envelope: InboundEnvelope, own_address: str) -> bool:
        """True when the envelope was authored by the local identity.

        Compares transport addresses so a self-notification is caught
        even when it arrives under an unfamiliar envelope id.
        """
        own = to_transport_address(own_address)
        return to_transport_address(envelope.sender) == own
