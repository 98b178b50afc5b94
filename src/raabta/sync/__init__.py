"""
Message sync -- deduplication, durable storage and the synchronizer.

Transports deliver ciphertext. This package decides what it means:
whether it is new, who sent it, and where it lands.
"""

from .dedup import Deduplicator
from .engine import MessageSynchronizer
from .store import MessageStore

__all__ = ["Deduplicator", "MessageStore", "MessageSynchronizer"]
