"""
Error taxonomy for the sync engine.

Transport errors are reported to the caller and never retried.
Decrypt errors are terminal for the envelope that raised them.
Duplicates are not errors at all and have no exception here.
"""

from __future__ import annotations

from typing import Optional


class RaabtaError(Exception):
    """Base class for every error raised by raabta."""


class TransportError(RaabtaError):
    """Raised when a transport cannot carry a payload."""


class ConnectionTimeoutError(TransportError):
    """Raised when a direct channel does not open within its deadline."""


class PublishError(TransportError):
    """Raised when no relay endpoint accepted a published envelope."""

    def __init__(self, message: str, errors: Optional[dict[str, str]] = None) -> None:
        super().__init__(message)
        self.errors = errors or {}


class UploadError(TransportError):
    """Raised when the blob upload service rejects a request."""


class DecryptError(RaabtaError):
    """Raised when a ciphertext does not authenticate under a key."""


class StoreError(RaabtaError):
    """Raised when the local store cannot apply a write."""


class IdentityError(RaabtaError):
    """Raised when no usable local identity is available."""
