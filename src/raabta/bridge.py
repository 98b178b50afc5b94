"""
Identity bridge — native addresses <-> relay transport addresses.

Native addresses are compressed keys: a parity byte (``02`` or ``03``)
followed by the 32-byte x-coordinate. The relay network addresses peers
by the x-coordinate alone, so going out is a lossless strip and coming
back in is ambiguous. The reverse mapping therefore yields candidates,
and the caller keeps whichever one decrypts.

Two native addresses that differ only in the parity byte map to the
same transport address. Such a collision is not resolved here.
"""

from __future__ import annotations

from typing import Iterable

NATIVE_ADDRESS_LENGTH = 66
TRANSPORT_ADDRESS_LENGTH = 64
PARITY_PREFIXES = ("02", "03")


def to_transport_address(native_address: str) -> str:
    """Strip the parity prefix from a native address.

    Anything that is not a 66-char native address passes through.
    """
    if len(native_address) == NATIVE_ADDRESS_LENGTH:
        return native_address[2:]
    return native_address


def to_native_addresses(
    transport_address: str,
    known_addresses: Iterable[str] = (),
) -> list[str]:
    """Candidate native addresses for a transport address, most likely first.

    Order: known contact addresses whose stripped form matches, then
    each parity prefix in turn. Duplicates are dropped.

    Args:
        transport_address: 64-char x-only key as seen on the relay.
        known_addresses: Native addresses of existing contacts.

    Returns:
        list[str]: Deterministic candidate list, never empty.
    """
    if len(transport_address) != TRANSPORT_ADDRESS_LENGTH:
        return [transport_address]

    suffix = transport_address.lower()
    candidates: list[str] = []
    for address in known_addresses:
        if to_transport_address(address).lower() == suffix and address not in candidates:
            candidates.append(address)

    for prefix in PARITY_PREFIXES:
        guess = prefix + suffix
        if guess not in candidates:
            candidates.append(guess)
    return candidates
