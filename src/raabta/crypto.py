"""
Key provider — secp256k1 identities, ECDH shared secrets, AES-256-GCM.

The sync engine treats this module as a narrow external collaborator:
it never looks inside a ciphertext, it only asks whether one opens.

Native addresses are 33-byte compressed public keys in hex (66 chars,
``02``/``03`` parity prefix). The shared secret is the SHA-256 of the
compressed ECDH point, so the parity byte matters: decrypting with the
wrong prefix fails authentication instead of silently succeeding.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import os
from typing import NamedTuple

from coincurve import PrivateKey, PublicKey
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import DecryptError

NONCE_SIZE = 12

_ADJECTIVES = [
    "amber", "brave", "calm", "daring", "eager", "fierce", "gentle", "hidden",
    "icy", "jolly", "keen", "lucky", "misty", "noble", "quiet", "rapid",
]
_NOUNS = [
    "falcon", "river", "cedar", "comet", "harbor", "lotus", "meadow", "otter",
    "pebble", "raven", "saffron", "tiger", "valley", "willow", "zephyr", "ember",
]


class KeyPair(NamedTuple):
    private_key: str
    public_key: str


def generate_key_pair() -> KeyPair:
    """Create a fresh secp256k1 key pair, hex encoded."""
    key = PrivateKey()
    return KeyPair(key.secret.hex(), key.public_key.format(compressed=True).hex())


def derive_public_key(private_key: str) -> str:
    """Native (compressed, 66 hex chars) address for a private key.

    Raises:
        ValueError: If the private key is not valid hex or out of range.
    """
    key = PrivateKey(bytes.fromhex(private_key))
    return key.public_key.format(compressed=True).hex()


def x_only_public_key(private_key: str) -> str:
    """The 64-char x-only public key the relay network signs with."""
    return derive_public_key(private_key)[2:]


def derive_shared_secret(private_key: str, native_address: str) -> bytes:
    """32-byte symmetric key shared between a private key and a peer address.

    Raises:
        ValueError: If the address is not a valid point on the curve.
    """
    key = PrivateKey(bytes.fromhex(private_key))
    peer = PublicKey(bytes.fromhex(native_address))
    return key.ecdh(peer.format(compressed=True))


def encrypt_bytes(data: bytes, key: bytes) -> tuple[bytes, bytes]:
    """AES-256-GCM encrypt. Returns ``(nonce, ciphertext_with_tag)``."""
    nonce = os.urandom(NONCE_SIZE)
    return nonce, AESGCM(key).encrypt(nonce, data, None)


def decrypt_bytes(ciphertext: bytes, key: bytes, nonce: bytes) -> bytes:
    """AES-256-GCM decrypt.

    Raises:
        DecryptError: If the ciphertext does not authenticate.
    """
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, None)
    except (InvalidTag, ValueError) as exc:
        raise DecryptError("ciphertext failed authentication") from exc


def encrypt(plaintext: str, key: bytes) -> str:
    """Encrypt text into a base64 ``nonce || ciphertext`` string."""
    nonce, sealed = encrypt_bytes(plaintext.encode("utf-8"), key)
    return base64.b64encode(nonce + sealed).decode("ascii")


def decrypt(ciphertext: str, key: bytes) -> str:
    """Decrypt a string produced by :func:`encrypt`.

    Raises:
        DecryptError: On malformed input or a failed authentication tag.
    """
    try:
        raw = base64.b64decode(ciphertext, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecryptError("ciphertext is not valid base64") from exc
    if len(raw) <= NONCE_SIZE:
        raise DecryptError("ciphertext too short")
    plain = decrypt_bytes(raw[NONCE_SIZE:], key, raw[:NONCE_SIZE])
    try:
        return plain.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecryptError("plaintext is not UTF-8") from exc


def content_hash(ciphertext: str) -> str:
    """Stable identifier for a ciphertext, shared by both transports."""
    return hashlib.sha256(ciphertext.encode("utf-8")).hexdigest()


def username_for(public_key: str) -> str:
    """Deterministic human-friendly name for an address.

    Example: ``02ab...`` -> ``quiet-otter-3f2a``.
    """
    digest = hashlib.sha256(public_key.encode("utf-8")).digest()
    adjective = _ADJECTIVES[digest[0] % len(_ADJECTIVES)]
    noun = _NOUNS[digest[1] % len(_NOUNS)]
    return f"{adjective}-{noun}-{digest[2:4].hex()}"
