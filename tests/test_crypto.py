"""Tests for the key provider: key pairs, ECDH, AES-GCM."""

from __future__ import annotations

import base64

import pytest

from raabta.crypto import (
    NONCE_SIZE,
    content_hash,
    decrypt,
    decrypt_bytes,
    derive_public_key,
    derive_shared_secret,
    encrypt,
    encrypt_bytes,
    generate_key_pair,
    username_for,
    x_only_public_key,
)
from raabta.errors import DecryptError

from conftest import make_identity


class TestKeys:
    """Key generation and derivation."""

    def test_native_address_shape(self) -> None:
        keys = generate_key_pair()
        assert len(keys.private_key) == 64
        assert len(keys.public_key) == 66
        assert keys.public_key[:2] in ("02", "03")

    def test_derive_matches_generated(self) -> None:
        keys = generate_key_pair()
        assert derive_public_key(keys.private_key) == keys.public_key

    def test_x_only_strips_prefix(self) -> None:
        keys = generate_key_pair()
        assert x_only_public_key(keys.private_key) == keys.public_key[2:]

    def test_invalid_private_key(self) -> None:
        with pytest.raises(ValueError):
            derive_public_key("00" * 32)

    def test_username_is_stable(self) -> None:
        keys = generate_key_pair()
        name = username_for(keys.public_key)
        assert name == username_for(keys.public_key)
        assert name.count("-") == 2


class TestSharedSecret:
    """ECDH agreement between two identities."""

    def test_both_sides_agree(self) -> None:
        a, b = make_identity(), make_identity()
        assert derive_shared_secret(a.private_key, b.public_key) == derive_shared_secret(
            b.private_key, a.public_key,
        )

    def test_secret_is_32_bytes(self) -> None:
        a, b = make_identity(), make_identity()
        assert len(derive_shared_secret(a.private_key, b.public_key)) == 32

    def test_wrong_parity_gives_different_secret(self) -> None:
        a, b = make_identity(), make_identity(parity="03")
        flipped = "02" + b.public_key[2:]
        right = derive_shared_secret(a.private_key, b.public_key)
        wrong = derive_shared_secret(a.private_key, flipped)
        assert right != wrong

    def test_invalid_address_raises(self) -> None:
        a = make_identity()
        with pytest.raises(ValueError):
            derive_shared_secret(a.private_key, "04" + "ff" * 32)


class TestCipher:
    """Encrypt / decrypt."""

    @pytest.fixture
    def key(self) -> bytes:
        a, b = make_identity(), make_identity()
        return derive_shared_secret(a.private_key, b.public_key)

    def test_round_trip(self, key: bytes) -> None:
        assert decrypt(encrypt("salaam 👋", key), key) == "salaam 👋"

    def test_nonce_is_random(self, key: bytes) -> None:
        assert encrypt("same", key) != encrypt("same", key)

    def test_ciphertext_layout(self, key: bytes) -> None:
        raw = base64.b64decode(encrypt("hi", key))
        # nonce + 2 bytes plaintext + 16 byte tag
        assert len(raw) == NONCE_SIZE + 2 + 16

    def test_wrong_key_fails(self, key: bytes) -> None:
        other = bytes(32)
        with pytest.raises(DecryptError):
            decrypt(encrypt("secret", key), other)

    def test_tampered_ciphertext_fails(self, key: bytes) -> None:
        raw = bytearray(base64.b64decode(encrypt("secret", key)))
        raw[-1] ^= 0x01
        with pytest.raises(DecryptError):
            decrypt(base64.b64encode(bytes(raw)).decode(), key)

    @pytest.mark.parametrize("garbage", ["not base64!!", "", base64.b64encode(b"short").decode()])
    def test_malformed_input(self, key: bytes, garbage: str) -> None:
        with pytest.raises(DecryptError):
            decrypt(garbage, key)

    def test_bytes_round_trip(self, key: bytes) -> None:
        nonce, sealed = encrypt_bytes(b"\x00\x01binary", key)
        assert decrypt_bytes(sealed, key, nonce) == b"\x00\x01binary"

    def test_bytes_bad_nonce(self, key: bytes) -> None:
        _, sealed = encrypt_bytes(b"data", key)
        with pytest.raises(DecryptError):
            decrypt_bytes(sealed, key, bytes(NONCE_SIZE))


class TestContentHash:
    def test_hash_is_sha256_hex(self) -> None:
        digest = content_hash("abc")
        assert digest == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"

    def test_distinct_ciphertexts_distinct_hashes(self) -> None:
        assert content_hash("a") != content_hash("b")
