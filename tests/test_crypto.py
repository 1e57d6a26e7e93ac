"""Tests for at-rest and export encryption."""

from __future__ import annotations

import json
import os

import pytest

from bulliondesk.crypto import (
    MAX_ITERATIONS,
    decrypt,
    decrypt_async,
    decrypt_with_passphrase,
    decrypt_with_passphrase_async,
    encrypt,
    encrypt_async,
    encrypt_with_passphrase,
    encrypt_with_passphrase_async,
    generate_key,
    validate_passphrase,
)
from bulliondesk.errors import ErrorKind, IntegrityError

ITERATIONS = 1000


class TestRawKey:
    """Tests for encrypt/decrypt with device-local key material."""

    @pytest.mark.parametrize("payload", [b"", b"x", os.urandom(4096)])
    def test_round_trip(self, payload: bytes) -> None:
        key = generate_key()
        assert decrypt(encrypt(payload, key), key) == payload

    def test_ciphertext_is_randomized(self) -> None:
        key = generate_key()
        assert encrypt(b"same", key) != encrypt(b"same", key)

    def test_wrong_key_fails(self) -> None:
        token = encrypt(b"secret ledger", generate_key())
        with pytest.raises(IntegrityError) as exc_info:
            decrypt(token, generate_key())
        assert exc_info.value.kind is ErrorKind.INTEGRITY

    def test_tampered_ciphertext_fails(self) -> None:
        key = generate_key()
        token = bytearray(encrypt(b"secret ledger", key))
        token[len(token) // 2] ^= 0x01
        with pytest.raises(IntegrityError):
            decrypt(bytes(token), key)

    def test_truncated_ciphertext_fails(self) -> None:
        key = generate_key()
        token = encrypt(b"secret ledger" * 20, key)
        with pytest.raises(IntegrityError):
            decrypt(token[: len(token) // 2], key)

    def test_short_key_rejected(self) -> None:
        with pytest.raises(ValueError):
            encrypt(b"data", b"short")

    @pytest.mark.parametrize("iterations", [0, -5, MAX_ITERATIONS + 1, 1e999, "many", None])
    def test_bad_iteration_count_fails(self, iterations) -> None:
        envelope = json.loads(encrypt_with_passphrase(b"archive", "passphrase-1", ITERATIONS))
        envelope["iterations"] = iterations
        with pytest.raises(IntegrityError):
            decrypt_with_passphrase(json.dumps(envelope).encode("utf-8"), "passphrase-1")

    @pytest.mark.asyncio
    async def test_async_wrappers(self) -> None:
        key = generate_key()
        token = await encrypt_async(b"async payload", key)
        assert await decrypt_async(token, key) == b"async payload"


class TestPassphrase:
    """Tests for the export envelope."""

    def test_round_trip(self) -> None:
        envelope = encrypt_with_passphrase(b"archive bytes", "passphrase-1", ITERATIONS)
        assert decrypt_with_passphrase(envelope, "passphrase-1") == b"archive bytes"

    def test_envelope_shape(self) -> None:
        envelope = json.loads(encrypt_with_passphrase(b"x", "passphrase-1", ITERATIONS))
        assert envelope["version"] == "2.0"
        assert envelope["kdf"] == "pbkdf2-sha256"
        assert envelope["iterations"] == ITERATIONS
        assert len(bytes.fromhex(envelope["salt"])) == 16

    def test_wrong_passphrase_fails_without_leaking_it(self) -> None:
        envelope = encrypt_with_passphrase(b"archive", "passphrase-1", ITERATIONS)
        with pytest.raises(IntegrityError) as exc_info:
            decrypt_with_passphrase(envelope, "passphrase-2")
        assert "passphrase-2" not in str(exc_info.value)
        assert exc_info.value.user_message == "Invalid encryption key or corrupted backup file."

    @pytest.mark.parametrize("garbage", [b"", b"not json", b"{}", b'{"salt": "zz", "token": "t"}', b"\xff\xfe"])
    def test_malformed_envelope_fails(self, garbage: bytes) -> None:
        with pytest.raises(IntegrityError):
            decrypt_with_passphrase(garbage, "passphrase-1")

    @pytest.mark.asyncio
    async def test_async_wrappers(self) -> None:
        envelope = await encrypt_with_passphrase_async(b"bundle", "passphrase-1", ITERATIONS)
        assert await decrypt_with_passphrase_async(envelope, "passphrase-1") == b"bundle"


class TestValidatePassphrase:
    """Tests for validate_passphrase."""

    def test_accepts_long_enough(self) -> None:
        assert validate_passphrase("12345678") == (True, "")

    @pytest.mark.parametrize("value", ["", "short", "1234567"])
    def test_rejects_short(self, value: str) -> None:
        valid, message = validate_passphrase(value)
        assert not valid
        assert "8 characters" in message
