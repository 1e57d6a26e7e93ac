"""
Symmetric encryption for objects at rest and for export bundles.

Both usages are Fernet (AES-128-CBC + HMAC-SHA256): every token carries
its own random IV and an authentication tag, so a wrong key, a flipped
bit or a truncated file fails verification instead of yielding
garbage plaintext.

Two key provenances, never mixed:
    - Object-at-rest: 32 random bytes generated on the device and kept
      in the local secure store. Never leaves the device.
    - Export bundle: a passphrase the operator manages. PBKDF2-SHA256
      stretches it with a per-bundle salt, recorded in a small JSON
      envelope next to the Fernet token.

Key material never appears in log lines or exception messages.
"""

from __future__ import annotations

import asyncio
import base64
import json
import secrets

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import IntegrityError

KEY_LENGTH = 32
SALT_LENGTH = 16
DEFAULT_ITERATIONS = 100_000
MAX_ITERATIONS = 10_000_000
ENVELOPE_VERSION = "2.0"
MIN_PASSPHRASE_LENGTH = 8


def generate_key() -> bytes:
    """Generate fresh device-local key material."""
    return secrets.token_bytes(KEY_LENGTH)


def _fernet(key_material: bytes) -> Fernet:
    if len(key_material) < KEY_LENGTH:
        raise ValueError("Key material must be at least 32 bytes")
    return Fernet(base64.urlsafe_b64encode(key_material[:KEY_LENGTH]))


def encrypt(plaintext: bytes, key: bytes) -> bytes:
    """Encrypt bytes with raw key material.

    Args:
        plaintext: Data to protect.
        key: At least 32 bytes of key material.

    Returns:
        Ciphertext bytes (Fernet token, includes IV and HMAC tag).
    """
    return _fernet(key).encrypt(plaintext)


def decrypt(ciphertext: bytes, key: bytes) -> bytes:
    """Decrypt a token produced by :func:`encrypt`.

    Raises:
        IntegrityError: Wrong key, tampered or truncated ciphertext.
    """
    try:
        return _fernet(key).decrypt(ciphertext)
    except (InvalidToken, ValueError, TypeError) as exc:
        raise IntegrityError("ciphertext failed authentication") from exc


def derive_export_key(passphrase: str, salt: bytes, iterations: int = DEFAULT_ITERATIONS) -> bytes:
    """Stretch an operator passphrase into 32 bytes of key material."""
    kdf = PBKDF2HMAC(
        algorithm=SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def encrypt_with_passphrase(
    plaintext: bytes,
    passphrase: str,
    iterations: int = DEFAULT_ITERATIONS,
) -> bytes:
    """Encrypt an export archive with the operator's passphrase.

    Returns:
        A UTF-8 JSON envelope holding the KDF parameters and the token.
    """
    salt = secrets.token_bytes(SALT_LENGTH)
    key = derive_export_key(passphrase, salt, iterations)
    envelope = {
        "version": ENVELOPE_VERSION,
        "kdf": "pbkdf2-sha256",
        "iterations": iterations,
        "salt": salt.hex(),
        "token": encrypt(plaintext, key).decode("ascii"),
    }
    return json.dumps(envelope).encode("utf-8")


def decrypt_with_passphrase(envelope: bytes, passphrase: str) -> bytes:
    """Decrypt an envelope produced by :func:`encrypt_with_passphrase`.

    Raises:
        IntegrityError: Wrong passphrase, or the envelope is damaged,
            truncated or not an envelope at all.
    """
    try:
        data = json.loads(envelope.decode("utf-8"))
        salt = bytes.fromhex(data["salt"])
        iterations = int(data.get("iterations", DEFAULT_ITERATIONS))
        token = data["token"].encode("ascii")
    except (
        UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError, ValueError, OverflowError, AttributeError,
    ) as exc:
        raise IntegrityError("unreadable encryption envelope") from exc
    if not 1 <= iterations <= MAX_ITERATIONS:
        raise IntegrityError("envelope iteration count out of range")

    try:
        key = derive_export_key(passphrase, salt, iterations)
    except (ValueError, OverflowError, TypeError) as exc:
        raise IntegrityError("unreadable encryption envelope") from exc
    return decrypt(token, key)


def validate_passphrase(passphrase: str) -> tuple[bool, str]:
    """Check an operator passphrase before storing it.

    Returns:
        (valid, message); message is empty when valid.
    """
    if not passphrase or len(passphrase) < MIN_PASSPHRASE_LENGTH:
        return False, f"Key must be at least {MIN_PASSPHRASE_LENGTH} characters long"
    return True, ""


# ---------------------------------------------------------------------------
# Async wrappers: crypto is CPU-bound, keep it off the event loop
# ---------------------------------------------------------------------------


async def encrypt_async(plaintext: bytes, key: bytes) -> bytes:
    return await asyncio.to_thread(encrypt, plaintext, key)


async def decrypt_async(ciphertext: bytes, key: bytes) -> bytes:
    return await asyncio.to_thread(decrypt, ciphertext, key)


async def encrypt_with_passphrase_async(
    plaintext: bytes,
    passphrase: str,
    iterations: int = DEFAULT_ITERATIONS,
) -> bytes:
    return await asyncio.to_thread(encrypt_with_passphrase, plaintext, passphrase, iterations)


async def decrypt_with_passphrase_async(envelope: bytes, passphrase: str) -> bytes:
    return await asyncio.to_thread(decrypt_with_passphrase, envelope, passphrase)
