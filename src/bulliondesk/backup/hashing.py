"""SHA-256 content addressing."""

from __future__ import annotations

import hashlib
from typing import Any

from .canonical import stringify

DIGEST_LENGTH = 64


def digest(data: bytes) -> str:
    """Compute SHA-256 hex digest of bytes.

    Args:
        data: Bytes to hash.

    Returns:
        Hex-encoded SHA-256 digest (64 lowercase characters).
    """
    return hashlib.sha256(data).hexdigest()


def digest_value(value: Any) -> str:
    """Hash the canonical form of a structured value."""
    return digest(stringify(value))


def is_digest(text: str) -> bool:
    """True when ``text`` looks like a digest produced by :func:`digest`."""
    if len(text) != DIGEST_LENGTH:
        return False
    return all(c in "0123456789abcdef" for c in text)
