"""
Canonical serialization for content hashing.

Two structurally equal values must produce identical bytes no matter
the order their keys were inserted in. The output is only ever fed to
the hash function; it is never the stored representation.
"""

from __future__ import annotations

import json
import math
from typing import Any

from pydantic import BaseModel


def _normalize(value: Any) -> Any:
    """Reduce a value to plain JSON types with a single numeric form."""
    if isinstance(value, BaseModel):
        return _normalize(value.model_dump(mode="json", by_alias=True, exclude_none=True))
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise ValueError("Cannot canonicalize non-finite number")
        # 10.0 and 10 must hash the same after a JSON round trip
        if value.is_integer():
            return int(value)
        return value
    if isinstance(value, dict):
        out = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"Mapping keys must be strings, got {type(key).__name__}")
            out[key] = _normalize(item)
        return out
    if isinstance(value, (list, tuple)):
        return [_normalize(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_normalize(item) for item in value), key=stringify)
    raise TypeError(f"Cannot canonicalize {type(value).__name__}")


def stringify(value: Any) -> bytes:
    """Serialize ``value`` deterministically.

    Mapping keys are sorted recursively, sequence order is preserved,
    and the output is minified UTF-8 JSON.

    Args:
        value: Any JSON-compatible structure or pydantic model.

    Returns:
        bytes: Canonical encoding.

    Raises:
        TypeError: If the value holds something JSON cannot express.
        ValueError: If the value holds NaN or infinity.
    """
    normalized = _normalize(value)
    return json.dumps(
        normalized,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")
