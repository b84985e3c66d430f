"""Deterministic JSON encoding for everything that gets signed or hashed.

Two structurally-equal values must encode to identical bytes no matter
in which order their keys were inserted; every signature in the system
is computed over this output.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any

from tessera.errors import CircularReferenceError, ValidationFormatError


def encode(value: Any) -> bytes:
    """Encode *value* as canonical UTF-8 JSON (sorted keys, no whitespace)."""
    normalized = _normalize(value, set())
    return json.dumps(
        normalized,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")


def _normalize(value: Any, active: set[int]) -> Any:
    if value is None or isinstance(value, bool | int | str):
        # StrEnum members are str instances; encode the plain value
        return value.value if isinstance(value, Enum) else value
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            raise ValidationFormatError("Cannot encode non-finite number")
        return value
    if isinstance(value, Enum):
        return _normalize(value.value, active)

    if isinstance(value, dict | list | tuple):
        marker = id(value)
        if marker in active:
            raise CircularReferenceError("Payload has a circular reference")
        active.add(marker)
        try:
            if isinstance(value, dict):
                out: dict[str, Any] = {}
                for key, item in value.items():
                    if not isinstance(key, str):
                        raise ValidationFormatError(
                            f"Object keys must be strings, got {type(key).__name__}"
                        )
                    out[key] = _normalize(item, active)
                return out
            return [_normalize(item, active) for item in value]
        finally:
            active.discard(marker)

    raise ValidationFormatError(f"Cannot canonically encode {type(value).__name__}")
