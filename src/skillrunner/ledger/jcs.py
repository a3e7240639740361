"""Canonical JSON used for hashing audit rows.

Rules:
- object keys sorted after NFC normalization, duplicates rejected
- strings NFC-normalized
- exact numbers only: ints and Decimals in fixed-point form, binary floats rejected
- timezone-aware datetimes rendered as UTC ``YYYY-MM-DDTHH:MM:SS.ffffffZ``
"""

from __future__ import annotations

import hashlib
import json
import unicodedata
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

_SEPARATORS = (",", ":")


class CanonicalizationError(ValueError):
    """Raised when a value has no canonical JSON form."""


def canonical_dumps(value: Any) -> str:
    """Return the canonical JSON text for ``value``."""
    return _encode(value)


def canonical_bytes(value: Any) -> bytes:
    return _encode(value).encode("utf-8")


def sha256_hex(value: Any) -> str:
    """Return SHA-256 hex digest of the canonical bytes."""
    return hashlib.sha256(canonical_bytes(value)).hexdigest()


def _encode(value: Any) -> str:
    if value is None:
        return "null"
    # bool is a subclass of int
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        raise CanonicalizationError("floats are rejected; use Decimal for exact numbers")
    if isinstance(value, Decimal):
        return _encode_decimal(value)
    if isinstance(value, str):
        return _encode_string(value)
    if isinstance(value, datetime):
        return _encode_string(_encode_datetime(value))
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_encode(item) for item in value) + "]"
    if isinstance(value, dict):
        return _encode_object(value)
    raise CanonicalizationError(f"type {type(value).__name__} is not JSON-serializable")


def _encode_string(value: str) -> str:
    return json.dumps(unicodedata.normalize("NFC", value), ensure_ascii=False)


def _encode_object(value: dict[Any, Any]) -> str:
    items: dict[str, Any] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise CanonicalizationError("object keys must be strings")
        normalized = unicodedata.normalize("NFC", key)
        if normalized in items:
            raise CanonicalizationError(f"duplicate key after NFC normalization: {normalized!r}")
        items[normalized] = item
    body = ",".join(
        json.dumps(key, ensure_ascii=False, separators=_SEPARATORS) + ":" + _encode(items[key])
        for key in sorted(items)
    )
    return "{" + body + "}"


def _encode_decimal(value: Decimal) -> str:
    if not value.is_finite():
        raise CanonicalizationError("NaN/Infinity are rejected")
    if value == 0:
        return "0"
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return "0" if text == "-0" else text


def _encode_datetime(value: datetime) -> str:
    if value.tzinfo is None or value.utcoffset() is None:
        raise CanonicalizationError("datetime values must be timezone-aware")
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
