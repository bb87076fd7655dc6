"""
Canonical JSON serialization and content hashing.

Provides stable, platform-independent serialization used for:
- Archive entry checksums
- Comparing JSON-typed record fields
- Byte-stable report output

The canonicalization ensures:
- Keys are sorted recursively
- Unicode is normalized (NFC)
- No insignificant whitespace
- Consistent null handling
"""

import hashlib
import json
import unicodedata
from typing import Any


def canonicalize(obj: Any) -> str:
    """
    Canonicalize a Python object to a stable JSON string.

    Args:
        obj: The object to canonicalize

    Returns:
        Canonical JSON string
    """
    return json.dumps(
        _normalize_for_canonical(obj),
        sort_keys=True,
        ensure_ascii=False,
        separators=(",", ":"),
        default=_canonical_default,
    )


def _normalize_for_canonical(obj: Any) -> Any:
    """
    Recursively normalize an object for canonical serialization.

    - Normalizes unicode strings (NFC)
    - Recursively processes dicts and lists
    - Handles special types
    """
    if obj is None:
        return None

    if isinstance(obj, str):
        return unicodedata.normalize("NFC", obj)

    if isinstance(obj, bool):
        # bool before int (bool is subclass of int)
        return obj

    if isinstance(obj, (int, float)):
        return obj

    if isinstance(obj, dict):
        return {
            _normalize_for_canonical(k): _normalize_for_canonical(v)
            for k, v in obj.items()
        }

    if isinstance(obj, (list, tuple)):
        return [_normalize_for_canonical(item) for item in obj]

    if hasattr(obj, "isoformat"):
        return obj.isoformat()

    if hasattr(obj, "to_dict"):
        return _normalize_for_canonical(obj.to_dict())

    return unicodedata.normalize("NFC", str(obj))


def _canonical_default(obj: Any) -> Any:
    """Default handler for JSON serialization of non-standard types."""
    if hasattr(obj, "isoformat"):
        return obj.isoformat()

    if hasattr(obj, "to_dict"):
        return obj.to_dict()

    return str(obj)


def sha256_hex(data: bytes) -> str:
    """Hex-encoded SHA256 of raw bytes."""
    return hashlib.sha256(data).hexdigest()
