from __future__ import annotations

import hashlib
import re
from datetime import date, datetime
from enum import Enum
from pathlib import PurePath
from typing import Any

import rfc8785
from pydantic import BaseModel

_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))
_HEX_DIGEST_RE = re.compile(r"^[0-9a-f]{64}$")


def _normalize_for_jcs(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Recursively convert hashing inputs into JSON-primitive types.

    Spec records mix pydantic models, enums, tuples (ordered pairs) and
    paths. ``rfc8785.dumps`` only accepts JSON primitives, lists and dicts,
    so everything else is reduced here. Tuples become lists so that ordered
    pairs keep their order in the canonical form.

    Raises:
        TypeError: If value contains a type with no canonical representation.
    """
    if isinstance(value, Enum):
        return _normalize_for_jcs(value.value)

    if isinstance(value, _PASSTHROUGH_TYPES):
        return value

    if isinstance(value, BaseModel):
        return _normalize_for_jcs(value.model_dump(mode="json"))

    if isinstance(value, dict):
        return {str(k): _normalize_for_jcs(v) for k, v in value.items()}

    if isinstance(value, (list, tuple)):
        return [_normalize_for_jcs(item) for item in value]

    if isinstance(value, (set, frozenset)):
        return sorted(_normalize_for_jcs(item) for item in value)

    if isinstance(value, (datetime, date)):
        return value.isoformat()

    if isinstance(value, PurePath):
        return value.as_posix()

    if isinstance(value, bytes):
        raise TypeError(
            f"Cannot serialize bytes to canonical JSON. "
            f"Encode to base64 or hex string first: {value!r:.64}"
        )

    raise TypeError(
        f"Cannot serialize type {type(value).__name__} to canonical JSON. "
        f"Convert to a JSON-compatible type first."
    )


def to_canonical_json(value: Any) -> str:
    """Serialize a value to deterministic, byte-for-byte reproducible JSON per RFC 8785."""
    normalized = _normalize_for_jcs(value)
    return rfc8785.dumps(normalized).decode("utf-8")


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def is_hex_digest(value: str) -> bool:
    """True for a lower-case 64 character SHA-256 hex digest."""
    return bool(_HEX_DIGEST_RE.match(value))
