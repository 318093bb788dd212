from __future__ import annotations

import hashlib
from typing import Any

import rfc8785
from pydantic import BaseModel


def canonical_bytes(value: BaseModel | dict[str, Any]) -> bytes:
    """Serialize a model or JSON-compatible dict to RFC 8785 canonical JSON.

    Pydantic models are dumped in ``json`` mode first so datetimes, enums
    and sets become JSON primitives before canonicalization.

    Raises:
        rfc8785.CanonicalizationError: If the value cannot be canonicalized.
    """
    payload = value.model_dump(mode="json") if isinstance(value, BaseModel) else value
    return rfc8785.dumps(payload)


def state_size(value: BaseModel | dict[str, Any]) -> int:
    """Size in bytes of the canonical form, independent of on-disk indentation."""
    return len(canonical_bytes(value))


def fingerprint(value: BaseModel | dict[str, Any]) -> str:
    return hashlib.sha256(canonical_bytes(value)).hexdigest()
