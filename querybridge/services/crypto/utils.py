from __future__ import annotations

import base64
import binascii
import hashlib
import json
from typing import Any


def decode_key_material(value: str) -> bytes:
    """Decode hex or base64 key material into raw bytes."""
    stripped = value.strip()
    if not stripped:
        raise ValueError("key material is empty")
    try:
        return bytes.fromhex(stripped)
    except ValueError:
        try:
            return base64.b64decode(stripped, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("key material must be base64 or hex") from exc


def sha256_hex(value: bytes) -> str:
    return hashlib.sha256(value).hexdigest()


def stable_json(value: Any) -> bytes:
    # Sorted keys and compact separators so equal values always hash the same.
    return json.dumps(value, separators=(",", ":"), sort_keys=True, default=str).encode("utf-8")


def stable_hash(value: Any) -> str:
    return sha256_hex(stable_json(value))
