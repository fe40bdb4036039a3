"""Deterministic serialization shared by signing, hashing and verification."""

import hashlib
import json
from typing import Any


def canonicalize(payload: Any) -> bytes:
    """Sorted keys, no insignificant whitespace, UTF-8"""
    return json.dumps(
        payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False
    ).encode("utf-8")


def content_hash(payload: Any) -> str:
    return hashlib.sha256(canonicalize(payload)).hexdigest()
