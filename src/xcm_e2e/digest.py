"""Canonical encoding and BLAKE3 digests for blocks, storage and extrinsics."""

from __future__ import annotations

import json
from typing import Any

from blake3 import blake3


def canonical_json(value: Any) -> bytes:
    """Deterministic JSON: sorted keys, no whitespace, bytes as hex."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=_default).encode()


def _default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    if hasattr(value, "to_json"):
        return value.to_json()
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"cannot encode {type(value).__name__}")


def compute_digest(value: Any) -> str:
    """BLAKE3-256 of the canonical encoding, hex encoded."""
    return blake3(canonical_json(value)).hexdigest()


def block_hash(parent: str, number: int, state_root: str, events: Any, outbound: Any) -> str:
    return "0x" + compute_digest(
        {"parent": parent, "number": number, "state_root": state_root, "events": events, "outbound": outbound}
    )


def to_plain(value: Any) -> Any:
    """JSON-compatible copy of ``value`` (dicts, lists, str, int, float, bool, None)."""
    return json.loads(canonical_json(value))
