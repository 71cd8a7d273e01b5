"""
Hashing helpers used for selectors, topics and cache keys.
"""

from __future__ import annotations

from Crypto.Hash import keccak as _keccak_mod


def keccak256(data: bytes) -> bytes:
    """Compute Keccak-256 hash (NOT SHA3-256)."""
    h = _keccak_mod.new(digest_bits=256)
    h.update(data)
    return h.digest()


def function_selector(signature: str) -> bytes:
    """4-byte selector of a canonical signature such as ``name()``."""
    return keccak256(signature.encode("utf-8"))[:4]


def event_topic(signature: str) -> bytes:
    return keccak256(signature.encode("utf-8"))
