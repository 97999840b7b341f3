from __future__ import annotations

import hashlib


def blake2s_32(data: bytes) -> bytes:
    return hashlib.blake2s(data, digest_size=32).digest()


def blake2s_16(data: bytes) -> bytes:
    return hashlib.blake2s(data, digest_size=16).digest()


def content_hash(data: bytes) -> bytes:
    """Storage key of a fragment: BLAKE2s-256 over its bytes alone."""
    return blake2s_32(data)


def content_digest(canonical: bytes) -> bytes:
    """Digest of a record's canonical serialization.

    Domain-separated so a digest never equals the content hash of a fragment
    that happens to hold the same bytes.
    """
    return blake2s_32(b"SUCC_CONTENT\x00" + canonical)
