"""
Minimal TLV encoder/decoder for record headers and revision records.

Encoding
- TLV: varint(tag) || varint(length) || payload
- Integers: unsigned LEB128 varint
- Bytes: raw payload (length provided by TLV len)
- Strings: UTF-8 bytes (length provided by TLV len)

Record header (fragment 0 of every revision, after HEADER_MAGIC)
- 1: version (payload: varint major || varint minor)
- 2: metadata (container; contains entry TLVs, tag=1 per entry, sorted by key bytes)
- 3: payload_length (varint)

Metadata entry (within metadata container; tag=1)
- 1: key (utf8)
- 2: value (bytes)

Canonical serialization (never stored, compared for equality)
- 1: version
- 2: metadata (as above)
- 4: payload (bytes)

Revision record body (after REVISION_MAGIC and the frame header)
- 1: revision_number (varint)
- 2: address (bytes[32])
- 3: content_digest (bytes[32])
- 4: fragments (container; contains fragment TLVs, tag=1 per fragment)
- 5: payload_length (varint)

Fragment reference (within fragments container; tag=1)
- 1: sequence_index (varint)
- 2: content_hash (bytes[32])
- 3: size (varint)

Signatures (revision trailer; tag=1 per signature)
- 1: key_id (bytes[16])
- 2: signature (bytes)
"""

from __future__ import annotations

from typing import Dict, List, Tuple


def varint_encode(n: int) -> bytes:
    if n < 0:
        raise ValueError("varint: negative not supported")
    out = bytearray()
    while True:
        b = n & 0x7F
        n >>= 7
        if n:
            out.append(b | 0x80)
        else:
            out.append(b)
            break
    return bytes(out)


def varint_decode(data: bytes, pos: int) -> Tuple[int, int]:
    shift = 0
    result = 0
    while True:
        if pos >= len(data):
            raise ValueError("varint: truncated")
        b = data[pos]
        pos += 1
        result |= (b & 0x7F) << shift
        if not (b & 0x80):
            return result, pos
        shift += 7
        if shift > 63:
            raise ValueError("varint: too large")


def varint_value(payload: bytes) -> int:
    """Decode a payload that must hold exactly one varint."""
    value, pos = varint_decode(payload, 0)
    if pos != len(payload):
        raise ValueError("varint: trailing bytes")
    return value


def tlv(tag: int, payload: bytes) -> bytes:
    return varint_encode(tag) + varint_encode(len(payload)) + payload


def encode_str(s: str) -> bytes:
    return s.encode("utf-8")


def decode_str(b: bytes) -> str:
    return b.decode("utf-8")


def iter_tlvs(data: bytes) -> List[Tuple[int, bytes]]:
    items: List[Tuple[int, bytes]] = []
    pos = 0
    n = len(data)
    while pos < n:
        tag, pos = varint_decode(data, pos)
        ln, pos = varint_decode(data, pos)
        if pos + ln > n:
            raise ValueError("TLV length out of range")
        items.append((tag, data[pos : pos + ln]))
        pos += ln
    return items


def unique_tlvs(data: bytes) -> Dict[int, bytes]:
    """Parse a TLV message whose tags may appear at most once."""
    out: Dict[int, bytes] = {}
    for tag, payload in iter_tlvs(data):
        if tag in out:
            raise ValueError(f"TLV tag {tag} repeated")
        out[tag] = payload
    return out


def version_payload(major: int, minor: int) -> bytes:
    return varint_encode(major) + varint_encode(minor)


def parse_version(payload: bytes) -> Tuple[int, int]:
    major, pos = varint_decode(payload, 0)
    minor, pos = varint_decode(payload, pos)
    if pos != len(payload):
        raise ValueError("version: trailing bytes")
    return major, minor
