"""
Fragment codec: canonical serialization of a record and its split into
content-addressed fragments.

A record revision is stored as an ordered run of fragments. The leading
fragments carry the record header (metadata in canonical key order and the
payload length), the remaining ones carry the payload in chunks of at most
``max_fragment_size`` bytes. An empty payload is still represented by one
empty payload fragment so readers never special-case it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from . import tlv
from .constants import HEADER_MAGIC, VERSION_MAJOR, VERSION_MINOR
from .errors import EncodingError, FragmentMissing, FragmentOrderInvalid, IntegrityError
from .hashutil import content_digest, content_hash


Metadata = Mapping[str, bytes]
Resolver = Callable[[bytes], Optional[bytes]]


@dataclass(frozen=True)
class Fragment:
    content_hash: bytes
    sequence_index: int
    size: int
    data: Optional[bytes] = field(default=None, compare=False, repr=False)

    @classmethod
    def from_data(cls, sequence_index: int, data: bytes) -> "Fragment":
        return cls(content_hash=content_hash(data), sequence_index=sequence_index, size=len(data), data=data)

    def ref(self) -> "Fragment":
        """The same fragment without its bytes, as stored in a revision record."""
        return Fragment(self.content_hash, self.sequence_index, self.size)


@dataclass
class EncodedRecord:
    fragments: List[Fragment]
    metadata: Dict[str, bytes]
    payload_length: int
    canonical: bytes
    digest: bytes

    def refs(self) -> List[Fragment]:
        return [f.ref() for f in self.fragments]


def normalize_metadata(metadata: Optional[Metadata]) -> List[Tuple[str, bytes]]:
    """Validate metadata and return its entries in canonical order.

    Keys are ordered by their UTF-8 bytes, which is stable regardless of the
    mapping's insertion order or the interpreter's string ordering.
    """
    if metadata is None:
        return []
    if not isinstance(metadata, Mapping):
        raise EncodingError("metadata must be a mapping of str to bytes")
    entries: List[Tuple[bytes, str, bytes]] = []
    for key, value in metadata.items():
        if not isinstance(key, str):
            raise EncodingError(f"metadata key must be str, not {type(key).__name__}")
        try:
            key_bytes = tlv.encode_str(key)
        except UnicodeEncodeError as exc:
            raise EncodingError(f"metadata key {key!r} is not encodable: {exc}") from exc
        if isinstance(value, (bytearray, memoryview)):
            value = bytes(value)
        if not isinstance(value, bytes):
            raise EncodingError(f"metadata value for {key!r} must be bytes, not {type(value).__name__}")
        entries.append((key_bytes, key, value))
    entries.sort(key=lambda e: e[0])
    return [(key, value) for _, key, value in entries]


def _check_payload(payload) -> bytes:
    if isinstance(payload, (bytearray, memoryview)):
        payload = bytes(payload)
    if not isinstance(payload, bytes):
        raise EncodingError(f"payload must be bytes, not {type(payload).__name__}")
    return payload


def _metadata_container(entries: Iterable[Tuple[str, bytes]]) -> bytes:
    out = bytearray()
    for key, value in entries:
        out += tlv.tlv(1, tlv.tlv(1, tlv.encode_str(key)) + tlv.tlv(2, value))
    return bytes(out)


def _parse_metadata_container(payload: bytes) -> Dict[str, bytes]:
    metadata: Dict[str, bytes] = {}
    previous: Optional[bytes] = None
    for tag, entry in tlv.iter_tlvs(payload):
        if tag != 1:
            raise ValueError(f"unexpected metadata tag {tag}")
        fields = tlv.unique_tlvs(entry)
        if 1 not in fields or 2 not in fields:
            raise ValueError("metadata entry lacks key or value")
        if previous is not None and fields[1] <= previous:
            raise ValueError("metadata entries are not in canonical order")
        previous = fields[1]
        metadata[tlv.decode_str(fields[1])] = fields[2]
    return metadata


def canonical_bytes(metadata: Optional[Metadata], payload: bytes) -> bytes:
    """Canonical serialization of (metadata, payload).

    Two records are equal exactly when these bytes are equal.
    """
    entries = normalize_metadata(metadata)
    payload = _check_payload(payload)
    return (
        tlv.tlv(1, tlv.version_payload(VERSION_MAJOR, VERSION_MINOR))
        + tlv.tlv(2, _metadata_container(entries))
        + tlv.tlv(4, payload)
    )


def _build_header(entries: List[Tuple[str, bytes]], payload_length: int) -> bytes:
    body = (
        tlv.tlv(1, tlv.version_payload(VERSION_MAJOR, VERSION_MINOR))
        + tlv.tlv(2, _metadata_container(entries))
        + tlv.tlv(3, tlv.varint_encode(payload_length))
    )
    return HEADER_MAGIC + tlv.varint_encode(len(body)) + body


def _split(data: bytes, size: int) -> List[bytes]:
    return [data[i : i + size] for i in range(0, len(data), size)]


def encode(metadata: Optional[Metadata], payload: bytes, max_fragment_size: int) -> EncodedRecord:
    """Serialize a record into its ordered fragments."""
    if isinstance(max_fragment_size, bool) or not isinstance(max_fragment_size, int) or max_fragment_size <= 0:
        raise EncodingError(f"max fragment size must be a positive integer, got {max_fragment_size!r}")
    entries = normalize_metadata(metadata)
    payload = _check_payload(payload)
    header = _build_header(entries, len(payload))
    chunks = _split(header, max_fragment_size) + (_split(payload, max_fragment_size) or [b""])
    fragments = [Fragment.from_data(i, chunk) for i, chunk in enumerate(chunks)]
    canonical = canonical_bytes(dict(entries), payload)
    return EncodedRecord(
        fragments=fragments,
        metadata=dict(entries),
        payload_length=len(payload),
        canonical=canonical,
        digest=content_digest(canonical),
    )


def check_order(fragments: Sequence[Fragment]) -> List[Fragment]:
    """Return fragments sorted by sequence index, which must run 0..n-1."""
    ordered = sorted(fragments, key=lambda f: f.sequence_index)
    for expected, frag in enumerate(ordered):
        if frag.sequence_index != expected:
            raise FragmentOrderInvalid(
                f"fragment sequence is not a contiguous zero-based run: expected index {expected}, found {frag.sequence_index}"
            )
    return ordered


def _parse_header(stream: bytes) -> Tuple[int, Dict[str, bytes], int]:
    """Returns: (header_length, metadata, payload_length)."""
    if not stream.startswith(HEADER_MAGIC):
        raise EncodingError("bad record header magic")
    try:
        body_len, pos = tlv.varint_decode(stream, len(HEADER_MAGIC))
        end = pos + body_len
        if end > len(stream):
            raise ValueError("header body truncated")
        fields = tlv.unique_tlvs(stream[pos:end])
        if 1 not in fields or 3 not in fields:
            raise ValueError("header lacks version or payload length")
        major, _minor = tlv.parse_version(fields[1])
        if major != VERSION_MAJOR:
            raise ValueError(f"unsupported header version {major}")
        metadata = _parse_metadata_container(fields.get(2, b""))
        payload_length = tlv.varint_value(fields[3])
    except (ValueError, UnicodeDecodeError) as exc:
        raise EncodingError(f"malformed record header: {exc}") from exc
    return end, metadata, payload_length


def decode(fragments: Sequence[Fragment], resolve: Optional[Resolver] = None) -> Tuple[Dict[str, bytes], bytes]:
    """Reconstruct (metadata, payload) from a record's fragments.

    Fragments without bytes are looked up through ``resolve``.
    """
    ordered = check_order(fragments)
    if not ordered:
        raise EncodingError("record has no fragments")
    datas: List[bytes] = []
    ends: List[int] = []
    offset = 0
    for frag in ordered:
        data = frag.data
        if data is None:
            data = resolve(frag.content_hash) if resolve is not None else None
            if data is None:
                raise FragmentMissing(f"fragment {frag.content_hash.hex()} (index {frag.sequence_index}) not found")
        if content_hash(data) != frag.content_hash:
            raise IntegrityError(f"fragment {frag.content_hash.hex()} does not match its content hash")
        datas.append(data)
        offset += len(data)
        ends.append(offset)
    stream = b"".join(datas)
    header_length, metadata, payload_length = _parse_header(stream)
    if header_length not in ends:
        raise EncodingError("record header does not end on a fragment boundary")
    if ends.index(header_length) == len(ends) - 1:
        raise EncodingError("record has no payload fragment")
    payload = stream[header_length:]
    if len(payload) != payload_length:
        raise EncodingError(f"payload length mismatch: header says {payload_length}, fragments hold {len(payload)}")
    return metadata, payload
