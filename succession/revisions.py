from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence, Tuple

from . import tlv
from .constants import ADDRESS_SIZE, CONTENT_HASH_SIZE, FIRST_REVISION, REVISION_MAGIC, VERSION_MAJOR, VERSION_MINOR
from .errors import IntegrityError
from .fragments import Fragment, canonical_bytes, check_order, decode
from .hashutil import blake2s_16, content_digest
from .kdc import Address, HashedRecordKey, KeyDerivationChain, Parent
from .signing import VerifyingKey, any_valid

if TYPE_CHECKING:
    from .store import Store

logger = logging.getLogger(__name__)


# Revision record frame
# struct: >8s H H I
#  - magic[8]
#  - version_major u16
#  - version_minor u16
#  - body_len u32
# followed by body, u32 signatures_len, signatures, checksum[16]
_FRAME_STRUCT = struct.Struct(">8sHHI")
_LEN_STRUCT = struct.Struct(">I")
_CHECKSUM_SIZE = 16


@dataclass
class Revision:
    """One version of a logical record, as written to the published store."""
    revision_number: int
    address: Address
    content_digest: bytes
    fragments: List[Fragment]
    payload_length: int
    signatures: List[Tuple[bytes, bytes]] = field(default_factory=list)

    def body(self) -> bytes:
        frags = bytearray()
        for f in self.fragments:
            frags += tlv.tlv(
                1,
                tlv.tlv(1, tlv.varint_encode(f.sequence_index))
                + tlv.tlv(2, f.content_hash)
                + tlv.tlv(3, tlv.varint_encode(f.size)),
            )
        return (
            tlv.tlv(1, tlv.varint_encode(self.revision_number))
            + tlv.tlv(2, self.address.value)
            + tlv.tlv(3, self.content_digest)
            + tlv.tlv(4, bytes(frags))
            + tlv.tlv(5, tlv.varint_encode(self.payload_length))
        )

    def pack(self) -> bytes:
        body = self.body()
        sigs = b"".join(tlv.tlv(1, tlv.tlv(1, key_id) + tlv.tlv(2, sig)) for key_id, sig in self.signatures)
        out = (
            _FRAME_STRUCT.pack(REVISION_MAGIC, VERSION_MAJOR, VERSION_MINOR, len(body))
            + body
            + _LEN_STRUCT.pack(len(sigs))
            + sigs
        )
        return out + blake2s_16(out)

    @classmethod
    def unpack(cls, data: bytes) -> "Revision":
        try:
            return cls._unpack(data)
        except (ValueError, KeyError, struct.error) as exc:
            raise IntegrityError(f"malformed revision record: {exc}") from exc

    @classmethod
    def _unpack(cls, data: bytes) -> "Revision":
        if len(data) < _FRAME_STRUCT.size + _LEN_STRUCT.size + _CHECKSUM_SIZE:
            raise ValueError("record too short")
        if blake2s_16(data[:-_CHECKSUM_SIZE]) != data[-_CHECKSUM_SIZE:]:
            raise ValueError("checksum mismatch")
        magic, major, _minor, body_len = _FRAME_STRUCT.unpack_from(data, 0)
        if magic != REVISION_MAGIC:
            raise ValueError("bad magic")
        if major != VERSION_MAJOR:
            raise ValueError(f"unsupported version {major}")
        pos = _FRAME_STRUCT.size
        body = data[pos : pos + body_len]
        if len(body) != body_len:
            raise ValueError("body truncated")
        pos += body_len
        (sigs_len,) = _LEN_STRUCT.unpack_from(data, pos)
        pos += _LEN_STRUCT.size
        sigs = data[pos : pos + sigs_len]
        if pos + sigs_len != len(data) - _CHECKSUM_SIZE:
            raise ValueError("signature section length mismatch")

        fields = tlv.unique_tlvs(body)
        for tag in (1, 2, 3, 4, 5):
            if tag not in fields:
                raise ValueError(f"missing field {tag}")
        if len(fields[2]) != ADDRESS_SIZE or len(fields[3]) != CONTENT_HASH_SIZE:
            raise ValueError("bad address or digest width")
        fragments = []
        for tag, payload in tlv.iter_tlvs(fields[4]):
            if tag != 1:
                raise ValueError(f"unexpected fragment tag {tag}")
            ff = tlv.unique_tlvs(payload)
            if len(ff.get(2, b"")) != CONTENT_HASH_SIZE:
                raise ValueError("bad fragment hash")
            fragments.append(Fragment(ff[2], tlv.varint_value(ff[1]), tlv.varint_value(ff[3])))
        signatures = []
        for tag, payload in tlv.iter_tlvs(sigs):
            sf = tlv.unique_tlvs(payload)
            signatures.append((sf[1], sf[2]))
        return cls(
            revision_number=tlv.varint_value(fields[1]),
            address=Address(fields[2]),
            content_digest=fields[3],
            fragments=fragments,
            payload_length=tlv.varint_value(fields[5]),
            signatures=signatures,
        )


class RevisionChain:
    """Ordered, append-only history of the records in one store.

    Revision ``n`` of a record lives at the address derived for ``n``; the
    current revision is the highest contiguous number present, so it can be
    found by probing derived addresses instead of consulting an index.
    """

    def __init__(self, store: "Store", kdc: KeyDerivationChain, verifying_keys: Sequence[VerifyingKey] = ()):
        self.store = store
        self.kdc = kdc
        self.verifying_keys = list(verifying_keys)

    def _load(self, address: Address) -> Optional[Revision]:
        raw = self.store.get_revision(address)
        if raw is None:
            return None
        revision = Revision.unpack(raw)
        if revision.address != address:
            raise IntegrityError(f"revision stored at {address} claims address {revision.address}")
        if self.verifying_keys and not any_valid(self.verifying_keys, revision.body(), revision.signatures):
            raise IntegrityError(f"revision at {address} carries no valid signature from a trusted key")
        return revision

    def current_for_key(self, hashed_key: HashedRecordKey) -> Optional[Revision]:
        number = self.store.current_revision_number(hashed_key)
        if number is None:
            return None
        revision = self._load(hashed_key.derive_address(number))
        if revision is None:
            # Revisions are never deleted.
            raise IntegrityError("current revision disappeared while resolving")
        if revision.revision_number != number:
            raise IntegrityError(f"revision {number} records number {revision.revision_number}")
        logger.debug("Current revision of record is %d at %s", number, revision.address)
        return revision

    def resolve_current(self, parent: Parent, name: bytes) -> Optional[Revision]:
        """Current revision of (parent, name), or None when the record does not exist."""
        return self.current_for_key(self.kdc.hash_key(parent, name))

    def next_revision_number(self, parent: Parent, name: bytes) -> int:
        number = self.store.current_revision_number(self.kdc.hash_key(parent, name))
        return FIRST_REVISION if number is None else number + 1

    def resolve(self, parent: Parent, name: bytes, revision_number: int) -> Optional[Revision]:
        return self._load(self.kdc.derive(parent, name, revision_number))

    def history(self, parent: Parent, name: bytes) -> List[Revision]:
        hashed_key = self.kdc.hash_key(parent, name)
        number = self.store.current_revision_number(hashed_key)
        if number is None:
            return []
        out = []
        for n in range(FIRST_REVISION, number + 1):
            revision = self._load(hashed_key.derive_address(n))
            if revision is None:
                raise IntegrityError(f"revision {n} is missing from an otherwise contiguous history")
            out.append(revision)
        return out

    def load(self, revision: Revision) -> Tuple[Dict[str, bytes], bytes]:
        """Reconstruct (metadata, payload) of a revision from the store."""
        metadata, payload = decode(check_order(revision.fragments), resolve=self.store.get_fragment)
        if content_digest(canonical_bytes(metadata, payload)) != revision.content_digest:
            raise IntegrityError(f"content of revision at {revision.address} does not match its digest")
        return metadata, payload

    def canonical(self, revision: Revision) -> bytes:
        metadata, payload = self.load(revision)
        return canonical_bytes(metadata, payload)
