"""
Published store capability interface and the commit protocol built on it.

A store keeps two kinds of immutable objects: fragments keyed by content hash
and revision records keyed by address. Writes go through a staging area that
readers never see. Committing a staged entry proceeds in a fixed order:

1. mark the entry as committing (durable intent),
2. promote every fragment (create-if-absent; identical content is idempotent),
3. publish the revision record (create-if-absent; this is the visibility point),
4. drop the staging entry.

A revision only becomes visible once all of its fragments are in place, and
``recover`` can finish or undo any entry an interrupted run left behind.
"""

from __future__ import annotations

import abc
import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence, Set

from .constants import FIRST_REVISION, MAX_REVISION
from .errors import IntegrityError, PublishIOError, RevisionConflict, StagingIOError
from .fragments import Fragment
from .kdc import Address, HashedRecordKey
from .revisions import Revision

logger = logging.getLogger(__name__)


@dataclass
class StagingEntry:
    """Working state of one record write; never part of the published store."""
    txid: str
    target_address: Address
    candidate_fragments: List[Fragment]
    candidate_metadata: Dict[str, bytes]
    revision_bytes: bytes
    committing: bool = False
    # False when a staging area was found on disk but could not be read back.
    complete: bool = True


@dataclass
class RecoveryReport:
    discarded: int = 0
    resumed: int = 0
    rolled_back: int = 0
    fragments_removed: int = 0

    @property
    def clean(self) -> bool:
        return not (self.discarded or self.resumed or self.rolled_back)


def new_txid() -> str:
    return uuid.uuid4().hex


class Store(abc.ABC):
    # -------- fragments --------

    @abc.abstractmethod
    def put_fragment(self, content_hash: bytes, data: bytes) -> bool:
        """Store a fragment unless present. Returns True when it was created."""

    @abc.abstractmethod
    def get_fragment(self, content_hash: bytes) -> Optional[bytes]:
        ...

    @abc.abstractmethod
    def has_fragment(self, content_hash: bytes) -> bool:
        ...

    @abc.abstractmethod
    def remove_fragment(self, content_hash: bytes) -> bool:
        ...

    @abc.abstractmethod
    def fragment_hashes(self) -> Iterator[bytes]:
        ...

    # -------- revisions --------

    @abc.abstractmethod
    def put_revision(self, address: Address, data: bytes) -> None:
        """Publish a revision record; raises RevisionConflict if the address is taken."""

    @abc.abstractmethod
    def get_revision(self, address: Address) -> Optional[bytes]:
        ...

    @abc.abstractmethod
    def has_revision(self, address: Address) -> bool:
        ...

    @abc.abstractmethod
    def revision_addresses(self) -> Iterator[Address]:
        ...

    # -------- staging --------

    @abc.abstractmethod
    def open_staging(
        self,
        target_address: Address,
        fragments: Sequence[Fragment],
        metadata: Dict[str, bytes],
        revision_bytes: bytes,
    ) -> StagingEntry:
        """Copy a candidate revision into the staging area."""

    @abc.abstractmethod
    def mark_committing(self, entry: StagingEntry) -> None:
        ...

    @abc.abstractmethod
    def discard_staging(self, entry: StagingEntry) -> None:
        ...

    @abc.abstractmethod
    def staged_entries(self) -> List[StagingEntry]:
        ...

    # -------- derived operations --------

    def fragment_count(self) -> int:
        return sum(1 for _ in self.fragment_hashes())

    def revision_count(self) -> int:
        return sum(1 for _ in self.revision_addresses())

    def current_revision_number(self, hashed_key: HashedRecordKey) -> Optional[int]:
        """Highest revision number present for a record, or None.

        Revisions form a contiguous run starting at FIRST_REVISION, so the end
        of the run is found by galloping followed by a binary search.
        """
        def present(n: int) -> bool:
            return self.has_revision(hashed_key.derive_address(n))

        if not present(FIRST_REVISION):
            return None
        lo, step = FIRST_REVISION, 1
        while True:
            probe = lo + step
            if probe > MAX_REVISION or not present(probe):
                hi = probe
                break
            lo = probe
            step *= 2
        while hi - lo > 1:
            mid = (lo + hi) // 2
            if present(mid):
                lo = mid
            else:
                hi = mid
        return lo

    def get_current_revision(self, hashed_key: HashedRecordKey) -> Optional[bytes]:
        number = self.current_revision_number(hashed_key)
        if number is None:
            return None
        return self.get_revision(hashed_key.derive_address(number))

    def stage(
        self,
        target_address: Address,
        fragments: Sequence[Fragment],
        metadata: Dict[str, bytes],
        revision_bytes: bytes,
    ) -> StagingEntry:
        try:
            entry = self.open_staging(target_address, fragments, metadata, revision_bytes)
        except OSError as exc:
            raise StagingIOError(f"failed to stage revision {target_address}: {exc}") from exc
        logger.debug("Staged %d fragments for %s (txid %s)", len(entry.candidate_fragments), target_address, entry.txid)
        return entry

    def discard(self, entry: StagingEntry) -> None:
        """Drop a staging entry that will not be committed."""
        try:
            self.discard_staging(entry)
        except OSError as exc:
            # Harmless: the entry has no committing mark, recovery drops it.
            logger.warning("Failed to discard staging entry %s: %s", entry.txid, exc)

    def _promote(self, entry: StagingEntry) -> None:
        for frag in entry.candidate_fragments:
            if frag.data is None:
                raise IntegrityError(f"staged fragment {frag.content_hash.hex()} has no data")
            self.put_fragment(frag.content_hash, frag.data)
        try:
            self.put_revision(entry.target_address, entry.revision_bytes)
        except RevisionConflict:
            # A previous attempt at this very commit may already have published it.
            if self.get_revision(entry.target_address) != entry.revision_bytes:
                raise

    def commit(self, entry: StagingEntry) -> None:
        """Atomically promote a staged entry into the published store."""
        try:
            self.mark_committing(entry)
        except OSError as exc:
            self.discard(entry)
            raise StagingIOError(f"failed to mark {entry.txid} as committing: {exc}") from exc
        try:
            self._promote(entry)
        except RevisionConflict:
            # Promoted fragments may be shared with other in-flight writes, so
            # they are left for collect_garbage rather than removed here.
            self.discard(entry)
            raise
        except OSError as exc:
            raise PublishIOError(
                f"commit of {entry.target_address} interrupted (txid {entry.txid}); run recovery: {exc}"
            ) from exc
        try:
            self.discard_staging(entry)
        except OSError as exc:
            logger.warning("Published %s but failed to clean staging %s: %s", entry.target_address, entry.txid, exc)

    def referenced_fragments(self) -> Set[bytes]:
        """Content hashes referenced by published revisions or pending commits."""
        referenced: Set[bytes] = set()
        for address in self.revision_addresses():
            raw = self.get_revision(address)
            if raw is None:
                continue
            referenced.update(f.content_hash for f in Revision.unpack(raw).fragments)
        for entry in self.staged_entries():
            if entry.committing:
                referenced.update(f.content_hash for f in entry.candidate_fragments)
        return referenced

    def _remove_unreferenced(self, candidates: Sequence[bytes]) -> int:
        referenced = self.referenced_fragments()
        removed = 0
        for content_hash in candidates:
            if content_hash not in referenced and self.remove_fragment(content_hash):
                removed += 1
        return removed

    def collect_garbage(self) -> int:
        """Remove fragments no revision references. Returns the number removed."""
        removed = self._remove_unreferenced(list(self.fragment_hashes()))
        if removed:
            logger.info("Removed %d unreferenced fragments", removed)
        return removed

    def recover(self) -> RecoveryReport:
        """Finish or undo staging entries left behind by an interrupted run.

        Must not run while another writer is using the store.
        """
        report = RecoveryReport()
        needs_sweep = False
        try:
            for entry in self.staged_entries():
                if not entry.committing:
                    self.discard_staging(entry)
                    report.discarded += 1
                    logger.warning("Discarded incomplete staging entry %s", entry.txid)
                    continue
                if not entry.complete:
                    self.discard_staging(entry)
                    report.rolled_back += 1
                    needs_sweep = True
                    logger.warning("Rolled back unreadable staging entry %s", entry.txid)
                    continue
                try:
                    self._promote(entry)
                except RevisionConflict:
                    self.discard_staging(entry)
                    report.fragments_removed += self._remove_unreferenced(
                        [f.content_hash for f in entry.candidate_fragments]
                    )
                    report.rolled_back += 1
                    logger.warning(
                        "Rolled back staging entry %s: %s holds a different revision", entry.txid, entry.target_address
                    )
                    continue
                self.discard_staging(entry)
                report.resumed += 1
                logger.warning("Resumed interrupted commit of %s (txid %s)", entry.target_address, entry.txid)
            if needs_sweep:
                report.fragments_removed += self.collect_garbage()
        except OSError as exc:
            raise PublishIOError(f"recovery failed: {exc}") from exc
        return report


class MemoryStore(Store):
    """Volatile store for tests and dry runs."""

    def __init__(self):
        self._lock = threading.RLock()
        self._fragments: Dict[bytes, bytes] = {}
        self._revisions: Dict[bytes, bytes] = {}
        self._staging: Dict[str, StagingEntry] = {}

    def put_fragment(self, content_hash: bytes, data: bytes) -> bool:
        with self._lock:
            if content_hash in self._fragments:
                return False
            self._fragments[content_hash] = bytes(data)
            return True

    def get_fragment(self, content_hash: bytes) -> Optional[bytes]:
        with self._lock:
            return self._fragments.get(content_hash)

    def has_fragment(self, content_hash: bytes) -> bool:
        with self._lock:
            return content_hash in self._fragments

    def remove_fragment(self, content_hash: bytes) -> bool:
        with self._lock:
            return self._fragments.pop(content_hash, None) is not None

    def fragment_hashes(self) -> Iterator[bytes]:
        with self._lock:
            return iter(list(self._fragments))

    def put_revision(self, address: Address, data: bytes) -> None:
        with self._lock:
            if address.value in self._revisions:
                raise RevisionConflict(f"revision {address} already exists")
            self._revisions[address.value] = bytes(data)

    def get_revision(self, address: Address) -> Optional[bytes]:
        with self._lock:
            return self._revisions.get(address.value)

    def has_revision(self, address: Address) -> bool:
        with self._lock:
            return address.value in self._revisions

    def revision_addresses(self) -> Iterator[Address]:
        with self._lock:
            return iter([Address(a) for a in self._revisions])

    def open_staging(self, target_address, fragments, metadata, revision_bytes) -> StagingEntry:
        entry = StagingEntry(
            txid=new_txid(),
            target_address=target_address,
            candidate_fragments=list(fragments),
            candidate_metadata=dict(metadata),
            revision_bytes=bytes(revision_bytes),
        )
        with self._lock:
            self._staging[entry.txid] = entry
        return entry

    def mark_committing(self, entry: StagingEntry) -> None:
        with self._lock:
            entry.committing = True

    def discard_staging(self, entry: StagingEntry) -> None:
        with self._lock:
            self._staging.pop(entry.txid, None)

    def staged_entries(self) -> List[StagingEntry]:
        with self._lock:
            return list(self._staging.values())
