"""
Staging & publish pipeline: writes one record revision into a store.

Each write runs Derive -> Stage -> Compare -> Commit -> Finalize. Content that
is byte-identical (in canonical form) to the current revision is reported as
``UNCHANGED`` and nothing is published. The compare and commit steps run while
holding a lock on the record key, so two writers in this process never race
for the same revision number; a conflict with a writer elsewhere is retried
with a fresh revision number a bounded number of times.
"""

from __future__ import annotations

import enum
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, Mapping, Optional, Sequence, Tuple

from .constants import DEFAULT_CONFLICT_RETRIES, DEFAULT_FRAGMENT_SIZE, FIRST_REVISION
from .errors import RevisionConflict, StagingIOError, WriteCancelled, format_name_path
from .fragments import EncodedRecord, encode
from .kdc import Address, HashedRecordKey, KeyDerivationChain, Parent
from .revisions import Revision, RevisionChain
from .signing import SigningKey, sign_all
from .store import Store

logger = logging.getLogger(__name__)


class OutcomeKind(enum.Enum):
    CREATED = "created"
    UNCHANGED = "unchanged"
    UPDATED = "updated"


@dataclass
class RecordDescriptor:
    parent: Parent
    name: bytes
    metadata: Mapping[str, bytes] = field(default_factory=dict)
    payload: bytes = b""
    # Explicit revision to write; it must be the next one in the chain.
    revision_number: Optional[int] = None
    # Name path from the registry root, used in logs and error reports.
    path: Tuple[bytes, ...] = ()


@dataclass(frozen=True)
class Outcome:
    kind: OutcomeKind
    address: Address
    revision_number: int
    path: Tuple[bytes, ...] = ()

    @property
    def changed(self) -> bool:
        return self.kind is not OutcomeKind.UNCHANGED


class KeyLockTable:
    """Per-record-key exclusive locks, created on demand and dropped when idle."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[bytes, Tuple[threading.Lock, int]] = {}

    @contextmanager
    def hold(self, key: HashedRecordKey) -> Iterator[None]:
        with self._guard:
            lock, users = self._locks.get(key.value, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[key.value] = (lock, users + 1)
        try:
            with lock:
                yield
        finally:
            with self._guard:
                lock, users = self._locks[key.value]
                if users == 1:
                    del self._locks[key.value]
                else:
                    self._locks[key.value] = (lock, users - 1)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class Pipeline:
    def __init__(
        self,
        store: Store,
        kdc: KeyDerivationChain,
        fragment_size: int = DEFAULT_FRAGMENT_SIZE,
        signing_keys: Sequence[SigningKey] = (),
        max_conflict_retries: int = DEFAULT_CONFLICT_RETRIES,
    ):
        if max_conflict_retries < 0:
            raise ValueError("max_conflict_retries must not be negative")
        self.store = store
        self.kdc = kdc
        self.fragment_size = fragment_size
        self.signing_keys = list(signing_keys)
        self.max_conflict_retries = max_conflict_retries
        self.chain = RevisionChain(store, kdc, [k.verifying_key for k in self.signing_keys])
        self.locks = KeyLockTable()

    def write(self, descriptor: RecordDescriptor, cancel: Optional[threading.Event] = None) -> Outcome:
        """Publish ``descriptor`` as the next revision of its record."""
        _check_cancel(cancel, descriptor)
        hashed_key = self.kdc.hash_key(descriptor.parent, descriptor.name)
        encoded = encode(descriptor.metadata, descriptor.payload, self.fragment_size)
        with self.locks.hold(hashed_key):
            attempt = 0
            while True:
                try:
                    return self._attempt(hashed_key, encoded, descriptor, cancel)
                except RevisionConflict:
                    if descriptor.revision_number is not None or attempt >= self.max_conflict_retries:
                        raise
                    attempt += 1
                    logger.info(
                        "Revision conflict on %s, retrying (%d/%d)",
                        format_name_path(descriptor.path), attempt, self.max_conflict_retries,
                    )

    def _attempt(
        self,
        hashed_key: HashedRecordKey,
        encoded: EncodedRecord,
        descriptor: RecordDescriptor,
        cancel: Optional[threading.Event],
    ) -> Outcome:
        # Derive
        try:
            current = self.chain.current_for_key(hashed_key)
        except OSError as exc:
            raise StagingIOError(
                f"failed to read current revision of {format_name_path(descriptor.path)}: {exc}"
            ) from exc
        number = FIRST_REVISION if current is None else current.revision_number + 1
        address = hashed_key.derive_address(number)
        revision = Revision(
            revision_number=number,
            address=address,
            content_digest=encoded.digest,
            fragments=encoded.refs(),
            payload_length=encoded.payload_length,
        )
        revision.signatures = sign_all(self.signing_keys, revision.body())

        # Stage
        entry = self.store.stage(address, encoded.fragments, encoded.metadata, revision.pack())

        # Compare
        try:
            unchanged = current is not None and self._same_content(current, encoded)
        except OSError as exc:
            self.store.discard(entry)
            raise StagingIOError(
                f"failed to read revision {current.address} for comparison: {exc}"
            ) from exc
        except BaseException:
            self.store.discard(entry)
            raise
        if unchanged:
            self.store.discard(entry)
            logger.debug("Unchanged %s (revision %d)", format_name_path(descriptor.path), current.revision_number)
            return Outcome(OutcomeKind.UNCHANGED, current.address, current.revision_number, descriptor.path)
        if descriptor.revision_number is not None and descriptor.revision_number != number:
            self.store.discard(entry)
            raise RevisionConflict(
                f"requested revision {descriptor.revision_number} but the next revision is {number}"
            )
        if cancel is not None and cancel.is_set():
            self.store.discard(entry)
            raise WriteCancelled(f"write of {format_name_path(descriptor.path)} cancelled before commit")

        # Commit
        self.store.commit(entry)

        # Finalize
        kind = OutcomeKind.CREATED if number == FIRST_REVISION else OutcomeKind.UPDATED
        logger.info("%s %s (revision %d, %s)", kind.value.capitalize(), format_name_path(descriptor.path), number, address)
        return Outcome(kind, address, number, descriptor.path)

    def _same_content(self, current: Revision, encoded: EncodedRecord) -> bool:
        if current.content_digest != encoded.digest:
            return False
        return self.chain.canonical(current) == encoded.canonical


def _check_cancel(cancel: Optional[threading.Event], descriptor: RecordDescriptor) -> None:
    if cancel is not None and cancel.is_set():
        raise WriteCancelled(f"write of {format_name_path(descriptor.path)} cancelled")
