"""
Durable store backed by a directory tree.

Layout under the store root::

    fragments/<hh>/<content hash hex>
    revisions/<hh>/<address hex>
    staging/<address hex>-<txid>/
        fragments/<content hash hex>
        revision
        COMMIT

Published objects are written to a temporary file, fsync'd and then hard
linked into place, so creating an object that already exists fails atomically
instead of replacing it. The COMMIT marker is written with ``os.replace``.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence

from .constants import ADDRESS_SIZE, CONTENT_HASH_SIZE
from .errors import RevisionConflict, SuccessionError
from .fragments import Fragment, decode
from .kdc import Address
from .revisions import Revision
from .store import StagingEntry, Store, new_txid

logger = logging.getLogger(__name__)

FRAGMENTS_DIR = "fragments"
REVISIONS_DIR = "revisions"
STAGING_DIR = "staging"
STAGED_REVISION_NAME = "revision"
COMMIT_MARKER_NAME = "COMMIT"
_TMP_PREFIX = ".tmp-"


def _fsync_dir(path: Path) -> None:
    if os.name == "nt":
        return
    fd = os.open(str(path), os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def _is_hex_name(name: str, size: int) -> bool:
    if len(name) != size * 2:
        return False
    try:
        bytes.fromhex(name)
    except ValueError:
        return False
    return True


class DirectoryStore(Store):
    def __init__(self, root, sync: bool = True):
        self.root = Path(root)
        self.sync = sync
        self.fragments_dir = self.root / FRAGMENTS_DIR
        self.revisions_dir = self.root / REVISIONS_DIR
        self.staging_dir = self.root / STAGING_DIR
        for d in (self.fragments_dir, self.revisions_dir, self.staging_dir):
            d.mkdir(parents=True, exist_ok=True)

    def __repr__(self) -> str:
        return f"DirectoryStore({str(self.root)!r})"

    # -------- file helpers --------

    def _write_file(self, path: Path, data: bytes) -> None:
        with open(path, "wb") as fh:
            fh.write(data)
            if self.sync:
                fh.flush()
                os.fsync(fh.fileno())

    def _sync_dir(self, path: Path) -> None:
        if self.sync:
            _fsync_dir(path)

    def _create_exclusive(self, path: Path, data: bytes) -> bool:
        """Create ``path`` holding ``data`` unless it exists. Returns True if created."""
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=_TMP_PREFIX, dir=str(path.parent))
        os.close(fd)
        tmp_path = Path(tmp)
        try:
            self._write_file(tmp_path, data)
            try:
                os.link(str(tmp_path), str(path))
            except FileExistsError:
                return False
        finally:
            tmp_path.unlink(missing_ok=True)
        self._sync_dir(path.parent)
        return True

    @staticmethod
    def _read_optional(path: Path) -> Optional[bytes]:
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    @staticmethod
    def _iter_objects(base: Path, size: int) -> Iterator[str]:
        for shard in sorted(base.iterdir()):
            if not shard.is_dir():
                continue
            for entry in sorted(shard.iterdir()):
                if _is_hex_name(entry.name, size):
                    yield entry.name

    def _fragment_path(self, content_hash: bytes) -> Path:
        h = content_hash.hex()
        return self.fragments_dir / h[:2] / h

    def _revision_path(self, address: Address) -> Path:
        h = address.hex()
        return self.revisions_dir / h[:2] / h

    def _staging_path(self, entry: StagingEntry) -> Path:
        return self.staging_dir / f"{entry.target_address.hex()}-{entry.txid}"

    # -------- fragments --------

    def put_fragment(self, content_hash: bytes, data: bytes) -> bool:
        path = self._fragment_path(content_hash)
        if path.exists():
            return False
        return self._create_exclusive(path, data)

    def get_fragment(self, content_hash: bytes) -> Optional[bytes]:
        return self._read_optional(self._fragment_path(content_hash))

    def has_fragment(self, content_hash: bytes) -> bool:
        return self._fragment_path(content_hash).is_file()

    def remove_fragment(self, content_hash: bytes) -> bool:
        path = self._fragment_path(content_hash)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        self._sync_dir(path.parent)
        return True

    def fragment_hashes(self) -> Iterator[bytes]:
        for name in self._iter_objects(self.fragments_dir, CONTENT_HASH_SIZE):
            yield bytes.fromhex(name)

    # -------- revisions --------

    def put_revision(self, address: Address, data: bytes) -> None:
        if not self._create_exclusive(self._revision_path(address), data):
            raise RevisionConflict(f"revision {address} already exists")

    def get_revision(self, address: Address) -> Optional[bytes]:
        return self._read_optional(self._revision_path(address))

    def has_revision(self, address: Address) -> bool:
        return self._revision_path(address).is_file()

    def revision_addresses(self) -> Iterator[Address]:
        for name in self._iter_objects(self.revisions_dir, ADDRESS_SIZE):
            yield Address(bytes.fromhex(name))

    # -------- staging --------

    def open_staging(
        self,
        target_address: Address,
        fragments: Sequence[Fragment],
        metadata: Dict[str, bytes],
        revision_bytes: bytes,
    ) -> StagingEntry:
        entry = StagingEntry(
            txid=new_txid(),
            target_address=target_address,
            candidate_fragments=list(fragments),
            candidate_metadata=dict(metadata),
            revision_bytes=bytes(revision_bytes),
        )
        path = self._staging_path(entry)
        try:
            frag_dir = path / FRAGMENTS_DIR
            frag_dir.mkdir(parents=True)
            for frag in entry.candidate_fragments:
                frag_path = frag_dir / frag.content_hash.hex()
                if not frag_path.exists():
                    self._write_file(frag_path, frag.data)
            self._sync_dir(frag_dir)
            self._write_file(path / STAGED_REVISION_NAME, entry.revision_bytes)
            self._sync_dir(path)
        except OSError:
            shutil.rmtree(path, ignore_errors=True)
            raise
        return entry

    def mark_committing(self, entry: StagingEntry) -> None:
        path = self._staging_path(entry)
        tmp = path / (_TMP_PREFIX + COMMIT_MARKER_NAME)
        self._write_file(tmp, entry.txid.encode("ascii"))
        os.replace(str(tmp), str(path / COMMIT_MARKER_NAME))
        self._sync_dir(path)
        entry.committing = True

    def discard_staging(self, entry: StagingEntry) -> None:
        path = self._staging_path(entry)
        if not path.exists():
            return
        shutil.rmtree(path)
        self._sync_dir(self.staging_dir)

    def _load_staged(self, path: Path, target_address: Address, txid: str) -> StagingEntry:
        committing = (path / COMMIT_MARKER_NAME).is_file()
        entry = StagingEntry(
            txid=txid,
            target_address=target_address,
            candidate_fragments=[],
            candidate_metadata={},
            revision_bytes=b"",
            committing=committing,
            complete=False,
        )
        try:
            revision_bytes = (path / STAGED_REVISION_NAME).read_bytes()
            revision = Revision.unpack(revision_bytes)
            fragments = [
                Fragment(ref.content_hash, ref.sequence_index, ref.size,
                         (path / FRAGMENTS_DIR / ref.content_hash.hex()).read_bytes())
                for ref in revision.fragments
            ]
            metadata, _payload = decode(fragments)
        except (OSError, SuccessionError) as exc:
            logger.debug("Staging entry %s is unreadable: %s", txid, exc)
            return entry
        if revision.address != target_address:
            logger.debug("Staging entry %s targets %s but holds %s", txid, target_address, revision.address)
            return entry
        entry.candidate_fragments = fragments
        entry.candidate_metadata = metadata
        entry.revision_bytes = revision_bytes
        entry.complete = True
        return entry

    def staged_entries(self) -> List[StagingEntry]:
        entries: List[StagingEntry] = []
        for path in sorted(self.staging_dir.iterdir()):
            address_hex, sep, txid = path.name.partition("-")
            if not path.is_dir() or not sep or not _is_hex_name(address_hex, ADDRESS_SIZE):
                logger.warning("Ignoring unexpected staging item %s", path)
                continue
            entries.append(self._load_staged(path, Address(bytes.fromhex(address_hex)), txid))
        return entries
