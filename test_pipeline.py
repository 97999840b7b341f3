from __future__ import annotations

import threading
import unittest
from unittest import mock

from succession.constants import HASH_BLAKE2B
from succession.errors import EncodingError, IntegrityError, InvalidAncestry, RevisionConflict, StagingIOError, WriteCancelled
from succession.kdc import HashParams, KeyDerivationChain, RootSeed
from succession.pipeline import OutcomeKind, Pipeline, RecordDescriptor
from succession.revisions import RevisionChain
from succession.signing import SigningKey
from succession.store import MemoryStore


R = RootSeed(bytes(range(32)))


def make_kdc() -> KeyDerivationChain:
    return KeyDerivationChain(HashParams(algorithm=HASH_BLAKE2B, salt=b"\x05" * 16))


class PipelineTests(unittest.TestCase):
    def setUp(self):
        self.store = MemoryStore()
        self.kdc = make_kdc()
        self.pipeline = Pipeline(self.store, self.kdc, fragment_size=16)
        self.chain = RevisionChain(self.store, self.kdc)

    def write(self, name: bytes, payload: bytes, parent=R, **kwargs):
        return self.pipeline.write(RecordDescriptor(parent, name, payload=payload, **kwargs))

    def test_concrete_scenario(self):
        first = self.write(b"a", b"hello")
        self.assertEqual(first.kind, OutcomeKind.CREATED)
        self.assertEqual(first.revision_number, 0)
        a0 = first.address
        self.assertEqual(a0, self.kdc.derive(R, b"a", 0))

        again = self.write(b"a", b"hello")
        self.assertEqual(again.kind, OutcomeKind.UNCHANGED)
        self.assertEqual(again.address, a0)

        updated = self.write(b"a", b"world")
        self.assertEqual(updated.kind, OutcomeKind.UPDATED)
        self.assertEqual(updated.revision_number, 1)
        a1 = updated.address
        self.assertNotEqual(a1, a0)

        child = self.write(b"b", b"child", parent=a1)
        self.assertEqual(child.kind, OutcomeKind.CREATED)
        under_a0 = {self.kdc.derive(a0, b"b", n) for n in range(4)}
        self.assertNotIn(child.address, under_a0)
        self.assertEqual(self.chain.resolve_current(a1, b"b").address, child.address)
        self.assertIsNone(self.chain.resolve_current(a0, b"b"))

    def test_idempotent_republish(self):
        metadata = {"created_at": b"2024-05-01T12:00:00+00:00", "type": b"text/plain"}
        first = self.write(b"doc", b"x" * 100, metadata=metadata)
        fragments = self.store.fragment_count()
        revisions = self.store.revision_count()
        second = self.write(b"doc", b"x" * 100, metadata=dict(reversed(list(metadata.items()))))
        self.assertEqual(first.kind, OutcomeKind.CREATED)
        self.assertEqual(second.kind, OutcomeKind.UNCHANGED)
        self.assertEqual(second.address, first.address)
        self.assertEqual(self.store.fragment_count(), fragments)
        self.assertEqual(self.store.revision_count(), revisions)
        self.assertEqual(self.store.staged_entries(), [])

    def test_revision_monotonicity(self):
        outcomes = [self.write(b"a", payload) for payload in (b"one", b"two", b"three")]
        self.assertEqual([o.revision_number for o in outcomes], [0, 1, 2])
        self.assertEqual([o.kind for o in outcomes], [OutcomeKind.CREATED, OutcomeKind.UPDATED, OutcomeKind.UPDATED])
        current = self.chain.resolve_current(R, b"a")
        self.assertEqual(current.address, outcomes[-1].address)
        self.assertEqual(self.chain.load(current), ({}, b"three"))
        self.assertEqual([r.revision_number for r in self.chain.history(R, b"a")], [0, 1, 2])
        self.assertEqual(self.chain.next_revision_number(R, b"a"), 3)
        self.assertEqual(self.chain.resolve(R, b"a", 0).address, outcomes[0].address)

    def test_comparison_is_against_current_revision(self):
        self.write(b"a", b"one")
        self.write(b"a", b"two")
        back = self.write(b"a", b"one")
        self.assertEqual(back.kind, OutcomeKind.UPDATED)
        self.assertEqual(back.revision_number, 2)

    def test_metadata_change_is_an_update(self):
        self.write(b"a", b"same", metadata={"v": b"1"})
        outcome = self.write(b"a", b"same", metadata={"v": b"2"})
        self.assertEqual(outcome.kind, OutcomeKind.UPDATED)

    def test_unchanged_fragments_are_shared(self):
        payload = bytes(range(256)) * 4
        self.write(b"a", payload)
        before = self.store.fragment_count()
        self.write(b"a", payload + b"tail")
        # Only the header fragments and the last payload fragment are new.
        self.assertLess(self.store.fragment_count() - before, 8)

    def test_explicit_revision_number(self):
        self.write(b"a", b"one", revision_number=0)
        with self.assertRaises(RevisionConflict):
            self.write(b"a", b"two", revision_number=5)
        outcome = self.write(b"a", b"two", revision_number=1)
        self.assertEqual(outcome.revision_number, 1)
        self.assertEqual(self.write(b"a", b"two", revision_number=7).kind, OutcomeKind.UNCHANGED)
        self.assertEqual(self.store.staged_entries(), [])

    def test_input_errors_surface_immediately(self):
        with self.assertRaises(EncodingError):
            self.write(b"a", "not bytes")
        with self.assertRaises(InvalidAncestry):
            self.write(b"", b"x", parent=self.kdc.derive(R, b"", 0))
        self.assertEqual(self.store.fragment_count(), 0)

    def test_cancelled_write_has_no_effect(self):
        cancel = threading.Event()
        cancel.set()
        with self.assertRaises(WriteCancelled):
            self.pipeline.write(RecordDescriptor(R, b"a", payload=b"x"), cancel=cancel)
        self.assertEqual(self.store.fragment_count(), 0)
        self.assertEqual(self.store.revision_count(), 0)

    def test_cancel_before_commit(self):
        cancel = threading.Event()
        stage = self.store.stage

        def stage_then_cancel(*args, **kwargs):
            entry = stage(*args, **kwargs)
            cancel.set()
            return entry

        with mock.patch.object(self.store, "stage", side_effect=stage_then_cancel):
            with self.assertRaises(WriteCancelled):
                self.pipeline.write(RecordDescriptor(R, b"a", payload=b"x"), cancel=cancel)
        self.assertEqual(self.store.staged_entries(), [])
        self.assertEqual(self.store.revision_count(), 0)

    def test_staging_error(self):
        with mock.patch.object(self.store, "open_staging", side_effect=OSError("disk full")):
            with self.assertRaises(StagingIOError):
                self.write(b"a", b"x")
        self.assertEqual(self.store.fragment_count(), 0)
        self.assertEqual(self.write(b"a", b"x").kind, OutcomeKind.CREATED)

    def test_read_errors_are_staging_errors(self):
        self.write(b"a", b"one")
        denied = PermissionError(13, "Permission denied")
        with mock.patch.object(self.store, "get_revision", side_effect=denied):
            with self.assertRaises(StagingIOError):
                self.write(b"a", b"two")
        with mock.patch.object(self.store, "has_revision", side_effect=denied):
            with self.assertRaises(StagingIOError):
                self.write(b"a", b"two")
        self.assertEqual(self.store.staged_entries(), [])
        self.assertEqual(self.store.revision_count(), 1)
        self.assertEqual(self.write(b"a", b"two").revision_number, 1)

    def test_compare_read_error_discards_staging(self):
        self.write(b"a", b"same")
        with mock.patch.object(self.store, "get_fragment", side_effect=PermissionError(13, "Permission denied")):
            with self.assertRaises(StagingIOError):
                self.write(b"a", b"same")
        self.assertEqual(self.store.staged_entries(), [])
        self.assertEqual(self.write(b"a", b"same").kind, OutcomeKind.UNCHANGED)

    def test_conflict_is_retried(self):
        self.write(b"a", b"one")
        real = self.store.current_revision_number
        stale = [None]

        def racing(key):
            # The first lookup misses the revision another writer just published.
            if stale:
                return stale.pop()
            return real(key)

        with mock.patch.object(self.store, "current_revision_number", side_effect=racing):
            outcome = self.write(b"a", b"two")
        self.assertEqual(outcome.kind, OutcomeKind.UPDATED)
        self.assertEqual(outcome.revision_number, 1)

    def test_conflict_retries_are_bounded(self):
        pipeline = Pipeline(self.store, self.kdc, fragment_size=16, max_conflict_retries=0)
        pipeline.write(RecordDescriptor(R, b"a", payload=b"one"))
        with mock.patch.object(self.store, "current_revision_number", return_value=None):
            with self.assertRaises(RevisionConflict):
                pipeline.write(RecordDescriptor(R, b"a", payload=b"two"))

    def test_concurrent_writers_on_one_key(self):
        outcomes = []
        errors = []

        def worker(i):
            try:
                outcomes.append(self.write(b"shared", f"payload {i}".encode()))
            except Exception as exc:  # surfaced through the assertion below
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(errors, [])
        self.assertEqual(sorted(o.revision_number for o in outcomes), list(range(8)))
        self.assertEqual(len(self.chain.history(R, b"shared")), 8)
        self.assertEqual(len(self.pipeline.locks), 0)


class SignatureTests(unittest.TestCase):
    def test_revisions_are_signed(self):
        store = MemoryStore()
        kdc = make_kdc()
        key = SigningKey.generate()
        outcome = Pipeline(store, kdc, signing_keys=[key]).write(RecordDescriptor(R, b"a", payload=b"signed"))
        revision = RevisionChain(store, kdc, [key.verifying_key]).resolve_current(R, b"a")
        self.assertEqual(revision.address, outcome.address)
        self.assertEqual([key_id for key_id, _ in revision.signatures], [key.key_id])

        stranger = SigningKey.generate()
        with self.assertRaises(IntegrityError):
            RevisionChain(store, kdc, [stranger.verifying_key]).resolve_current(R, b"a")

    def test_signed_republish_is_unchanged(self):
        store = MemoryStore()
        key = SigningKey.generate()
        pipeline = Pipeline(store, make_kdc(), signing_keys=[key])
        pipeline.write(RecordDescriptor(R, b"a", payload=b"same"))
        self.assertEqual(pipeline.write(RecordDescriptor(R, b"a", payload=b"same")).kind, OutcomeKind.UNCHANGED)

    def test_pem_roundtrip(self):
        key = SigningKey.generate()
        loaded = SigningKey.from_pem(key.to_pem())
        self.assertEqual(loaded.key_id, key.key_id)
        self.assertTrue(key.verifying_key.verify(b"msg", loaded.sign(b"msg")))
        self.assertFalse(key.verifying_key.verify(b"other", loaded.sign(b"msg")))


if __name__ == "__main__":
    unittest.main()
