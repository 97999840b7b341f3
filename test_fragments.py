from __future__ import annotations

import os
import random
import unittest

from succession.errors import EncodingError, FragmentMissing, FragmentOrderInvalid, IntegrityError
from succession.fragments import Fragment, canonical_bytes, check_order, decode, encode
from succession.revisions import Revision
from succession.kdc import Address


class FragmentCodecTests(unittest.TestCase):
    def test_roundtrip(self):
        cases = [
            ({}, b""),
            ({}, b"hello"),
            ({"created_at": b"2024-01-01T00:00:00Z", "type": b"text/plain"}, b"x" * 1000),
            ({"": b"", "été": b"\x00\xff"}, os.urandom(3 * 64)),
        ]
        for metadata, payload in cases:
            for size in (1, 7, 64, 65536):
                with self.subTest(metadata=metadata, size=size, length=len(payload)):
                    encoded = encode(metadata, payload, size)
                    self.assertTrue(all(f.size <= size for f in encoded.fragments))
                    self.assertEqual(decode(encoded.fragments), (metadata, payload))

    def test_metadata_order_is_canonical(self):
        a = encode({"b": b"2", "a": b"1", "c": b"3"}, b"payload", 16)
        b = encode({"c": b"3", "a": b"1", "b": b"2"}, b"payload", 16)
        self.assertEqual(a.canonical, b.canonical)
        self.assertEqual(a.digest, b.digest)
        self.assertEqual([f.content_hash for f in a.fragments], [f.content_hash for f in b.fragments])
        self.assertEqual(list(a.metadata), ["a", "b", "c"])

    def test_canonical_bytes_distinguish_records(self):
        self.assertNotEqual(canonical_bytes({}, b"ab"), canonical_bytes({"a": b""}, b"b"))
        self.assertNotEqual(canonical_bytes({"k": b"v"}, b""), canonical_bytes({"k": b""}, b"v"))

    def test_empty_payload_has_one_empty_fragment(self):
        encoded = encode({}, b"", 1024)
        self.assertEqual(len(encoded.fragments), 2)
        self.assertEqual(encoded.fragments[-1].size, 0)
        self.assertEqual(encoded.payload_length, 0)

    def test_payload_split(self):
        encoded = encode({}, b"abcdefghij", 4)
        sizes = [f.size for f in encoded.fragments]
        self.assertEqual(sizes[-3:], [4, 4, 2])
        self.assertEqual(sum(sizes[-3:]), 10)

    def test_identical_chunks_share_content_hash(self):
        encoded = encode({}, b"A" * 32, 8)
        payload_hashes = {f.content_hash for f in encoded.fragments[-4:]}
        self.assertEqual(len(payload_hashes), 1)
        other = encode({"x": b"y"}, b"A" * 8, 8)
        self.assertIn(other.fragments[-1].content_hash, payload_hashes)

    def test_sequence_order(self):
        fragments = encode({"k": b"v"}, b"0123456789", 3).fragments
        shuffled = list(fragments)
        random.Random(7).shuffle(shuffled)
        self.assertEqual(decode(shuffled), ({"k": b"v"}, b"0123456789"))
        with self.assertRaises(FragmentOrderInvalid):
            decode(fragments[:1] + fragments[2:])
        with self.assertRaises(FragmentOrderInvalid):
            check_order([Fragment(f.content_hash, f.sequence_index + 1, f.size, f.data) for f in fragments])
        duplicated = fragments + [fragments[-1]]
        with self.assertRaises(FragmentOrderInvalid):
            decode(duplicated)

    def test_missing_fragment(self):
        encoded = encode({}, b"payload", 4)
        refs = encoded.refs()
        with self.assertRaises(FragmentMissing):
            decode(refs)
        available = {f.content_hash: f.data for f in encoded.fragments[:-1]}
        with self.assertRaises(FragmentMissing):
            decode(refs, resolve=available.get)
        available[encoded.fragments[-1].content_hash] = encoded.fragments[-1].data
        self.assertEqual(decode(refs, resolve=available.get), ({}, b"payload"))

    def test_tampered_fragment(self):
        encoded = encode({}, b"payload", 4)
        last = encoded.fragments[-1]
        forged = Fragment(last.content_hash, last.sequence_index, last.size, b"evil")
        with self.assertRaises(IntegrityError):
            decode(encoded.fragments[:-1] + [forged])

    def test_truncated_record(self):
        encoded = encode({}, b"payload", 4)
        header_only = [f for f in encoded.fragments if f.sequence_index < len(encoded.fragments) - 2]
        with self.assertRaises(EncodingError):
            decode(header_only)
        with self.assertRaises(EncodingError):
            decode([])

    def test_invalid_input(self):
        with self.assertRaises(EncodingError):
            encode({"k": "not bytes"}, b"", 16)
        with self.assertRaises(EncodingError):
            encode({1: b"v"}, b"", 16)
        with self.assertRaises(EncodingError):
            encode({}, "text", 16)
        for size in (0, -1, True, 1.5):
            with self.assertRaises(EncodingError):
                encode({}, b"", size)


class RevisionRecordTests(unittest.TestCase):
    def test_pack_unpack(self):
        encoded = encode({"k": b"v"}, b"payload", 4)
        revision = Revision(
            revision_number=5,
            address=Address(b"\x11" * 32),
            content_digest=encoded.digest,
            fragments=encoded.refs(),
            payload_length=encoded.payload_length,
            signatures=[(b"\x01" * 16, b"\x02" * 64)],
        )
        packed = revision.pack()
        self.assertEqual(Revision.unpack(packed), revision)

    def test_corruption_detected(self):
        encoded = encode({}, b"x", 4)
        packed = Revision(0, Address(b"\x22" * 32), encoded.digest, encoded.refs(), 1).pack()
        damaged = bytearray(packed)
        damaged[20] ^= 0x01
        with self.assertRaises(IntegrityError):
            Revision.unpack(bytes(damaged))
        with self.assertRaises(IntegrityError):
            Revision.unpack(packed[:-1])


if __name__ == "__main__":
    unittest.main()
