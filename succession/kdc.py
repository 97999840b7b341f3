"""
Key derivation chain: turns a record's ancestry into its storage address.

A record is identified by its parent context (the registry's root seed for
top-level records, otherwise the address of the parent's revision) and its
name. Deriving an address happens in two domain-separated steps:

1. Record key hash. The parent context and name are hashed with the
   registry's memory-hard hash (Argon2id, or keyed BLAKE2b where speed
   matters more than brute-force resistance) under the registry-wide salt.
   The result is the secret every revision of the record shares.
2. Revision address. HKDF-SHA256 expands the record key hash with the
   revision number in its context. Addresses of different revisions are
   unlinkable without the record key hash, which in turn needs the parent
   context and the name.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Union

from argon2.low_level import Type as ArgonType, hash_secret_raw
from Cryptodome.Hash import BLAKE2b, SHA256
from Cryptodome.Protocol.KDF import HKDF

from .constants import (
    ADDRESS_SIZE,
    ARGON_MEMORY_COST_KIB,
    ARGON_PARALLELISM,
    ARGON_TIME_COST,
    HASH_ARGON2ID,
    HASH_BLAKE2B,
    HASH_SALT_SIZE,
    MAX_REVISION,
    PARENT_ADDRESS,
    PARENT_ROOT_SEED,
    ROOT_SEED_SIZE,
    TAG_RECORD_KEY,
    TAG_REVISION,
    new_random_bytes,
)
from .errors import InvalidAncestry
from .tlv import tlv


HASHED_KEY_SIZE = 32

_U64 = struct.Struct(">Q")


@dataclass(frozen=True)
class RootSeed:
    """Registry-wide seed standing in for the parent of top-level records."""
    value: bytes

    def __post_init__(self):
        if not isinstance(self.value, bytes) or len(self.value) != ROOT_SEED_SIZE:
            raise InvalidAncestry(f"root seed must be {ROOT_SEED_SIZE} bytes")

    @classmethod
    def generate(cls) -> "RootSeed":
        return cls(new_random_bytes(ROOT_SEED_SIZE))

    @classmethod
    def from_hex(cls, text: str) -> "RootSeed":
        try:
            return cls(bytes.fromhex(text))
        except ValueError as exc:
            raise InvalidAncestry(f"root seed is not valid hex: {exc}") from exc

    def hex(self) -> str:
        return self.value.hex()


@dataclass(frozen=True)
class Address:
    """Derived address of one record revision."""
    value: bytes

    def __post_init__(self):
        if not isinstance(self.value, bytes) or len(self.value) != ADDRESS_SIZE:
            raise InvalidAncestry(f"address must be {ADDRESS_SIZE} bytes")

    @classmethod
    def from_hex(cls, text: str) -> "Address":
        try:
            return cls(bytes.fromhex(text))
        except ValueError as exc:
            raise InvalidAncestry(f"address is not valid hex: {exc}") from exc

    def hex(self) -> str:
        return self.value.hex()

    def __str__(self) -> str:
        return self.hex()


Parent = Union[RootSeed, Address]


@dataclass(frozen=True)
class HashParams:
    algorithm: str = HASH_ARGON2ID
    salt: bytes = b"\x00" * HASH_SALT_SIZE
    time_cost: int = ARGON_TIME_COST
    memory_cost_kib: int = ARGON_MEMORY_COST_KIB
    parallelism: int = ARGON_PARALLELISM

    def __post_init__(self):
        if self.algorithm not in (HASH_ARGON2ID, HASH_BLAKE2B):
            raise ValueError(f"unsupported record key hash: {self.algorithm}")
        if not isinstance(self.salt, bytes) or len(self.salt) != HASH_SALT_SIZE:
            raise ValueError(f"hash salt must be {HASH_SALT_SIZE} bytes")
        if self.algorithm == HASH_ARGON2ID:
            if self.time_cost < 1 or self.parallelism < 1:
                raise ValueError("Argon2 time cost and parallelism must be positive")
            if self.memory_cost_kib < 8 * self.parallelism:
                raise ValueError("Argon2 memory cost must be at least 8 KiB per lane")

    @classmethod
    def generate(cls, algorithm: str = HASH_ARGON2ID) -> "HashParams":
        return cls(algorithm=algorithm, salt=new_random_bytes(HASH_SALT_SIZE))


@dataclass(frozen=True)
class HashedRecordKey:
    """Secret shared by every revision of one logical record."""
    value: bytes

    def derive_address(self, revision_number: int) -> Address:
        _check_revision_number(revision_number)
        okm = HKDF(
            self.value,
            ADDRESS_SIZE,
            None,
            SHA256,
            context=TAG_REVISION + _U64.pack(revision_number),
        )
        return Address(okm)


def _check_revision_number(revision_number: int) -> None:
    if isinstance(revision_number, bool) or not isinstance(revision_number, int):
        raise InvalidAncestry("revision number must be an integer")
    if revision_number < 0 or revision_number > MAX_REVISION:
        raise InvalidAncestry(f"revision number out of range: {revision_number}")


def _record_key_material(parent: Parent, name: bytes) -> bytes:
    if isinstance(parent, RootSeed):
        kind = PARENT_ROOT_SEED
    elif isinstance(parent, Address):
        kind = PARENT_ADDRESS
    else:
        raise InvalidAncestry(f"parent must be a RootSeed or an Address, not {type(parent).__name__}")
    if not isinstance(name, bytes):
        raise InvalidAncestry("record name must be bytes")
    # Only top-level records may be unnamed; a nameless successor could not be
    # told apart from its siblings by a reader.
    if not name and kind == PARENT_ADDRESS:
        raise InvalidAncestry("record name may not be empty below another record")
    return TAG_RECORD_KEY + bytes([kind]) + tlv(1, parent.value) + tlv(2, name)


class KeyDerivationChain:
    """Derives record addresses from (parent, name, revision number)."""

    def __init__(self, params: HashParams):
        self.params = params

    def hash_key(self, parent: Parent, name: bytes) -> HashedRecordKey:
        material = _record_key_material(parent, name)
        p = self.params
        if p.algorithm == HASH_ARGON2ID:
            digest = hash_secret_raw(
                material,
                p.salt,
                time_cost=p.time_cost,
                memory_cost=p.memory_cost_kib,
                parallelism=p.parallelism,
                hash_len=HASHED_KEY_SIZE,
                type=ArgonType.ID,
            )
        else:
            h = BLAKE2b.new(digest_bits=HASHED_KEY_SIZE * 8, key=p.salt)
            h.update(material)
            digest = h.digest()
        return HashedRecordKey(digest)

    def derive(self, parent: Parent, name: bytes, revision_number: int) -> Address:
        _check_revision_number(revision_number)
        return self.hash_key(parent, name).derive_address(revision_number)
