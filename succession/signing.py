from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Sequence, Tuple

from Cryptodome.PublicKey import ECC
from Cryptodome.Signature import eddsa

from .constants import TAG_SIGNATURE
from .errors import ConfigError
from .hashutil import blake2s_16


KEY_TYPE_ED25519 = "ed25519"


class VerifyingKey:
    def __init__(self, key: ECC.EccKey):
        self._key = key
        self.key_id = blake2s_16(key.export_key(format="DER"))

    def verify(self, message: bytes, signature: bytes) -> bool:
        verifier = eddsa.new(self._key, "rfc8032")
        try:
            verifier.verify(TAG_SIGNATURE + message, signature)
        except ValueError:
            return False
        return True

    def __eq__(self, other):
        return isinstance(other, VerifyingKey) and self.key_id == other.key_id

    def __hash__(self):
        return hash(self.key_id)


class SigningKey:
    """Ed25519 key that signs revision records."""

    key_type_name = KEY_TYPE_ED25519

    def __init__(self, key: ECC.EccKey):
        if not key.has_private():
            raise ConfigError("signing key must contain a private key")
        self._key = key
        self.verifying_key = VerifyingKey(key.public_key())

    @property
    def key_id(self) -> bytes:
        return self.verifying_key.key_id

    @classmethod
    def generate(cls) -> "SigningKey":
        return cls(ECC.generate(curve="Ed25519"))

    @classmethod
    def from_pem(cls, pem: str) -> "SigningKey":
        try:
            key = ECC.import_key(pem)
        except (ValueError, IndexError, TypeError) as exc:
            raise ConfigError(f"cannot parse signing key: {exc}") from exc
        if key.curve.lower() != KEY_TYPE_ED25519:
            raise ConfigError(f"unsupported signing key curve: {key.curve}")
        return cls(key)

    @classmethod
    def load(cls, path: Path) -> "SigningKey":
        return cls.from_pem(Path(path).read_text(encoding="ascii"))

    def to_pem(self) -> str:
        return self._key.export_key(format="PEM")

    def sign(self, message: bytes) -> bytes:
        return eddsa.new(self._key, "rfc8032").sign(TAG_SIGNATURE + message)

    def __eq__(self, other):
        return isinstance(other, SigningKey) and self.key_id == other.key_id

    def __hash__(self):
        return hash(self.key_id)


def sign_all(keys: Iterable[SigningKey], message: bytes) -> List[Tuple[bytes, bytes]]:
    return [(k.key_id, k.sign(message)) for k in keys]


def any_valid(keys: Sequence[VerifyingKey], message: bytes, signatures: Sequence[Tuple[bytes, bytes]]) -> bool:
    by_id = {k.key_id: k for k in keys}
    for key_id, signature in signatures:
        key = by_id.get(key_id)
        if key is not None and key.verify(message, signature):
            return True
    return False
