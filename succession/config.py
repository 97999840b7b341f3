"""
Registry configuration persisted as ``registry.yaml``.

Example::

    version: 1
    root_seed: 5f0c...e1
    hash:
      algorithm: argon2id
      salt: 9a4b...07
      time_cost: 3
      memory_cost_kib: 65536
      parallelism: 1
    fragment_size: 65536
    root_record_path: root
    store_path: target/store
    signing_key_paths:
      - keys/key_ed25519.pem
    failure_policy: fail-fast
    jobs: 1
    max_conflict_retries: 3

Relative paths are resolved against the directory holding the file.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

import yaml

from .assembler import FailurePolicy
from .constants import (
    ARGON_MEMORY_COST_KIB,
    ARGON_PARALLELISM,
    ARGON_TIME_COST,
    DEFAULT_CONFLICT_RETRIES,
    DEFAULT_FRAGMENT_SIZE,
    HASH_ARGON2ID,
)
from .errors import ConfigError, InvalidAncestry
from .kdc import HashParams, RootSeed

CONFIG_VERSION = 1


def _require_int(data: Dict[str, Any], key: str, default: int, minimum: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer, got {value!r}")
    if value < minimum:
        raise ConfigError(f"{key} must be at least {minimum}, got {value}")
    return value


def _require_str(data: Dict[str, Any], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string, got {value!r}")
    return value


def _hash_params_from_dict(data: Any) -> HashParams:
    if not isinstance(data, dict):
        raise ConfigError("hash must be a mapping")
    try:
        salt = bytes.fromhex(_require_str(data, "salt", ""))
    except ValueError as exc:
        raise ConfigError(f"hash salt is not valid hex: {exc}") from exc
    try:
        return HashParams(
            algorithm=_require_str(data, "algorithm", HASH_ARGON2ID),
            salt=salt,
            time_cost=_require_int(data, "time_cost", ARGON_TIME_COST, 1),
            memory_cost_kib=_require_int(data, "memory_cost_kib", ARGON_MEMORY_COST_KIB, 8),
            parallelism=_require_int(data, "parallelism", ARGON_PARALLELISM, 1),
        )
    except ValueError as exc:
        raise ConfigError(f"invalid hash parameters: {exc}") from exc


def _hash_params_to_dict(params: HashParams) -> Dict[str, Any]:
    return {
        "algorithm": params.algorithm,
        "salt": params.salt.hex(),
        "time_cost": params.time_cost,
        "memory_cost_kib": params.memory_cost_kib,
        "parallelism": params.parallelism,
    }


@dataclass
class RegistryConfig:
    root_seed: RootSeed
    hash: HashParams
    fragment_size: int = DEFAULT_FRAGMENT_SIZE
    root_record_path: str = "root"
    store_path: str = "target/store"
    signing_key_paths: List[str] = field(default_factory=list)
    failure_policy: FailurePolicy = FailurePolicy.FAIL_FAST
    jobs: int = 1
    max_conflict_retries: int = DEFAULT_CONFLICT_RETRIES

    @classmethod
    def generate(cls, hash_algorithm: str = HASH_ARGON2ID) -> "RegistryConfig":
        """Fresh configuration with a random root seed and salt."""
        return cls(root_seed=RootSeed.generate(), hash=HashParams.generate(hash_algorithm))

    @classmethod
    def from_dict(cls, data: Any) -> "RegistryConfig":
        if not isinstance(data, dict):
            raise ConfigError("registry config must be a mapping")
        version = data.get("version", CONFIG_VERSION)
        if version != CONFIG_VERSION:
            raise ConfigError(f"unsupported registry config version: {version!r}")
        try:
            root_seed = RootSeed.from_hex(_require_str(data, "root_seed", ""))
        except InvalidAncestry as exc:
            raise ConfigError(f"invalid root_seed: {exc}") from exc
        key_paths = data.get("signing_key_paths", [])
        if not isinstance(key_paths, list) or not all(isinstance(p, str) for p in key_paths):
            raise ConfigError("signing_key_paths must be a list of paths")
        policy_name = _require_str(data, "failure_policy", FailurePolicy.FAIL_FAST.value)
        try:
            policy = FailurePolicy(policy_name)
        except ValueError:
            choices = ", ".join(p.value for p in FailurePolicy)
            raise ConfigError(f"failure_policy must be one of {choices}, got {policy_name!r}") from None
        return cls(
            root_seed=root_seed,
            hash=_hash_params_from_dict(data.get("hash")),
            fragment_size=_require_int(data, "fragment_size", DEFAULT_FRAGMENT_SIZE, 1),
            root_record_path=_require_str(data, "root_record_path", "root"),
            store_path=_require_str(data, "store_path", "target/store"),
            signing_key_paths=list(key_paths),
            failure_policy=policy,
            jobs=_require_int(data, "jobs", 1, 1),
            max_conflict_retries=_require_int(data, "max_conflict_retries", DEFAULT_CONFLICT_RETRIES, 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": CONFIG_VERSION,
            "root_seed": self.root_seed.hex(),
            "hash": _hash_params_to_dict(self.hash),
            "fragment_size": self.fragment_size,
            "root_record_path": self.root_record_path,
            "store_path": self.store_path,
            "signing_key_paths": list(self.signing_key_paths),
            "failure_policy": self.failure_policy.value,
            "jobs": self.jobs,
            "max_conflict_retries": self.max_conflict_retries,
        }

    @classmethod
    def load(cls, path: Path) -> "RegistryConfig":
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except FileNotFoundError as exc:
            raise ConfigError(f"registry config not found: {path}") from exc
        except yaml.YAMLError as exc:
            raise ConfigError(f"cannot parse {path}: {exc}") from exc
        return cls.from_dict(data or {})

    def save(self, path: Path) -> None:
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)
