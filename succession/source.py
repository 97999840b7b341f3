"""
Source directories: the on-disk description of a registry to publish.

A source directory holds ``registry.yaml``, the signing keys it names, and a
record tree rooted at ``root_record_path``. Each directory in the tree is one
record; its subdirectories are its successors. A record directory may hold:

- ``record.yaml`` with ``name`` and ``metadata`` (string values, stored as
  UTF-8). The root record must be unnamed. A missing ``record.yaml`` is
  written on first load with the directory name (empty for the root) and a
  ``created_at`` taken from the directory birth time, or the load time where
  the filesystem keeps none.
- at most one ``data.*`` file, the record payload. No data file means an
  empty payload.
"""

from __future__ import annotations

import datetime
import fcntl
import logging
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

import yaml

from .assembler import LogicalNode
from .config import RegistryConfig
from .constants import DATA_FILE_STEM, HASH_ARGON2ID, RECORD_CONFIG_NAME, REGISTRY_CONFIG_NAME
from .errors import ConfigError, DuplicateSuccessor, RegistryAlreadyExists
from .fsstore import DirectoryStore
from .kdc import KeyDerivationChain
from .pipeline import Pipeline
from .signing import SigningKey

logger = logging.getLogger(__name__)

KEYS_DIR = "keys"

_TEMPLATE: Dict[str, str] = {
    "root/record.yaml": "name: ''\nmetadata:\n  title: My registry\n",
    "root/data.md": "# My registry\n\nThis record is shown first when the registry is opened.\n",
    "root/about/record.yaml": "name: about\nmetadata:\n  content_type: text/plain\n",
    "root/about/data.txt": "Describe the registry here.\n",
    "root/releases/data.txt": "Each subdirectory of a record becomes one of its successors.\n",
}


def _rfc3339(timestamp: float) -> str:
    return datetime.datetime.fromtimestamp(timestamp, tz=datetime.timezone.utc).isoformat(timespec="seconds")


def _directory_created_at(path: Path) -> str:
    # Without a birth time, the first time the record is seen counts as its creation.
    birthtime = getattr(path.stat(), "st_birthtime", None)
    if birthtime is None:
        return _rfc3339(time.time())
    return _rfc3339(birthtime)


def _write_record_config(config_path: Path, name: str, metadata: Dict[str, str]) -> None:
    try:
        with open(config_path, "w", encoding="utf-8") as f:
            yaml.safe_dump({"name": name, "metadata": metadata}, f, default_flow_style=False, sort_keys=False)
    except OSError as exc:
        raise ConfigError(f"cannot write {config_path}: {exc}") from exc
    logger.info("Wrote %s", config_path)


def _metadata_value(key: str, value: Any, where: Path) -> bytes:
    # YAML turns bare timestamps and numbers into native types.
    if isinstance(value, (datetime.date, datetime.datetime)):
        value = value.isoformat()
    elif isinstance(value, bool):
        value = "true" if value else "false"
    elif isinstance(value, (int, float)):
        value = str(value)
    if not isinstance(value, str):
        raise ConfigError(f"{where}: metadata value for {key!r} must be a string")
    return value.encode("utf-8")


def _load_record_config(directory: Path, is_root: bool) -> Tuple[bytes, Dict[str, bytes]]:
    config_path = directory / RECORD_CONFIG_NAME
    try:
        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        # Record the creation time once so later loads see the same metadata.
        name = "" if is_root else directory.name
        created_at = _directory_created_at(directory)
        _write_record_config(config_path, name, {"created_at": created_at})
        return name.encode("utf-8"), {"created_at": created_at.encode("utf-8")}
    except yaml.YAMLError as exc:
        raise ConfigError(f"cannot parse {config_path}: {exc}") from exc
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path}: expected a mapping")
    name = data.get("name", "" if is_root else directory.name)
    if not isinstance(name, str):
        raise ConfigError(f"{config_path}: name must be a string")
    if is_root and name:
        raise ConfigError(f"{config_path}: the root record must be unnamed")
    raw_metadata = data.get("metadata") or {}
    if not isinstance(raw_metadata, dict):
        raise ConfigError(f"{config_path}: metadata must be a mapping")
    metadata = {}
    for key, value in raw_metadata.items():
        if not isinstance(key, str):
            raise ConfigError(f"{config_path}: metadata keys must be strings")
        metadata[key] = _metadata_value(key, value, config_path)
    return name.encode("utf-8"), metadata


def _find_data_file(directory: Path) -> Optional[Path]:
    candidates = [p for p in directory.iterdir() if p.is_file() and p.stem == DATA_FILE_STEM]
    if len(candidates) > 1:
        names = ", ".join(sorted(p.name for p in candidates))
        raise ConfigError(f"{directory}: multiple data files ({names}), only one may exist")
    return candidates[0] if candidates else None


def load_record_tree(directory: Path, is_root: bool = True) -> LogicalNode:
    """Read a record directory and its successors into a LogicalNode tree."""
    name, metadata = _load_record_config(directory, is_root)
    data_file = _find_data_file(directory)
    payload = data_file.read_bytes() if data_file is not None else b""
    node = LogicalNode(name=name, metadata=metadata, payload=payload)
    seen = set()
    for child_dir in sorted(p for p in directory.iterdir() if p.is_dir()):
        child = load_record_tree(child_dir, is_root=False)
        if child.name in seen:
            raise DuplicateSuccessor(f"{directory}: more than one successor named {child.name!r}")
        seen.add(child.name)
        node.add(child)
    return node


class SourceDirectory:
    def __init__(self, path: Path, config: RegistryConfig, signing_keys: List[SigningKey]):
        self.path = Path(path)
        self.config = config
        self.signing_keys = signing_keys

    @property
    def config_path(self) -> Path:
        return self.path / REGISTRY_CONFIG_NAME

    @property
    def root_record_path(self) -> Path:
        return self.path / self.config.root_record_path

    @property
    def store_path(self) -> Path:
        return self.path / self.config.store_path

    @classmethod
    def generate(cls, path, overwrite: bool = False, hash_algorithm: str = HASH_ARGON2ID) -> "SourceDirectory":
        """Create a new source directory with fresh keys and a template record tree."""
        path = Path(path)
        if path.exists():
            if not path.is_dir():
                raise ConfigError(f"not a directory: {path}")
            if not overwrite and any(path.iterdir()):
                raise RegistryAlreadyExists(f"directory is not empty: {path}")
        path.mkdir(parents=True, exist_ok=True)

        for rel, text in _TEMPLATE.items():
            target = path / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(text, encoding="utf-8")

        key = SigningKey.generate()
        key_rel = f"{KEYS_DIR}/key_{key.key_type_name}.pem"
        key_path = path / key_rel
        key_path.parent.mkdir(parents=True, exist_ok=True)
        # Owner-only permissions.
        fd = os.open(str(key_path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="ascii") as fh:
            fh.write(key.to_pem())

        config = RegistryConfig.generate(hash_algorithm)
        config.signing_key_paths = [key_rel]
        config.save(path / REGISTRY_CONFIG_NAME)
        logger.info("Created source directory %s (signing key %s)", path, key.key_id.hex())
        return cls(path, config, [key])

    @classmethod
    def load(cls, path) -> "SourceDirectory":
        path = Path(path)
        config = RegistryConfig.load(path / REGISTRY_CONFIG_NAME)
        keys = []
        for rel in config.signing_key_paths:
            try:
                keys.append(SigningKey.load(path / rel))
            except OSError as exc:
                raise ConfigError(f"cannot read signing key {rel}: {exc}") from exc
        return cls(path, config, keys)

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold an exclusive lock on the registry config for the duration of a write."""
        with open(self.config_path, "rb") as fh:
            try:
                fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError as exc:
                raise ConfigError(f"registry {self.path} is in use by another process") from exc
            try:
                yield
            finally:
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)

    def load_root_record(self) -> LogicalNode:
        root = self.root_record_path
        if not root.is_dir():
            raise ConfigError(f"root record directory not found: {root}")
        return load_record_tree(root)

    def open_store(self) -> DirectoryStore:
        return DirectoryStore(self.store_path)

    def key_derivation_chain(self) -> KeyDerivationChain:
        return KeyDerivationChain(self.config.hash)

    def pipeline(self, store=None) -> Pipeline:
        return Pipeline(
            store if store is not None else self.open_store(),
            self.key_derivation_chain(),
            fragment_size=self.config.fragment_size,
            signing_keys=self.signing_keys,
            max_conflict_retries=self.config.max_conflict_retries,
        )
