"""
Succession: a recursive, content-derived record registry.

Features:

- Record addresses derived from (parent, name, revision) with Argon2id record
  key hashing and HKDF-SHA256 revision expansion; unguessable without ancestry.
- Canonical record serialization split into content-addressed fragments,
  deduplicated across the whole store.
- Append-only revision chains with Ed25519-signed revision records.
- Staged writes promoted atomically, with recovery of interrupted commits.
- Tree assembly over a logical record tree, sequential or with parallel siblings.

Stores are pluggable: an in-memory store for tests and a directory store with
fsync'd, link-based publication for durable registries.
"""

__version__ = "0.1"

__all__ = [
    "kdc",
    "fragments",
    "revisions",
    "store",
    "fsstore",
    "pipeline",
    "assembler",
    "config",
    "source",
]

# The programmatic entry point is succession.assembler.build(); the CLI
# functions in succession.cli (cmd_new/cmd_make/...) take normal parameters.
