import os


# Magic and version
REVISION_MAGIC = b"SUCCREV\x00"   # 8 bytes: "SUCCREV\0"
HEADER_MAGIC = b"SUCCHDR\x00"     # 8 bytes: "SUCCHDR\0"

VERSION_MAJOR = 1
VERSION_MINOR = 0

# Widths
ADDRESS_SIZE = 32
ROOT_SEED_SIZE = 32
HASH_SALT_SIZE = 16
CONTENT_HASH_SIZE = 32

# Domain-separation tags for each derivation level
TAG_RECORD_KEY = b"succession.record-key\x00"
TAG_REVISION = b"succession.revision\x00"
TAG_SIGNATURE = b"succession.revision-signature\x00"

# Parent kinds mixed into the record key
PARENT_ROOT_SEED = 0
PARENT_ADDRESS = 1

# Record key hash algorithms
HASH_ARGON2ID = "argon2id"
HASH_BLAKE2B = "blake2b"

# Argon2id defaults for record key hashing
ARGON_TIME_COST = 3
ARGON_MEMORY_COST_KIB = 64 * 1024  # 64 MiB
ARGON_PARALLELISM = 1

# The first revision of every record
FIRST_REVISION = 0
MAX_REVISION = (1 << 64) - 1

DEFAULT_FRAGMENT_SIZE = 64 * 1024  # 64 KiB
DEFAULT_CONFLICT_RETRIES = 3

# Source directory layout
REGISTRY_CONFIG_NAME = "registry.yaml"
RECORD_CONFIG_NAME = "record.yaml"
DATA_FILE_STEM = "data"


def new_random_bytes(n: int) -> bytes:
    return os.urandom(n)
