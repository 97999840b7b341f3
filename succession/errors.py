from typing import Optional, Sequence


class SuccessionError(Exception):
    """Base class for registry errors.

    ``path`` is the name path of the record being processed, when known.
    """

    def __init__(self, message: str = "", *, path: Optional[Sequence[bytes]] = None):
        super().__init__(message)
        self.path = tuple(path) if path is not None else None

    def __str__(self) -> str:
        msg = super().__str__()
        if self.path is not None:
            return f"{msg} (at {format_name_path(self.path)})"
        return msg


def format_name_path(path: Sequence[bytes]) -> str:
    parts = []
    for name in path:
        try:
            parts.append(name.decode("utf-8"))
        except UnicodeDecodeError:
            parts.append(name.hex())
    # Only the root may be unnamed.
    return "/" + "/".join(p for p in parts if p)


# Derivation
class InvalidAncestry(SuccessionError):
    pass


# Encoding
class EncodingError(SuccessionError):
    pass


class DuplicateSuccessor(EncodingError):
    pass


class FragmentMissing(SuccessionError):
    pass


class FragmentOrderInvalid(SuccessionError):
    pass


class IntegrityError(SuccessionError):
    pass


# Revisions
class RevisionConflict(SuccessionError):
    pass


# Staging / publishing
class StagingIOError(SuccessionError):
    pass


class PublishIOError(SuccessionError):
    pass


class WriteCancelled(SuccessionError):
    pass


# Configuration
class ConfigError(SuccessionError):
    pass


class RegistryAlreadyExists(ConfigError):
    pass
