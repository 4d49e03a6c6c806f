"""Exception types raised by module_ingest.

Every failure surfaced to callers derives from ModuleIngestError so the
scheduler can map outcomes to status codes without catching bare
exceptions.
"""

from __future__ import annotations


class ModuleIngestError(Exception):
    """Base exception for module_ingest errors."""

    pass


class NotFoundError(ModuleIngestError, LookupError):
    """A lookup or record call named a version that is not in the store."""

    def __init__(self, module_path: str, version: str) -> None:
        super().__init__(f"Version not found: {module_path}@{version}")
        self.module_path = module_path
        self.version = version


class PersistenceError(ModuleIngestError):
    """The state database could not be reached or a write failed."""

    pass


class SizeExceededError(ModuleIngestError):
    """An archive entry is (or expands to) more bytes than allowed."""

    def __init__(self, name: str, size: int, limit: int) -> None:
        """Initialize with the offending entry and sizes.

        Args:
            name: Archive entry name.
            size: Declared or observed uncompressed size in bytes.
            limit: The limit that was exceeded.
        """
        super().__init__(f"{name!r}: size {size} exceeds limit {limit}")
        self.name = name
        self.size = size
        self.limit = limit


class DecodeError(ModuleIngestError):
    """An archive or archive entry is unreadable or corrupt."""

    pass


class EntryOpenError(DecodeError):
    """An archive entry could not be opened for reading."""

    pass
