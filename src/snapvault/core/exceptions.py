"""
Custom exceptions for the snapshot storage and versioning engine.
"""

from pathlib import Path
from typing import Optional, Union


PathLike = Union[str, Path]


class SnapVaultError(Exception):
    """Base exception for all snapvault errors."""
    pass


class NotASnapshot(SnapVaultError):
    """
    Directory is not a readable snapshot.

    Raised when:
    - The primary metadata file (snapshot.json) is missing
    - The metadata file cannot be parsed
    """

    def __init__(self, message: str, path: Optional[PathLike] = None):
        super().__init__(message)
        self.path = Path(path) if path is not None else None


class CorruptChain(SnapVaultError):
    """
    File map chain cannot be resolved.

    Raised when:
    - A node's parent id names no node in the chain (dangling parent)
    - Walking parent links revisits a node (cycle)
    - The chain is deeper than the resolution limit
    """

    def __init__(self, message: str, node_id: Optional[str] = None):
        super().__init__(message)
        self.node_id = node_id


class ContainerFormatError(SnapVaultError):
    """Import container is not a recognised container (bad magic or metadata)."""

    def __init__(self, message: str, path: Optional[PathLike] = None):
        super().__init__(message)
        self.path = Path(path) if path is not None else None


class UnsupportedContainerVersion(SnapVaultError):
    """Import container declares a format version other than the supported one."""

    def __init__(self, version: int, supported: int = 1):
        super().__init__(
            f"Unsupported container version {version} (supported: {supported})"
        )
        self.version = version
        self.supported = supported


class TruncatedPayload(SnapVaultError):
    """
    Fewer bytes were available than a length prefix declared.

    For file entries this is recorded and reported rather than raised; it is
    raised for the container's metadata block, which nothing can follow.
    """

    def __init__(self, message: str, expected: int = 0, actual: int = 0, entry: Optional[str] = None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual
        self.entry = entry


class BackupFailed(SnapVaultError):
    """
    Migration backup archive could not be created.

    Always aborts the whole migration pass.
    """

    def __init__(self, message: str, archive_path: Optional[PathLike] = None):
        super().__init__(message)
        self.archive_path = Path(archive_path) if archive_path is not None else None


class ConcurrentExportRejected(SnapVaultError):
    """An export was requested while another export is still running."""
    pass


class ConfigError(SnapVaultError):
    """
    Error in snapvault configuration.

    Raised when:
    - The configuration file is missing or invalid
    - The working directory is not set or does not exist
    """
    pass
