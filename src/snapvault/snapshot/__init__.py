"""
Snapshot storage and versioning.

This package provides:
- BlobStore: content-addressed storage under ``_files/``
- FileMapChain: the diff chain behind a snapshot's path -> hash mapping
- SnapshotState: metadata, chain and histories of one snapshot directory
- MigrationEngine: format detection and upgrade with backup-before-mutate
- CaptureService: recording live captures into snapshots
- SnapshotIndex / SnapshotLibrary: discovery, listing and renaming
"""

from .blob_store import BlobStore
from .capture import (
    AppearanceProvider,
    CaptureData,
    CaptureService,
    JsonCaptureProvider,
    ManipulationProvider,
)
from .file_map import FileMapChain, FileMapNode, apply_changes, diff_mappings
from .hashing import compute_blob_hash, compute_file_hash
from .index import SnapshotIndex, SnapshotLibrary
from .migration import (
    FormatDetection,
    MigrationEngine,
    MigrationReport,
    SnapshotFormat,
    detect_format,
)
from .models import (
    CustomizeHistoryEntry,
    GlamourerHistoryEntry,
    SnapshotHistories,
)
from .pack import MigrationBackupPacker
from .paths import SnapshotPaths
from .state import CURRENT_FORMAT_VERSION, SnapshotState

__all__ = [
    "BlobStore",
    "AppearanceProvider",
    "CaptureData",
    "CaptureService",
    "JsonCaptureProvider",
    "ManipulationProvider",
    "FileMapChain",
    "FileMapNode",
    "apply_changes",
    "diff_mappings",
    "compute_blob_hash",
    "compute_file_hash",
    "SnapshotIndex",
    "SnapshotLibrary",
    "FormatDetection",
    "MigrationEngine",
    "MigrationReport",
    "SnapshotFormat",
    "detect_format",
    "CustomizeHistoryEntry",
    "GlamourerHistoryEntry",
    "SnapshotHistories",
    "MigrationBackupPacker",
    "SnapshotPaths",
    "CURRENT_FORMAT_VERSION",
    "SnapshotState",
]
