"""
On-disk layout of a snapshot directory.

    {working_dir}/{snapshot_name}/
        snapshot.json             # SnapshotState metadata
        glamourer_history.json    # appearance history (Glamourer)
        customize_history.json    # appearance history (Customize)
        .migrated                 # migration marker (empty)
        _files/
            {HASH}{ext}           # content-addressed blobs
"""

from dataclasses import dataclass
from pathlib import Path


SNAPSHOT_FILE_NAME = "snapshot.json"
GLAMOURER_HISTORY_FILE_NAME = "glamourer_history.json"
CUSTOMIZE_HISTORY_FILE_NAME = "customize_history.json"
FILES_SUBDIRECTORY = "_files"
DATA_FILE_EXTENSION = ".dat"
MIGRATION_MARKER_FILE_NAME = ".migrated"

METADATA_FILE_NAMES = frozenset({
    SNAPSHOT_FILE_NAME,
    GLAMOURER_HISTORY_FILE_NAME,
    CUSTOMIZE_HISTORY_FILE_NAME,
    MIGRATION_MARKER_FILE_NAME,
})


@dataclass(frozen=True)
class SnapshotPaths:
    """Resolved paths for one snapshot directory."""
    root: Path

    @classmethod
    def of(cls, snapshot_dir) -> "SnapshotPaths":
        return cls(Path(snapshot_dir))

    @property
    def name(self) -> str:
        return self.root.name

    @property
    def snapshot_file(self) -> Path:
        return self.root / SNAPSHOT_FILE_NAME

    @property
    def glamourer_history_file(self) -> Path:
        return self.root / GLAMOURER_HISTORY_FILE_NAME

    @property
    def customize_history_file(self) -> Path:
        return self.root / CUSTOMIZE_HISTORY_FILE_NAME

    @property
    def files_dir(self) -> Path:
        return self.root / FILES_SUBDIRECTORY

    @property
    def migration_marker(self) -> Path:
        return self.root / MIGRATION_MARKER_FILE_NAME

    def is_snapshot(self) -> bool:
        return self.snapshot_file.is_file()

    def is_marked_migrated(self) -> bool:
        return self.migration_marker.exists()


_INVALID_NAME_CHARS = set('<>:"/\\|?*') | {chr(c) for c in range(32)}


def sanitize_directory_name(name: str) -> str:
    """Replace characters invalid in directory names and trim trailing dots/spaces."""
    cleaned = "".join("_" if ch in _INVALID_NAME_CHARS else ch for ch in (name or "").strip())
    return cleaned.rstrip(" .")


def create_unique_directory(parent: Path, name: str) -> Path:
    """Create ``parent/name``, or ``name_1``, ``name_2``... when it is taken."""
    candidate = Path(parent) / name
    counter = 1
    while candidate.exists():
        candidate = Path(parent) / f"{name}_{counter}"
        counter += 1
    candidate.mkdir(parents=True)
    return candidate
