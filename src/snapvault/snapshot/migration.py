"""
One-way upgrade of snapshot directories to the current on-disk schema.

Each directory is classified from its ``snapshot.json``:

- ``NEW_AND_VERSIONED``: has ``FormatVersion``; nothing to do
- ``NEW_BUT_UNVERSIONED``: ``FileReplacements`` maps paths to hash strings;
  the version is stamped in place
- ``OLD``: ``FileReplacements`` maps stored files to lists of paths; the
  directory is rewritten into the blob store + file map layout
- ``UNKNOWN``: anything else; logged and never touched

A directory carrying the migration marker is skipped whatever its format.
Before the first ``OLD`` directory is rewritten, every ``OLD`` directory
is packed into one backup archive; if that fails the whole pass stops.
"""

import base64
import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..core.exceptions import BackupFailed, SnapVaultError
from ..core.logging import OperationContext, log_with_context
from ..core.notify import NotificationChannel
from .blob_store import BlobStore
from .file_map import path_map
from .json_io import atomic_write_json, read_json
from .pack import MigrationBackupPacker, get_backup_key
from .paths import METADATA_FILE_NAMES, SnapshotPaths
from .state import CURRENT_FORMAT_VERSION, SnapshotState


logger = logging.getLogger(__name__)


MIGRATED_DESCRIPTION = "Migrated from old format"


class SnapshotFormat(str, Enum):
    """On-disk schema of a snapshot directory."""
    UNKNOWN = "unknown"
    OLD = "old"
    NEW_BUT_UNVERSIONED = "new_but_unversioned"
    NEW_AND_VERSIONED = "new_and_versioned"


@dataclass(frozen=True)
class FormatDetection:
    """Result of classifying a metadata document."""
    format: SnapshotFormat
    document: Optional[Dict[str, Any]] = None
    reason: str = ""


def classify_document(document: Any) -> FormatDetection:
    """Classify a parsed ``snapshot.json`` document by its structure."""
    if not isinstance(document, dict):
        return FormatDetection(SnapshotFormat.UNKNOWN, reason="metadata is not a JSON object")

    if "FormatVersion" in document:
        return FormatDetection(SnapshotFormat.NEW_AND_VERSIONED, document)

    replacements = document.get("FileReplacements")
    if not isinstance(replacements, dict):
        return FormatDetection(SnapshotFormat.UNKNOWN, document, "no FileReplacements mapping")

    if not replacements:
        return FormatDetection(SnapshotFormat.NEW_BUT_UNVERSIONED, document)

    first_value = next(iter(replacements.values()))
    if isinstance(first_value, str):
        return FormatDetection(SnapshotFormat.NEW_BUT_UNVERSIONED, document)
    if isinstance(first_value, list):
        return FormatDetection(SnapshotFormat.OLD, document)

    return FormatDetection(
        SnapshotFormat.UNKNOWN, document,
        f"unexpected FileReplacements value type {type(first_value).__name__}",
    )


def detect_format(metadata_file: Path) -> FormatDetection:
    """
    Classify a ``snapshot.json`` file.

    Total: read and parse failures yield ``UNKNOWN`` instead of raising.
    """
    try:
        document = read_json(metadata_file)
    except (OSError, ValueError) as e:
        logger.warning(f"Could not determine snapshot format for {metadata_file}, assuming Unknown: {e}")
        return FormatDetection(SnapshotFormat.UNKNOWN, reason=str(e))
    return classify_document(document)


@dataclass
class MigrationReport:
    """Outcome of one migration pass."""
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    scanned: int = 0
    skipped_marked: List[str] = field(default_factory=list)
    unknown: List[str] = field(default_factory=list)
    stamped: List[str] = field(default_factory=list)
    migrated: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    backup_path: Optional[Path] = None
    backup_error: Optional[str] = None

    @property
    def changed(self) -> bool:
        return bool(self.stamped or self.migrated)

    @property
    def success(self) -> bool:
        return self.backup_error is None and not self.failed

    def summary(self) -> str:
        """Generate a human-readable summary."""
        lines = [
            "Migration Report",
            "=" * 40,
            f"Scanned: {self.scanned}",
            f"Already migrated (marker): {len(self.skipped_marked)}",
            f"Unknown format (skipped): {len(self.unknown)}",
            f"Version stamped: {len(self.stamped)}",
            f"Migrated: {len(self.migrated)}",
            f"Failed: {len(self.failed)}",
        ]
        if self.backup_path:
            lines.append(f"Backup: {self.backup_path}")
        if self.backup_error:
            lines.append(f"Backup failed: {self.backup_error}")
        for name, error in self.failed.items():
            lines.append(f"  - {name}: {error}")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "scanned": self.scanned,
            "skipped_marked": self.skipped_marked,
            "unknown": self.unknown,
            "stamped": self.stamped,
            "migrated": self.migrated,
            "failed": self.failed,
            "backup_path": str(self.backup_path) if self.backup_path else None,
            "backup_error": self.backup_error,
        }


class MigrationEngine:
    """
    Runs the migration pass over every snapshot directory of a working directory.

    Example:
        >>> engine = MigrationEngine(working_dir, notifications)
        >>> report = engine.run()
        >>> print(report.summary())
    """

    def __init__(
        self,
        working_dir: Path,
        notifications: Optional[NotificationChannel] = None,
        backup_packer: Optional[MigrationBackupPacker] = None,
    ):
        self.working_dir = Path(working_dir)
        self.notifications = notifications or NotificationChannel()
        self.backup_packer = backup_packer or MigrationBackupPacker(self.working_dir)

    @classmethod
    def from_config(cls, config, notifications: Optional[NotificationChannel] = None) -> "MigrationEngine":
        """Build an engine from a SnapVaultConfig (backup encryption included)."""
        working_dir = config.require_working_directory()
        packer = MigrationBackupPacker(
            working_dir,
            encrypt=config.backup_encrypt,
            encryption_key=get_backup_key(config.backup_key_env_var) if config.backup_encrypt else None,
        )
        return cls(working_dir, notifications, packer)

    def scan(self, report: Optional[MigrationReport] = None) -> Tuple[List[Path], List[Path]]:
        """
        Classify every snapshot directory.

        Returns:
            (directories needing migration, directories needing a version stamp)
        """
        report = report or MigrationReport()
        to_migrate: List[Path] = []
        to_update: List[Path] = []

        for child in sorted(self.working_dir.iterdir()):
            paths = SnapshotPaths.of(child)
            if not child.is_dir() or not paths.is_snapshot():
                continue

            report.scanned += 1
            if paths.is_marked_migrated():
                report.skipped_marked.append(child.name)
                continue

            detection = detect_format(paths.snapshot_file)
            if detection.format == SnapshotFormat.OLD:
                to_migrate.append(child)
            elif detection.format == SnapshotFormat.NEW_BUT_UNVERSIONED:
                to_update.append(child)
            elif detection.format == SnapshotFormat.UNKNOWN:
                logger.warning(f"Skipping snapshot {child.name} with unknown format: {detection.reason}")
                report.unknown.append(child.name)

        return to_migrate, to_update

    def run(self, manual: bool = False) -> MigrationReport:
        """
        Run one migration pass.

        Args:
            manual: True when triggered by the user; enables "nothing to do"
                notifications

        Raises:
            BackupFailed: If the pre-migration backup cannot be created; no
                directory has been modified in that case
        """
        report = MigrationReport()

        if not self.working_dir.is_dir():
            if manual:
                self.notifications.warning("Working directory is not set or does not exist. Cannot run migration.")
            report.completed_at = datetime.now(timezone.utc)
            return report

        to_migrate, to_update = self.scan(report)

        if not to_migrate and not to_update:
            if manual:
                self.notifications.info("No old snapshots found to migrate or update.")
            report.completed_at = datetime.now(timezone.utc)
            return report

        if to_migrate:
            self.notifications.info(
                f"Found {len(to_migrate)} old snapshot(s) to migrate. A backup will be created first."
            )
            try:
                report.backup_path = self.backup_packer.pack(to_migrate)
            except BackupFailed as e:
                report.backup_error = str(e)
                report.completed_at = datetime.now(timezone.utc)
                message = "Failed to create snapshot backup. Aborting migration to ensure data safety."
                logger.error(f"{message} {e}")
                self.notifications.error(f"{message}\n{e}")
                raise
            self.notifications.success(f"Created backup of {len(to_migrate)} snapshot(s).")

        for directory in to_update:
            if self.stamp_version(directory):
                report.stamped.append(directory.name)

        for directory in to_migrate:
            try:
                self.migrate_directory(directory)
                report.migrated.append(directory.name)
            except Exception as e:
                report.failed[directory.name] = str(e)
                logger.error(f"Failed to migrate snapshot at {directory}: {e}", exc_info=True)
                self.notifications.error(f"Failed to migrate snapshot at {directory}.\n{e}")

        report.completed_at = datetime.now(timezone.utc)

        parts = []
        if report.stamped:
            parts.append(f"Updated {len(report.stamped)} snapshot(s)")
        if report.migrated:
            parts.append(f"Migrated {len(report.migrated)} snapshot(s)")
        if parts:
            self.notifications.success(" and ".join(parts) + ".")
        if report.changed:
            self.notifications.snapshots_changed()

        return report

    def stamp_version(self, directory: Path) -> bool:
        """
        Add ``FormatVersion`` to a new-format snapshot, in place.

        Other keys are preserved. A snapshot with replacements but no file
        map chain gets a root node holding those replacements.
        """
        paths = SnapshotPaths.of(directory)
        try:
            document = read_json(paths.snapshot_file)
            if not isinstance(document, dict):
                raise ValueError("metadata is not a JSON object")

            document["FormatVersion"] = CURRENT_FORMAT_VERSION
            state = SnapshotState.from_dict(document)
            if state.ensure_base_node() is not None:
                document["FileMaps"] = state.chain.to_list()
                document["CurrentFileMapId"] = state.current_file_map_id

            atomic_write_json(paths.snapshot_file, document)
        except (OSError, ValueError, SnapVaultError) as e:
            logger.error(f"Failed to update snapshot {paths.name}: {e}")
            return False

        logger.debug(f"Updated {paths.name} to include format version")
        return True

    def migrate_directory(self, directory: Path) -> SnapshotState:
        """
        Rewrite an old-format snapshot directory.

        Stored files are moved into the blob store, the stored-file →
        paths table is inverted into a path → hash root node, histories are
        seeded from the legacy appearance fields, legacy files are removed,
        and the migration marker is written last.
        """
        paths = SnapshotPaths.of(directory)
        with OperationContext(operation="migrate", snapshot=paths.name):
            log_with_context(logger, logging.INFO, f"Migrating old format snapshot: {paths.name}")

            document = read_json(paths.snapshot_file)
            if not isinstance(document, dict):
                raise ValueError("metadata is not a JSON object")

            store = BlobStore(paths.files_dir, create_dirs=True)
            mapping = path_map()
            for source_name, logical_paths in (document.get("FileReplacements") or {}).items():
                source = paths.root / source_name
                if not source.is_file():
                    log_with_context(logger, logging.WARNING, f"Missing file during migration: {source}. Skipping.")
                    continue
                aliases = _legacy_aliases(logical_paths)
                if not aliases:
                    log_with_context(logger, logging.WARNING, f"No valid game paths for {source}. Skipping.")
                    continue
                if isinstance(logical_paths, list) and len(aliases) < len(logical_paths):
                    log_with_context(
                        logger, logging.WARNING,
                        f"Ignoring invalid game paths for {source_name}: {logical_paths!r}",
                    )
                blob_hash = store.import_file(source, aliases[0])
                for logical_path in aliases:
                    mapping[logical_path] = blob_hash

            state = SnapshotState.create(
                source_actor=paths.name,
                mapping=mapping,
                manipulation_string=document.get("ManipulationString") or "",
            )
            root_id = state.current_file_map_id
            state.histories.record_glamourer(
                MIGRATED_DESCRIPTION, document.get("GlamourerString") or "", root_id
            )
            state.histories.record_customize(
                MIGRATED_DESCRIPTION, _customize_as_base64(document.get("CustomizeData") or ""), root_id
            )

            state.save(paths.root)
            self._remove_legacy_entries(paths)
            paths.migration_marker.touch()

            log_with_context(
                logger, logging.INFO,
                f"Migrated snapshot {paths.name}: {len(mapping)} paths, {store.count()} blobs",
            )
        return state

    def _remove_legacy_entries(self, paths: SnapshotPaths) -> None:
        for entry in paths.root.iterdir():
            if entry.name in METADATA_FILE_NAMES or entry == paths.files_dir:
                continue
            if entry.is_dir():
                shutil.rmtree(entry)
            else:
                entry.unlink()


def _legacy_aliases(value: Any) -> List[str]:
    """Game paths of one legacy stored file: a string or a list of them."""
    if isinstance(value, str):
        return [value] if value else []
    if isinstance(value, list):
        return [item for item in value if isinstance(item, str) and item]
    return []


def _customize_as_base64(customize_data: str) -> str:
    """Legacy Customize data may be raw profile JSON or already base64."""
    if customize_data.strip().startswith("{"):
        return base64.b64encode(customize_data.encode("utf-8")).decode("ascii")
    return customize_data