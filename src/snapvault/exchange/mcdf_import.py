"""
Import an MCDF container as a new snapshot.
"""

import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..core.exceptions import TruncatedPayload
from ..core.logging import OperationContext, log_with_context
from ..core.notify import NotificationChannel
from ..snapshot.blob_store import BlobStore
from ..snapshot.file_map import path_map
from ..snapshot.hashing import hashes_equal
from ..snapshot.paths import SnapshotPaths, sanitize_directory_name
from ..snapshot.state import SnapshotState
from .container import Container, read_container


logger = logging.getLogger(__name__)


IMPORTED_DESCRIPTION = "Imported from MCDF"


@dataclass
class ImportResult:
    """Outcome of a container import."""
    snapshot_path: Path
    root_node_id: Optional[str] = None
    blob_count: int = 0
    path_count: int = 0
    skipped_empty: int = 0
    file_swaps: int = 0
    truncated: List[TruncatedPayload] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return not self.truncated

    def to_dict(self) -> Dict[str, Any]:
        return {
            "snapshot_path": str(self.snapshot_path),
            "root_node_id": self.root_node_id,
            "blob_count": self.blob_count,
            "path_count": self.path_count,
            "skipped_empty": self.skipped_empty,
            "file_swaps": self.file_swaps,
            "truncated": [
                {"entry": t.entry, "expected": t.expected, "actual": t.actual} for t in self.truncated
            ],
        }


class McdfImporter:
    """
    Creates snapshots from MCDF containers.

    A same-named snapshot directory is replaced. On failure the error is
    reported and re-raised; whatever was written so far stays on disk.
    """

    def __init__(self, working_dir: Path, notifications: Optional[NotificationChannel] = None):
        self.working_dir = Path(working_dir)
        self.notifications = notifications or NotificationChannel()

    def import_file(self, container_path: Path) -> ImportResult:
        container_path = Path(container_path)
        try:
            with OperationContext(operation="import", snapshot=container_path.name):
                container = read_container(container_path)
                log_with_context(logger, logging.DEBUG, f"Read Mare Chara File. Version: {container.version}")
                result = self._import(container)
        except Exception as e:
            self.notifications.error(f"Failed during MCDF extraction for file: {container_path.name}\n{e}")
            logger.error(f"Failed during MCDF extraction for file: {container_path.name}: {e}", exc_info=True)
            raise

        self.notifications.success(
            f"Successfully imported '{container_path.name}' as new snapshot '{result.snapshot_path.name}'."
        )
        self.notifications.snapshots_changed()
        return result

    def _import(self, container: Container) -> ImportResult:
        metadata = container.metadata
        paths = SnapshotPaths.of(self._prepare_directory(metadata.description))
        result = ImportResult(snapshot_path=paths.root, file_swaps=len(metadata.file_swaps))

        store = BlobStore(paths.files_dir, create_dirs=True)
        mapping = self._extract_files(container, store, result)

        state = SnapshotState.create(
            source_actor=paths.name,
            mapping=mapping,
            manipulation_string=metadata.manipulation_data,
        )
        result.root_node_id = state.current_file_map_id
        result.path_count = len(mapping)

        state.histories.record_glamourer(IMPORTED_DESCRIPTION, metadata.glamourer_data, result.root_node_id)
        state.histories.record_customize(IMPORTED_DESCRIPTION, metadata.customize_plus_data, result.root_node_id)
        state.save(paths.root)

        log_with_context(
            logger, logging.INFO,
            f"Imported {result.blob_count} blobs, {result.path_count} paths into {paths.name}",
        )
        return result

    def _prepare_directory(self, description: str) -> Path:
        name = sanitize_directory_name(description)
        if not name:
            name = f"MCDF_Import_{datetime.now():%Y%m%d%H%M%S%f}"

        snapshot_dir = self.working_dir / name
        if snapshot_dir.exists():
            logger.debug(f"Snapshot {name} from MCDF already existed, deleting")
            shutil.rmtree(snapshot_dir)
        snapshot_dir.mkdir(parents=True)
        return snapshot_dir

    def _extract_files(self, container: Container, store: BlobStore, result: ImportResult):
        """
        Write each complete file entry to the blob store.

        Entries are read back to back from the payload region. A short read
        means every later boundary is unknown, so extraction stops there.
        """
        mapping = path_map()
        hashes = set()
        payload = container.payload
        offset = 0

        for entry in container.metadata.files:
            if entry.length == 0:
                result.skipped_empty += 1
                continue

            chunk = payload[offset:offset + entry.length]
            if len(chunk) != entry.length:
                truncated = TruncatedPayload(
                    f"MCDF Read Error: Expected {entry.length} bytes, got {len(chunk)}. File may be corrupt.",
                    expected=entry.length,
                    actual=len(chunk),
                    entry=entry.label,
                )
                result.truncated.append(truncated)
                log_with_context(logger, logging.ERROR, f"{truncated} ({entry.label})")
                self.notifications.warning(
                    f"Container entry '{entry.label}' is truncated; remaining files were not extracted."
                )
                break
            offset += entry.length

            blob_hash = store.put(chunk, entry.game_paths[0] if entry.game_paths else None)
            if entry.hash and not hashes_equal(entry.hash, blob_hash):
                logger.debug(f"Declared hash {entry.hash} differs from content hash {blob_hash}")
            hashes.add(blob_hash)

            for game_path in entry.game_paths:
                mapping[game_path] = blob_hash

        result.blob_count = len(hashes)
        return mapping
