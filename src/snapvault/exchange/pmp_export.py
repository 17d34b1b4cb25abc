"""
Export a snapshot as a Penumbra mod pack (``.pmp``).

A mod pack is a ZIP archive holding::

    meta.json           mod metadata
    default_mod.json    logical path -> archive file manifest + manipulations
    files/<HASH><ext>   blob copies
"""

import json
import logging
import threading
import zipfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..config.config_loader import DEFAULT_EXPORT_AUTHOR
from ..core.exceptions import ConcurrentExportRejected, CorruptChain
from ..core.logging import OperationContext, log_with_context
from ..core.notify import NotificationChannel
from ..snapshot.blob_store import BlobStore, preferred_extension
from ..snapshot.file_map import path_map
from ..snapshot.paths import DATA_FILE_EXTENSION, SnapshotPaths
from ..snapshot.state import SnapshotState
from .dependencies import expand_material_dependencies
from .manipulations import convert_manipulations


logger = logging.getLogger(__name__)


META_ENTRY = "meta.json"
DEFAULT_MOD_ENTRY = "default_mod.json"
FILES_PREFIX = "files"
PMP_EXTENSION = ".pmp"


def build_mod_metadata(
    name: str, author: str = DEFAULT_EXPORT_AUTHOR, tags: Optional[List[str]] = None
) -> Dict[str, Any]:
    return {
        "FileVersion": 3,
        "Name": name,
        "Author": author,
        "Description": f"Exported from SnapVault on {datetime.now(timezone.utc):%Y-%m-%d %H:%M:%S} UTC",
        "Image": "",
        "Version": "1.0.0",
        "Website": "",
        "ModTags": list(tags or []),
        "DefaultPreferredItems": [],
    }


def build_default_mod(files: Dict[str, str], manipulations: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "Name": "Default",
        "Description": "",
        "Files": files,
        "FileSwaps": {},
        "Manipulations": manipulations,
    }


def archive_file_name(blob_hash: str, existing_name: str, logical_paths: Iterable[str]) -> str:
    """
    File name of a blob inside the archive.

    Keeps a meaningful existing extension, else takes the first one a
    logical path provides, else falls back to ``.dat``.
    """
    existing_ext = Path(existing_name).suffix.lower()
    if existing_ext and existing_ext != DATA_FILE_EXTENSION:
        return blob_hash + existing_ext

    for logical_path in logical_paths:
        ext = preferred_extension(logical_path)
        if ext != DATA_FILE_EXTENSION:
            return blob_hash + ext

    return blob_hash + (existing_ext or DATA_FILE_EXTENSION)


@dataclass
class ExportResult:
    archive_path: Path
    file_count: int
    path_count: int
    manipulation_count: int


class PmpExporter:
    """
    Writes mod packs from snapshots.

    Only one export runs at a time per exporter; a request made while one
    is in progress is rejected, not queued.
    """

    def __init__(
        self,
        working_dir: Path,
        notifications: Optional[NotificationChannel] = None,
        author: str = DEFAULT_EXPORT_AUTHOR,
    ):
        self.working_dir = Path(working_dir)
        self.notifications = notifications or NotificationChannel()
        self.author = author
        self.is_exporting = False
        self._guard = threading.Lock()

    def _acquire(self) -> None:
        with self._guard:
            if self.is_exporting:
                self.notifications.warning("An export is already in progress.")
                raise ConcurrentExportRejected("An export is already in progress.")
            self.is_exporting = True

    def export(
        self,
        snapshot_dir: Path,
        node_id: Optional[str] = None,
        output_path: Optional[Path] = None,
        mapping_override: Optional[Mapping[str, str]] = None,
        manipulation_override: Optional[str] = None,
        selection: Optional[Iterable[str]] = None,
    ) -> ExportResult:
        """
        Export a snapshot.

        Args:
            snapshot_dir: Snapshot directory
            node_id: File map node to export (default: current)
            output_path: Archive path (default: ``<working_dir>/<name>.pmp``)
            mapping_override: Mapping used instead of chain resolution
            manipulation_override: Manipulation payload used instead of the node's
            selection: Subset of logical paths to export; materials pull in
                the textures they reference

        Raises:
            ConcurrentExportRejected: If another export is running
        """
        self._acquire()
        snapshot_dir = Path(snapshot_dir)
        try:
            with OperationContext(operation="export", snapshot=snapshot_dir.name, node_id=node_id):
                result = self._export(
                    SnapshotPaths.of(snapshot_dir), node_id, output_path,
                    mapping_override, manipulation_override, selection,
                )
            self.notifications.success(f"Successfully exported {snapshot_dir.name} to {result.archive_path}")
            return result
        except Exception as e:
            self.notifications.error(f"PMP export failed: {e}")
            logger.error(f"PMP export failed: {e}", exc_info=True)
            raise
        finally:
            self.is_exporting = False

    def _export(
        self,
        paths: SnapshotPaths,
        node_id: Optional[str],
        output_path: Optional[Path],
        mapping_override: Optional[Mapping[str, str]],
        manipulation_override: Optional[str],
        selection: Optional[Iterable[str]],
    ) -> ExportResult:
        state = SnapshotState.load(paths.root)

        if mapping_override is not None:
            mapping = path_map(mapping_override)
        else:
            try:
                mapping = state.resolve_node(node_id)
            except CorruptChain as e:
                log_with_context(logger, logging.WARNING, f"Could not resolve file map, exporting no files: {e}")
                mapping = path_map()

        if manipulation_override is not None:
            manipulation = manipulation_override
        else:
            manipulation = state.resolve_manipulation(node_id)

        if selection is not None:
            wanted = expand_material_dependencies(selection, mapping, paths.files_dir)
            wanted_keys = {path.lower() for path in wanted}
            mapping = path_map({k: v for k, v in mapping.items() if k.lower() in wanted_keys})
            log_with_context(logger, logging.DEBUG, f"Selection expanded to {len(mapping)} paths")

        output_path = Path(output_path) if output_path else self.working_dir / f"{paths.name}{PMP_EXTENSION}"
        output_path.parent.mkdir(parents=True, exist_ok=True)

        manipulations = convert_manipulations(manipulation)
        files: Dict[str, str] = {}

        with zipfile.ZipFile(output_path, "w", zipfile.ZIP_DEFLATED) as archive:
            archive.writestr(META_ENTRY, json.dumps(build_mod_metadata(paths.name, self.author), indent=2))
            file_count = add_snapshot_files(archive, paths.files_dir, mapping, files)
            archive.writestr(DEFAULT_MOD_ENTRY, json.dumps(build_default_mod(files, manipulations), indent=2))

        log_with_context(
            logger, logging.INFO,
            f"Exported {file_count} files for {len(files)} paths to {output_path}",
        )
        return ExportResult(
            archive_path=output_path,
            file_count=file_count,
            path_count=len(files),
            manipulation_count=len(manipulations),
        )


def add_snapshot_files(
    archive: zipfile.ZipFile,
    files_dir: Path,
    mapping: Mapping[str, str],
    files: Dict[str, str],
) -> int:
    """
    Copy every physical blob referenced by ``mapping`` into ``archive``.

    ``files`` receives the manifest: logical path -> ``files\\<name>``.

    Returns:
        Number of blobs written
    """
    paths_by_hash: Dict[str, List[str]] = {}
    for logical_path, blob_hash in mapping.items():
        if blob_hash:
            paths_by_hash.setdefault(blob_hash.upper(), []).append(logical_path)

    store = BlobStore(files_dir)
    exported = set()
    for blob_hash, blob_path in store.iter_blobs():
        key = blob_hash.upper()
        logical_paths = paths_by_hash.get(key)
        if not logical_paths or key in exported:
            continue
        exported.add(key)

        name = archive_file_name(blob_hash, blob_path.name, logical_paths)
        preferred = files_dir / name
        source = preferred if preferred.is_file() else blob_path
        archive_name = f"{FILES_PREFIX}/{name}"
        archive.write(source, archive_name)

        for logical_path in logical_paths:
            files[logical_path] = archive_name.replace("/", "\\")

    missing = set(paths_by_hash) - exported
    if missing:
        logger.warning(f"{len(missing)} referenced blob(s) missing from {files_dir}")
    return len(exported)
