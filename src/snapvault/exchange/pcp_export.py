"""
Export a snapshot as a character pack (``.pcp``).

The pack carries the same ``files/`` payload and manifest as a mod pack,
plus ``character.json`` with the actor and one Glamourer design and one
Customize template taken from the snapshot's histories.
"""

import json
import logging
import threading
import uuid
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from ..config.config_loader import DEFAULT_EXPORT_AUTHOR
from ..core.exceptions import ConcurrentExportRejected, CorruptChain
from ..core.logging import OperationContext, log_with_context
from ..core.notify import NotificationChannel
from ..snapshot.customize import read_template
from ..snapshot.file_map import path_map
from ..snapshot.models import CustomizeHistoryEntry, GlamourerHistoryEntry
from ..snapshot.paths import SnapshotPaths
from ..snapshot.state import SnapshotState
from .manipulations import convert_manipulations
from .pcp import (
    CHARACTER_ENTRY,
    DEFAULT_HOME_WORLD,
    PCP_EXTENSION,
    PCP_TAG,
    PcpActor,
    PcpCharacterData,
    PcpModData,
    decode_glamourer_design,
)
from .pmp_export import DEFAULT_MOD_ENTRY, META_ENTRY, ExportResult, add_snapshot_files, build_mod_metadata


logger = logging.getLogger(__name__)


PCP_NOTE = "Exported from SnapVault"


def _select(entries, index: Optional[int]):
    if index is None:
        return entries[-1] if entries else None
    try:
        return entries[index]
    except IndexError:
        raise IndexError(f"History entry {index} does not exist ({len(entries)} entries)")


def customize_for_pcp(template: Dict[str, Any], actor_name: str, author: str) -> Dict[str, Any]:
    """Fill the template fields the Customize tool requires on import."""
    now = datetime.now(timezone.utc).isoformat()
    template = dict(template)
    template.setdefault("CreationDate", now)
    template.setdefault("ModifiedDate", now)
    template.setdefault("UniqueId", str(uuid.uuid4()))
    template.setdefault("Name", f"PCP Template - {actor_name}")
    template.setdefault("Author", author)
    template.setdefault("Description", "Template exported from SnapVault")
    template["IsWriteProtected"] = False

    bones = template.get("Bones")
    if isinstance(bones, dict):
        for bone in bones.values():
            if isinstance(bone, dict):
                bone.setdefault("PropagateTranslation", False)
                bone.setdefault("PropagateRotation", False)
                bone.setdefault("PropagateScale", False)
    return {"Template": template}


class PcpExporter:
    """
    Writes character packs from snapshots.

    Like ``PmpExporter``, one export runs at a time; a concurrent request
    is rejected.
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
        output_path: Optional[Path] = None,
        glamourer_index: Optional[int] = None,
        customize_index: Optional[int] = None,
        player_name: Optional[str] = None,
        home_world_id: Optional[int] = None,
    ) -> ExportResult:
        """
        Export a snapshot.

        Args:
            snapshot_dir: Snapshot directory
            output_path: Archive path (default: ``<working_dir>/<name>.pcp``)
            glamourer_index: Glamourer history entry to export (default: latest)
            customize_index: Customize history entry to export (default: latest)
            player_name: Actor name written to the pack (default: source actor)
            home_world_id: Home world written to the pack (default: source world)

        The exported file map is the one the selected Glamourer entry was
        captured with, else the selected Customize entry's, else the
        current node.

        Raises:
            ConcurrentExportRejected: If another export is running
            IndexError: If a selected history entry does not exist
        """
        self._acquire()
        snapshot_dir = Path(snapshot_dir)
        try:
            with OperationContext(operation="export-pcp", snapshot=snapshot_dir.name):
                result = self._export(
                    SnapshotPaths.of(snapshot_dir), output_path,
                    glamourer_index, customize_index, player_name, home_world_id,
                )
            self.notifications.success(f"Successfully exported PCP: {result.archive_path}")
            return result
        except Exception as e:
            self.notifications.error(f"Failed during PCP export: {e}")
            logger.error(f"Failed during PCP export: {e}", exc_info=True)
            raise
        finally:
            self.is_exporting = False

    def _export(
        self,
        paths: SnapshotPaths,
        output_path: Optional[Path],
        glamourer_index: Optional[int],
        customize_index: Optional[int],
        player_name: Optional[str],
        home_world_id: Optional[int],
    ) -> ExportResult:
        state = SnapshotState.load(paths.root)
        glamourer_entry: Optional[GlamourerHistoryEntry] = _select(state.histories.glamourer.entries, glamourer_index)
        customize_entry: Optional[CustomizeHistoryEntry] = _select(state.histories.customize.entries, customize_index)

        file_map_id = (
            (glamourer_index is not None and glamourer_entry.file_map_id)
            or (customize_index is not None and customize_entry.file_map_id)
            or state.current_file_map_id
        )
        try:
            mapping = state.resolve_node(file_map_id)
        except CorruptChain as e:
            log_with_context(logger, logging.WARNING, f"Could not resolve file map {file_map_id}: {e}")
            mapping = path_map()
        if not mapping:
            mapping = path_map(state.file_replacements)
        manipulations = convert_manipulations(state.resolve_manipulation(file_map_id))

        actor_name = player_name if player_name and player_name.strip() else state.source_actor
        home_world = home_world_id if home_world_id is not None else (state.source_world_id or DEFAULT_HOME_WORLD)
        character = PcpCharacterData(
            actor=PcpActor(player_name=actor_name, home_world=home_world),
            mod=actor_name,
            collection=actor_name,
            note=PCP_NOTE,
        )

        if glamourer_entry is not None:
            design = decode_glamourer_design(glamourer_entry.glamourer_string)
            if design is not None:
                character.glamourer = {"Version": 1, "Design": design}
            else:
                log_with_context(logger, logging.WARNING, "Glamourer entry could not be decoded, not exported")

        if customize_entry is not None and customize_entry.customize_template:
            template = read_template(customize_entry.customize_template)
            if template is not None:
                character.customize_plus = customize_for_pcp(template, actor_name, self.author)

        output_path = Path(output_path) if output_path else self.working_dir / f"{paths.name}{PCP_EXTENSION}"
        output_path.parent.mkdir(parents=True, exist_ok=True)

        mod = PcpModData(manipulations=manipulations)
        with OperationContext(node_id=file_map_id):
            with zipfile.ZipFile(output_path, "w", zipfile.ZIP_DEFLATED) as archive:
                metadata = build_mod_metadata(paths.name, self.author, tags=[PCP_TAG])
                archive.writestr(META_ENTRY, json.dumps(metadata, indent=2))
                archive.writestr(CHARACTER_ENTRY, json.dumps(character.to_dict(), indent=2))
                file_count = add_snapshot_files(archive, paths.files_dir, mapping, mod.files)
                archive.writestr(DEFAULT_MOD_ENTRY, json.dumps(mod.to_dict(), indent=2))

            log_with_context(
                logger, logging.INFO,
                f"Exported {file_count} files for {len(mod.files)} paths to {output_path}",
            )
        return ExportResult(
            archive_path=output_path,
            file_count=file_count,
            path_count=len(mod.files),
            manipulation_count=len(manipulations),
        )
