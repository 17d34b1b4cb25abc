"""
Import a character pack (``.pcp``) as a new snapshot.
"""

import base64
import json
import logging
import zipfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from ..core.exceptions import ContainerFormatError
from ..core.logging import OperationContext, log_with_context
from ..core.notify import NotificationChannel
from ..snapshot.blob_store import BlobStore
from ..snapshot.file_map import path_map
from ..snapshot.paths import SnapshotPaths, create_unique_directory, sanitize_directory_name
from ..snapshot.state import SnapshotState
from .manipulations import encode_manipulations
from .mcdf_import import ImportResult
from .pcp import CHARACTER_ENTRY, PcpCharacterData, PcpModData, encode_glamourer_design
from .pmp_export import DEFAULT_MOD_ENTRY, META_ENTRY


logger = logging.getLogger(__name__)


IMPORTED_DESCRIPTION = "Imported from PCP"
IMPORTED_LEGACY_DESCRIPTION = "Imported from PCP (Legacy Format)"


def _read_json_entry(archive: zipfile.ZipFile, name: str) -> Dict[str, Any]:
    try:
        raw = archive.read(name)
    except KeyError:
        raise ContainerFormatError(f"Invalid PCP file: missing {name}")
    try:
        document = json.loads(raw.decode("utf-8-sig"))
    except (UnicodeDecodeError, ValueError) as e:
        raise ContainerFormatError(f"Failed to parse {name} from PCP file: {e}")
    if not isinstance(document, dict):
        raise ContainerFormatError(f"Failed to parse {name} from PCP file: not a JSON object")
    return document


def glamourer_string_from_pcp(glamourer: Optional[Dict[str, Any]]):
    """
    Share string and history description for a pack's Glamourer object.

    ``{"Version": 1, "Design": {...}}`` is the current layout; anything else
    is taken as a bare design.

    Returns:
        Tuple of (share string, description), or None when absent
    """
    if not glamourer:
        return None
    design = glamourer.get("Design")
    if glamourer.get("Version") == 1 and isinstance(design, dict):
        return encode_glamourer_design(design), IMPORTED_DESCRIPTION
    logger.debug("PCP Glamourer data is not in version 1 layout, importing as legacy data")
    return encode_glamourer_design(glamourer), IMPORTED_LEGACY_DESCRIPTION


def customize_base64_from_pcp(customize_plus: Optional[Dict[str, Any]]):
    """
    Base64 profile and history description for a pack's Customize object.

    ``{"Template": {...}}`` is the current layout; anything else is taken
    as a bare profile.

    Returns:
        Tuple of (base64 profile, description), or None when absent
    """
    if not customize_plus:
        return None
    template = customize_plus.get("Template")
    if template is not None:
        document, description = template, IMPORTED_DESCRIPTION
    else:
        document, description = customize_plus, IMPORTED_LEGACY_DESCRIPTION
    encoded = base64.b64encode(json.dumps(document, separators=(",", ":")).encode("utf-8")).decode("ascii")
    return encoded, description


class PcpImporter:
    """
    Creates snapshots from character packs.

    Unlike container imports an existing directory is never replaced; the
    new snapshot gets a ``_1``, ``_2``... suffix instead.
    """

    def __init__(self, working_dir: Path, notifications: Optional[NotificationChannel] = None):
        self.working_dir = Path(working_dir)
        self.notifications = notifications or NotificationChannel()

    def import_file(self, pack_path: Path) -> ImportResult:
        pack_path = Path(pack_path)
        try:
            with OperationContext(operation="import", snapshot=pack_path.name):
                if not pack_path.is_file():
                    raise FileNotFoundError(f"PCP file not found: {pack_path}")
                try:
                    with zipfile.ZipFile(pack_path) as archive:
                        result, name = self._import(archive)
                except zipfile.BadZipFile as e:
                    raise ContainerFormatError(f"Invalid PCP file: {e}")
        except Exception as e:
            self.notifications.error(f"Failed during PCP import for file: {pack_path.name}\n{e}")
            logger.error(f"Failed during PCP import for file: {pack_path.name}: {e}", exc_info=True)
            raise

        self.notifications.success(f"Successfully imported PCP: {name}")
        self.notifications.snapshots_changed()
        return result

    def _import(self, archive: zipfile.ZipFile):
        metadata = _read_json_entry(archive, META_ENTRY)
        character = PcpCharacterData.from_dict(_read_json_entry(archive, CHARACTER_ENTRY))
        mod = PcpModData.from_dict(_read_json_entry(archive, DEFAULT_MOD_ENTRY))
        name = str(metadata.get("Name") or "")

        directory_name = sanitize_directory_name(name) or f"PCP_Import_{datetime.now():%Y%m%d%H%M%S%f}"
        paths = SnapshotPaths.of(create_unique_directory(self.working_dir, directory_name))
        result = ImportResult(snapshot_path=paths.root, file_swaps=len(mod.file_swaps))

        store = BlobStore(paths.files_dir, create_dirs=True)
        mapping = self._extract_files(archive, store, mod, result)

        manipulation_string = ""
        if mod.manipulations:
            manipulation_string = encode_manipulations(mod.manipulations)

        state = SnapshotState.create(
            source_actor=character.actor.player_name or paths.name,
            source_world_id=character.actor.home_world or None,
            mapping=mapping,
            manipulation_string=manipulation_string,
        )
        result.root_node_id = state.current_file_map_id
        result.path_count = len(mapping)

        customize = customize_base64_from_pcp(character.customize_plus)
        if customize:
            state.histories.record_customize(customize[1], customize[0], result.root_node_id)
        glamourer = glamourer_string_from_pcp(character.glamourer)
        if glamourer:
            state.histories.record_glamourer(glamourer[1], glamourer[0], result.root_node_id)
        state.save(paths.root)

        log_with_context(
            logger, logging.INFO,
            f"Imported {result.blob_count} blobs, {result.path_count} paths into {paths.name}",
        )
        return result, name or paths.name

    def _extract_files(self, archive: zipfile.ZipFile, store: BlobStore, mod: PcpModData, result: ImportResult):
        mapping = path_map()
        hashes = set()
        for game_path, archive_path in mod.files.items():
            entry_name = archive_path.replace("\\", "/")
            try:
                data = archive.read(entry_name)
            except KeyError:
                log_with_context(logger, logging.WARNING, f"PCP entry {entry_name} for {game_path} is missing")
                continue
            if not data:
                result.skipped_empty += 1
                continue

            blob_hash = store.put(data, game_path)
            hashes.add(blob_hash)
            mapping[game_path] = blob_hash

        result.blob_count = len(hashes)
        return mapping
