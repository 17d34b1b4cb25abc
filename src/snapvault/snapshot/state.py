"""
SnapshotState: the aggregate persisted in each snapshot directory.

``snapshot.json`` holds the metadata, the file map chain and the pointer to
the current node. ``file_replacements`` is a materialized cache of the
current node's effective mapping; every operation that moves the pointer or
appends to the chain recomputes it.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from requests.structures import CaseInsensitiveDict

from ..core.exceptions import CorruptChain, NotASnapshot
from .file_map import FileMapChain, FileMapNode, diff_mappings, path_map
from .json_io import atomic_write_json, read_json, read_json_or_none
from .models import CustomizeHistory, GlamourerHistory, SnapshotHistories, parse_timestamp
from .paths import SnapshotPaths


logger = logging.getLogger(__name__)


CURRENT_FORMAT_VERSION = 1


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass
class SnapshotState:
    """
    Metadata, version chain and histories of one snapshot.

    Attributes:
        format_version: On-disk schema version
        source_actor: Captured character name (``Name`` or ``Name@World``)
        source_world_id: Home world id of the captured character
        source_world_name: Home world name, when known
        last_update: Time of the last mutation (UTC)
        file_replacements: Cache of the current node's effective mapping
        chain: File map chain
        current_file_map_id: Id of the current node, None for an empty snapshot
        manipulation_string: Snapshot-level manipulation payload
        histories: Glamourer and Customize histories
        root: Directory the state was loaded from or saved to
    """
    format_version: int = CURRENT_FORMAT_VERSION
    source_actor: str = ""
    source_world_id: Optional[int] = None
    source_world_name: Optional[str] = None
    last_update: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    file_replacements: CaseInsensitiveDict = field(default_factory=CaseInsensitiveDict)
    chain: FileMapChain = field(default_factory=FileMapChain)
    current_file_map_id: Optional[str] = None
    manipulation_string: str = ""
    histories: SnapshotHistories = field(default_factory=SnapshotHistories)
    root: Optional[Path] = field(default=None, repr=False, compare=False)

    @classmethod
    def create(
        cls,
        source_actor: str,
        source_world_id: Optional[int] = None,
        mapping: Optional[Mapping[str, str]] = None,
        manipulation_string: str = "",
        source_world_name: Optional[str] = None,
    ) -> "SnapshotState":
        """Create a fresh state whose root node holds ``mapping``."""
        state = cls(
            source_actor=source_actor,
            source_world_id=source_world_id,
            source_world_name=source_world_name,
            manipulation_string=manipulation_string or "",
        )
        if mapping:
            state.capture_update(mapping, manipulation_string)
        return state

    @property
    def current_node(self) -> Optional[FileMapNode]:
        return self.chain.get(self.current_file_map_id)

    def resolve_node(self, node_id: Optional[str] = None) -> CaseInsensitiveDict:
        """
        Effective mapping of ``node_id`` (default: current).

        A snapshot without a current node resolves to its stored
        ``file_replacements``, which is all a directory written before file
        maps existed carries.
        """
        target = node_id or self.current_file_map_id
        if not target:
            return path_map(self.file_replacements)
        return self.chain.resolve(target)

    def resolve_manipulation(self, node_id: Optional[str] = None) -> str:
        """The node's manipulation override, else the snapshot-level payload."""
        return self.chain.resolve_manipulation(
            node_id or self.current_file_map_id, self.manipulation_string
        )

    def refresh_cache(self) -> None:
        """Recompute ``file_replacements`` from the current node."""
        self.file_replacements = self.resolve_node()

    def set_current(self, node_id: str) -> None:
        """
        Move the current pointer and recompute the cache.

        Raises:
            CorruptChain: If ``node_id`` is unknown or its chain is broken
        """
        node = self.chain.get(node_id)
        if node is None:
            raise CorruptChain(f"File map {node_id} does not exist", node_id)
        resolved = self.chain.resolve(node.id)
        self.current_file_map_id = node.id
        self.file_replacements = resolved
        self.touch()

    def touch(self) -> None:
        self.last_update = datetime.now(timezone.utc)

    def capture_update(
        self,
        mapping: Mapping[str, str],
        manipulation_string: Optional[str] = None,
        include_removals: bool = True,
    ) -> Optional[FileMapNode]:
        """
        Record ``mapping`` as the new current state.

        Appends a node holding the diff against the current effective
        mapping, with the current node as parent (a root when there is no
        current node). When nothing changed, no node is appended and the
        current node is returned. When the parent is already at the chain's
        depth limit, the new node is written as a root carrying the full
        mapping so the chain stays resolvable.

        A chain-less snapshot first gets a root node from its stored
        ``file_replacements``.

        Returns:
            The node that is current afterwards (None only for an empty
            mapping on an empty snapshot)
        """
        manipulation = self.manipulation_string if manipulation_string is None else manipulation_string
        self.ensure_base_node()
        current = self.current_node

        if current is None:
            if not mapping and not manipulation:
                self.file_replacements = path_map()
                return None
            node = self.chain.append(None, path_map(mapping), manipulation)
        else:
            current_mapping = self.chain.resolve(current.id)
            changes = diff_mappings(mapping, current_mapping, include_removals=include_removals)
            if not changes and manipulation == self.resolve_manipulation(current.id):
                logger.debug(f"Capture for {self.source_actor} unchanged; keeping {current.id}")
                return current

            if self.chain.depth(current.id) + 1 > self.chain.max_depth:
                logger.info(
                    f"File map chain for {self.source_actor} reached {self.chain.max_depth} hops; "
                    f"starting a new root"
                )
                full = mapping if include_removals else {**dict(current_mapping.items()), **dict(mapping)}
                node = self.chain.append(None, path_map(full), manipulation)
            else:
                node = self.chain.append(current.id, changes, manipulation)

        self.manipulation_string = manipulation or ""
        self.current_file_map_id = node.id
        self.refresh_cache()
        self.touch()
        return node

    def ensure_base_node(self) -> Optional[FileMapNode]:
        """
        Give a chain-less snapshot a root node from its cached mapping.

        Used for directories that carry ``FileReplacements`` but were written
        before file maps existed.
        """
        if self.current_file_map_id is not None or not self.file_replacements:
            return None
        node = self.chain.append(None, path_map(self.file_replacements), self.manipulation_string or None)
        self.current_file_map_id = node.id
        logger.info(f"Created base file map {node.id} for {self.source_actor}")
        return node

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the ``snapshot.json`` document."""
        data = {
            "FormatVersion": self.format_version,
            "SourceActor": self.source_actor,
            "SourceWorldId": self.source_world_id,
            "LastUpdate": self.last_update.isoformat(),
            "FileReplacements": dict(self.file_replacements.items()),
            "FileMaps": self.chain.to_list(),
            "CurrentFileMapId": self.current_file_map_id,
            "ManipulationString": self.manipulation_string,
        }
        if self.source_world_name:
            data["SourceWorldName"] = self.source_world_name
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SnapshotState":
        """
        Create from a ``snapshot.json`` document.

        Raises:
            CorruptChain: If the file maps are malformed
        """
        replacements = data.get("FileReplacements") or {}
        if not isinstance(replacements, dict):
            replacements = {}

        return cls(
            format_version=_optional_int(data.get("FormatVersion")) or CURRENT_FORMAT_VERSION,
            source_actor=data.get("SourceActor") or "",
            source_world_id=_optional_int(data.get("SourceWorldId")),
            source_world_name=data.get("SourceWorldName") or None,
            last_update=parse_timestamp(data.get("LastUpdate")),
            file_replacements=path_map({k: v for k, v in replacements.items() if isinstance(v, str)}),
            chain=FileMapChain.from_list(data.get("FileMaps")),
            current_file_map_id=str(data["CurrentFileMapId"]) if data.get("CurrentFileMapId") else None,
            manipulation_string=data.get("ManipulationString") or "",
        )

    @classmethod
    def load(cls, directory: Path) -> "SnapshotState":
        """
        Load a snapshot directory.

        Missing history files load as empty histories. When a current node
        exists, ``file_replacements`` is recomputed from the chain; if the
        chain cannot be resolved the stored cache is kept and the error is
        left for the caller that resolves nodes. Malformed file maps are
        dropped with a warning, leaving the stored cache in the same way.

        Raises:
            NotASnapshot: If ``snapshot.json`` is missing or unreadable
        """
        paths = SnapshotPaths.of(directory)
        if not paths.is_snapshot():
            raise NotASnapshot(f"No {paths.snapshot_file.name} in {paths.root}", paths.root)

        try:
            data = read_json(paths.snapshot_file)
        except (OSError, ValueError) as e:
            raise NotASnapshot(f"Unreadable snapshot metadata {paths.snapshot_file}: {e}", paths.root)

        if not isinstance(data, dict):
            raise NotASnapshot(f"Snapshot metadata {paths.snapshot_file} is not an object", paths.root)

        try:
            state = cls.from_dict(data)
        except CorruptChain as e:
            logger.warning(f"Snapshot {paths.name} has malformed file maps, keeping stored replacements: {e}")
            state = cls.from_dict({**data, "FileMaps": None})
        state.root = paths.root
        state.histories = SnapshotHistories(
            glamourer=GlamourerHistory.from_dict(read_json_or_none(paths.glamourer_history_file)),
            customize=CustomizeHistory.from_dict(read_json_or_none(paths.customize_history_file)),
        )

        if state.current_file_map_id is not None:
            try:
                state.refresh_cache()
            except CorruptChain as e:
                logger.warning(f"Snapshot {paths.name} has a broken file map chain: {e}")

        logger.debug(
            f"Loaded snapshot {paths.name}: {len(state.chain)} file maps, "
            f"{len(state.file_replacements)} replacements"
        )
        return state

    def save(self, directory: Optional[Path] = None) -> Path:
        """
        Write metadata and both histories.

        Each file is replaced atomically, so a failure leaves the previous
        version of that file in place.

        Returns:
            The snapshot directory
        """
        target = Path(directory) if directory is not None else self.root
        if target is None:
            raise ValueError("No directory to save the snapshot to")

        paths = SnapshotPaths.of(target)
        paths.root.mkdir(parents=True, exist_ok=True)

        atomic_write_json(paths.snapshot_file, self.to_dict())
        atomic_write_json(paths.glamourer_history_file, self.histories.glamourer.to_dict())
        atomic_write_json(paths.customize_history_file, self.histories.customize.to_dict())

        self.root = paths.root
        logger.debug(f"Saved snapshot {paths.name}")
        return paths.root
