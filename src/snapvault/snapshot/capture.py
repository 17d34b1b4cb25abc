"""
Live capture: record a character's current state into its snapshot.

The engine does not talk to the game or to other plugins. Whatever can
observe a live character implements ``AppearanceProvider`` (and optionally
``ManipulationProvider``) and hands back a ``CaptureData``. The capture
service turns that into blobs, a new file map node and history entries.
"""

import base64
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from ..core.logging import OperationContext, log_with_context
from ..core.notify import NotificationChannel
from .blob_store import BlobStore
from .file_map import path_map
from .hashing import compute_file_hash, hashes_equal
from .index import SnapshotIndex
from .paths import SnapshotPaths, sanitize_directory_name
from .state import SnapshotState


logger = logging.getLogger(__name__)


@dataclass
class CaptureData:
    """
    Everything observed about a character at capture time.

    Attributes:
        file_replacements: Logical path -> declared blob hash
        blob_sources: Declared hash -> local file holding the bytes
        manipulation: Raw manipulation payload
        glamourer: Glamourer design payload
        customize: Customize profile JSON
        world_id: Home world id, when known
    """
    file_replacements: Dict[str, str] = field(default_factory=dict)
    blob_sources: Dict[str, Path] = field(default_factory=dict)
    manipulation: str = ""
    glamourer: str = ""
    customize: str = ""
    world_id: Optional[int] = None


class AppearanceProvider(ABC):
    """Source of live capture data for a character."""

    @abstractmethod
    def capture(self, actor: str) -> Optional[CaptureData]:
        """Capture the current state of ``actor``; None when unavailable."""


class ManipulationProvider(ABC):
    """Optional override source for the raw manipulation payload."""

    @abstractmethod
    def get_manipulation(self, actor: str) -> Optional[str]:
        """Manipulation payload for ``actor``; None to keep the captured one."""


class JsonCaptureProvider(AppearanceProvider):
    """
    Capture data read from a JSON description file.

    Format::

        {
          "Actor": "Name@World",
          "WorldId": 42,
          "Files": {"chara/.../file.mtrl": "relative/or/absolute/source.mtrl"},
          "Manipulation": "...",
          "Glamourer": "...",
          "Customize": {...} or "<profile json>"
        }

    Source paths are resolved relative to the description file.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        with open(self.path, "r", encoding="utf-8-sig") as f:
            self.document = json.load(f)
        if not isinstance(self.document, dict):
            raise ValueError(f"Capture description {self.path} must be a JSON object")

    @property
    def actor(self) -> str:
        return self.document.get("Actor") or ""

    def capture(self, actor: Optional[str] = None) -> CaptureData:
        base_dir = self.path.parent
        data = CaptureData(
            manipulation=self.document.get("Manipulation") or "",
            glamourer=self.document.get("Glamourer") or "",
            world_id=self.document.get("WorldId"),
        )

        customize = self.document.get("Customize")
        if isinstance(customize, dict):
            data.customize = json.dumps(customize)
        elif isinstance(customize, str):
            data.customize = customize

        hashes: Dict[Path, str] = {}
        for logical_path, source in (self.document.get("Files") or {}).items():
            source_path = Path(source)
            if not source_path.is_absolute():
                source_path = base_dir / source_path
            if not source_path.is_file():
                logger.warning(f"Capture source for {logical_path} not found: {source_path}")
                continue
            if source_path not in hashes:
                hashes[source_path] = compute_file_hash(source_path)
            blob_hash = hashes[source_path]
            data.file_replacements[logical_path] = blob_hash
            data.blob_sources[blob_hash] = source_path

        return data


class CaptureService:
    """Records captures into snapshot directories under a working directory."""

    def __init__(
        self,
        working_dir: Path,
        notifications: Optional[NotificationChannel] = None,
        index: Optional[SnapshotIndex] = None,
    ):
        self.working_dir = Path(working_dir)
        self.notifications = notifications or NotificationChannel()
        self.index = index or SnapshotIndex()

    def capture(
        self,
        actor: str,
        provider: AppearanceProvider,
        manipulation_provider: Optional[ManipulationProvider] = None,
    ) -> Optional[Path]:
        """Capture ``actor`` through ``provider`` and record the result."""
        data = provider.capture(actor)
        if data is None:
            self.notifications.error(f"Could not capture data for {actor}.")
            return None

        if manipulation_provider is not None:
            override = manipulation_provider.get_manipulation(actor)
            if override is not None:
                data.manipulation = override

        return self.update_snapshot(actor, data)

    def locate(self, actor: str, world_id: Optional[int] = None) -> Path:
        """Existing snapshot for ``actor``, else ``<working_dir>/<actor>``."""
        self.index.refresh(self.working_dir)
        found = self.index.find(actor, world_id)
        if found is not None:
            return found
        return self.working_dir / sanitize_directory_name(actor)

    def update_snapshot(self, actor: str, data: CaptureData, world_id: Optional[int] = None) -> Path:
        """
        Record ``data`` as the new state of ``actor``'s snapshot.

        Blobs are imported from ``data.blob_sources``; when the bytes hash
        to something other than the declared hash, the computed hash is
        used. Histories are appended only when the payload changed.

        Returns:
            The snapshot directory
        """
        world_id = world_id if world_id is not None else data.world_id
        snapshot_dir = self.locate(actor, world_id)
        paths = SnapshotPaths.of(snapshot_dir)

        with OperationContext(operation="capture", snapshot=paths.name):
            is_new = not paths.is_snapshot()
            state = SnapshotState(source_actor=actor) if is_new else SnapshotState.load(paths.root)
            if state.source_world_id is None and world_id:
                state.source_world_id = world_id

            store = BlobStore(paths.files_dir, create_dirs=True)
            mapping = path_map()
            resolved: Dict[str, str] = {}

            for logical_path, declared in data.file_replacements.items():
                if declared not in resolved:
                    resolved[declared] = self._import_blob(store, logical_path, declared, data)
                mapping[logical_path] = resolved[declared]

            node = state.capture_update(mapping, data.manipulation)
            node_id = node.id if node is not None else None

            now = datetime.now(timezone.utc)
            state.histories.record_glamourer(
                f"Glamourer Update - {now:%Y-%m-%d %H:%M:%S} UTC", data.glamourer, node_id
            )
            customize_b64 = (
                base64.b64encode(data.customize.encode("utf-8")).decode("ascii") if data.customize else ""
            )
            state.histories.record_customize(
                f"Customize+ Update - {now:%Y-%m-%d %H:%M:%S} UTC", customize_b64, node_id
            )

            with OperationContext(node_id=node_id):
                state.save(paths.root)
                log_with_context(logger, logging.INFO, f"Captured {len(mapping)} paths for {actor}")

        if is_new:
            self.notifications.success(f"New snapshot for '{actor}' created successfully.")
        else:
            self.notifications.success(f"Snapshot for '{actor}' updated successfully.")
        self.notifications.snapshots_changed()
        return paths.root

    def _import_blob(self, store: BlobStore, logical_path: str, declared: str, data: CaptureData) -> str:
        if store.exists(declared):
            return declared

        source = data.blob_sources.get(declared)
        if source is None or not Path(source).is_file():
            logger.warning(f"Could not find source file for {logical_path} (hash: {declared}).")
            return declared

        computed = store.import_file(Path(source), logical_path)
        if not hashes_equal(computed, declared):
            logger.warning(
                f"Declared hash {declared} for {logical_path} does not match content; using {computed}"
            )
        return computed
