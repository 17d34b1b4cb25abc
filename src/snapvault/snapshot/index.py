"""
Snapshot discovery under the working directory.

``SnapshotIndex`` answers "which snapshot belongs to this character" for
capture. ``SnapshotLibrary`` lists and renames snapshot directories.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from ..core.notify import NotificationChannel
from .json_io import read_json_or_none
from .paths import SnapshotPaths, sanitize_directory_name


logger = logging.getLogger(__name__)


def split_actor_name(source_actor: str):
    """Split ``Name@World`` into (``Name``, ``World`` or None)."""
    name, sep, world = (source_actor or "").partition("@")
    return name.strip(), (world.strip() or None) if sep else None


@dataclass
class IndexEntry:
    """One snapshot directory as seen by the index."""
    path: Path
    actor_name: str
    world_id: Optional[int] = None
    world_name: Optional[str] = None


class SnapshotIndex:
    """
    In-memory lookup of snapshot directories by character.

    Entries are keyed by the actor's base name (case-insensitive), so one
    character name seen on several worlds maps to several entries.
    """

    def __init__(self):
        self._entries: Dict[str, List[IndexEntry]] = {}

    def __len__(self) -> int:
        return sum(len(entries) for entries in self._entries.values())

    def refresh(self, working_dir: Path) -> int:
        """
        Rebuild the index from every ``snapshot.json`` under ``working_dir``.

        Unreadable metadata is logged and skipped.

        Returns:
            Number of indexed snapshots
        """
        self._entries.clear()
        working_dir = Path(working_dir)
        if not working_dir.is_dir():
            logger.warning(f"Working directory does not exist: {working_dir}")
            return 0

        for child in sorted(working_dir.iterdir()):
            paths = SnapshotPaths.of(child)
            if not child.is_dir() or not paths.is_snapshot():
                continue

            data = read_json_or_none(paths.snapshot_file)
            if not isinstance(data, dict):
                continue

            actor = data.get("SourceActor") or ""
            base_name, suffix_world = split_actor_name(actor)
            if not base_name:
                continue

            world_id = data.get("SourceWorldId")
            entry = IndexEntry(
                path=child,
                actor_name=base_name,
                world_id=world_id if isinstance(world_id, int) else None,
                world_name=data.get("SourceWorldName") or suffix_world,
            )
            self._entries.setdefault(base_name.lower(), []).append(entry)

        logger.info(f"Indexed {len(self)} snapshots in {working_dir}")
        return len(self)

    def find(
        self,
        actor_name: str,
        world_id: Optional[int] = None,
        world_name: Optional[str] = None,
    ) -> Optional[Path]:
        """
        Find the snapshot directory for a character.

        Match order: world id, then world name, then the only entry for the
        name if there is exactly one.
        """
        base_name, suffix_world = split_actor_name(actor_name)
        candidates = self._entries.get(base_name.lower(), [])
        if not candidates:
            return None

        if world_id is not None:
            for entry in candidates:
                if entry.world_id == world_id:
                    return entry.path

        world_name = world_name or suffix_world
        if world_name:
            for entry in candidates:
                if entry.world_name and entry.world_name.lower() == world_name.lower():
                    return entry.path

        if len(candidates) == 1:
            return candidates[0].path
        return None


@dataclass
class SnapshotSummary:
    name: str
    path: Path
    source_actor: str
    file_map_count: int
    replacement_count: int
    last_update: str


class SnapshotLibrary:
    """Listing and renaming of snapshot directories."""

    def __init__(self, working_dir: Path, notifications: Optional[NotificationChannel] = None):
        self.working_dir = Path(working_dir)
        self.notifications = notifications or NotificationChannel()

    def list_snapshots(self) -> List[SnapshotSummary]:
        summaries = []
        if not self.working_dir.is_dir():
            return summaries

        for child in sorted(self.working_dir.iterdir(), key=lambda p: p.name.lower()):
            paths = SnapshotPaths.of(child)
            if not child.is_dir() or not paths.is_snapshot():
                continue
            data = read_json_or_none(paths.snapshot_file)
            if not isinstance(data, dict):
                continue
            replacements = data.get("FileReplacements")
            summaries.append(SnapshotSummary(
                name=child.name,
                path=child,
                source_actor=data.get("SourceActor") or "",
                file_map_count=len(data.get("FileMaps") or []),
                replacement_count=len(replacements) if isinstance(replacements, dict) else 0,
                last_update=data.get("LastUpdate") or "",
            ))
        return summaries

    def rename(self, old_name: str, new_name: str) -> Optional[Path]:
        """
        Rename a snapshot directory.

        Empty names and names of existing directories are rejected with a
        user-visible error.

        Returns:
            The new path, or None if the rename was rejected
        """
        source = self.working_dir / old_name
        if not SnapshotPaths.of(source).is_snapshot():
            self.notifications.error(f"Snapshot '{old_name}' does not exist.")
            return None

        cleaned = sanitize_directory_name(new_name)
        if not cleaned:
            self.notifications.error("New snapshot name cannot be empty.")
            return None

        target = self.working_dir / cleaned
        if target.exists():
            self.notifications.error("A directory with that name already exists.")
            return None

        try:
            source.rename(target)
        except OSError as e:
            logger.error(f"Could not rename snapshot: {e}")
            self.notifications.error(f"Could not rename snapshot.\n{e}")
            return None

        logger.info(f"Renamed snapshot {old_name} -> {cleaned}")
        self.notifications.success(f"Snapshot '{old_name}' renamed to '{cleaned}'.")
        self.notifications.snapshots_changed()
        return target
