"""
Dependency expansion for subset exports.

Selecting a material without the textures it references exports a mod
that renders wrong. ``expand_material_dependencies`` adds every texture a
selected material names, when that texture is part of the mapping.
"""

import logging
from pathlib import Path
from typing import Dict, Iterable, Mapping, Set

from requests.structures import CaseInsensitiveDict

from ..snapshot.blob_store import BlobStore
from .material import MATERIAL_EXTENSION, MaterialFile, MaterialParseError


logger = logging.getLogger(__name__)


def normalize_game_path(path: str) -> str:
    return path.replace("\\", "/").strip()


def _normalized_map(mapping: Mapping[str, str]) -> CaseInsensitiveDict:
    """Normalized path -> (original path, hash)."""
    result = CaseInsensitiveDict()
    for logical_path, blob_hash in mapping.items():
        if logical_path and logical_path.strip():
            result[normalize_game_path(logical_path)] = (logical_path, blob_hash)
    return result


def expand_material_dependencies(
    selected: Iterable[str],
    mapping: Mapping[str, str],
    files_dir: Path,
) -> Set[str]:
    """
    Expand a selection of logical paths with material texture dependencies.

    Args:
        selected: Logical paths chosen for export
        mapping: Effective logical path -> hash mapping
        files_dir: Blob directory of the snapshot

    Returns:
        The selection plus the original spelling of every referenced
        texture present in ``mapping``
    """
    selected = [path for path in selected if path]
    expanded: Dict[str, str] = {path.lower(): path for path in selected}
    if not selected or not mapping:
        return set(expanded.values())

    normalized = _normalized_map(mapping)
    store = BlobStore(files_dir)
    processed: Set[str] = set()

    for logical_path in selected:
        if not logical_path.strip() or not logical_path.lower().endswith(MATERIAL_EXTENSION):
            continue

        key = normalize_game_path(logical_path).lower()
        if key in processed:
            continue
        processed.add(key)

        entry = normalized.get(normalize_game_path(logical_path))
        if entry is None or not entry[1]:
            continue

        original_path, blob_hash = entry
        data = store.read(blob_hash, original_path)
        if data is None:
            logger.debug(f"Material blob {blob_hash} for {original_path} is missing")
            continue

        try:
            material = MaterialFile.parse(data)
        except MaterialParseError as e:
            logger.warning(f"Could not parse material {original_path}: {e}")
            continue

        for texture_path in material.texture_paths():
            texture = normalized.get(normalize_game_path(texture_path))
            if texture is not None:
                texture_original = texture[0]
                if texture_original.lower() not in expanded:
                    logger.debug(f"Adding texture dependency {texture_original} of {original_path}")
                expanded.setdefault(texture_original.lower(), texture_original)

    return set(expanded.values())
