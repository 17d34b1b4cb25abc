"""
Content-addressed blob storage under a snapshot's files directory.

Two naming schemes co-exist on disk:

- preferred: ``{HASH}{ext}`` where ``ext`` comes from the logical path the
  blob was stored for (``.mtrl``, ``.tex``, ...)
- legacy: ``{HASH}.dat``

Old directories are read as they are; nothing is renamed. Blobs are
write-once: a put is skipped when any file for the hash already exists.
"""

import logging
import os
from pathlib import Path, PurePosixPath
from typing import Iterator, List, Optional, Tuple

from .hashing import compute_blob_hash
from .json_io import atomic_write_bytes
from .paths import DATA_FILE_EXTENSION


logger = logging.getLogger(__name__)


MAX_EXTENSION_LENGTH = 16
INVALID_FILE_NAME_CHARS = set('<>:"/\\|?*') | {chr(c) for c in range(32)}


def normalize_extension(extension: Optional[str]) -> str:
    """
    Normalize a file extension for blob naming.

    Falls back to the legacy ``.dat`` extension when the extension is
    empty, too long, or contains characters that are invalid in file names.
    """
    if extension is None or not extension.strip():
        return DATA_FILE_EXTENSION

    ext = extension.strip()
    if not ext.startswith("."):
        ext = "." + ext

    if len(ext) > MAX_EXTENSION_LENGTH:
        return DATA_FILE_EXTENSION

    if any(ch in INVALID_FILE_NAME_CHARS for ch in ext):
        return DATA_FILE_EXTENSION

    return ext.lower()


def preferred_extension(logical_path: Optional[str]) -> str:
    """Blob extension derived from a logical (game) path."""
    if not logical_path:
        return DATA_FILE_EXTENSION
    name = PurePosixPath(logical_path.replace("\\", "/")).name
    return normalize_extension(os.path.splitext(name)[1])


class BlobStore:
    """
    Immutable byte payloads keyed by content hash.

    Example:
        >>> store = BlobStore(paths.files_dir)
        >>> h = store.put(b"...", "chara/equipment/e0001/material/v0001/mt_c0101e0001_top_a.mtrl")
        >>> store.find_any(h)
        PosixPath('.../_files/0A1B...mtrl')
    """

    def __init__(self, files_dir: Path, create_dirs: bool = False):
        self.files_dir = Path(files_dir)
        if create_dirs:
            self.files_dir.mkdir(parents=True, exist_ok=True)

    def preferred_path(self, blob_hash: str, logical_path: Optional[str] = None) -> Path:
        return self.files_dir / f"{blob_hash}{preferred_extension(logical_path)}"

    def legacy_path(self, blob_hash: str) -> Path:
        return self.files_dir / f"{blob_hash}{DATA_FILE_EXTENSION}"

    def find_any(self, blob_hash: str) -> Optional[Path]:
        """
        Find an existing file for a hash under either naming scheme.

        Returns a preferred-scheme file (non-``.dat``) over a legacy one, or
        None on a miss.
        """
        if not blob_hash or not self.files_dir.is_dir():
            return None

        candidates: List[Path] = []
        seen = set()
        for variant in {blob_hash, blob_hash.upper(), blob_hash.lower()}:
            for path in self.files_dir.glob(f"{variant}.*"):
                if path.is_file() and path not in seen:
                    seen.add(path)
                    candidates.append(path)

        if not candidates:
            return None

        candidates.sort(key=lambda p: (p.suffix.lower() == DATA_FILE_EXTENSION, p.name))
        return candidates[0]

    def resolve(self, blob_hash: str, logical_path: Optional[str] = None) -> Path:
        """
        Resolve where a blob lives (or would be written).

        Order: preferred path for the hint, any existing file for the hash,
        and finally the preferred path as the write target.
        """
        preferred = self.preferred_path(blob_hash, logical_path)
        if preferred.is_file():
            return preferred

        existing = self.find_any(blob_hash)
        return existing if existing is not None else preferred

    def exists(self, blob_hash: str) -> bool:
        return self.find_any(blob_hash) is not None

    def put(self, data: bytes, logical_path: Optional[str] = None) -> str:
        """
        Store a payload and return its hash.

        Idempotent: when a blob for the hash is already resolvable, nothing
        is written.
        """
        blob_hash = compute_blob_hash(data)
        if self.find_any(blob_hash) is not None:
            logger.debug(f"Blob {blob_hash} already stored, skipping write")
            return blob_hash

        target = self.preferred_path(blob_hash, logical_path)
        atomic_write_bytes(target, data)
        logger.debug(f"Stored blob {target.name} ({len(data)} bytes)")
        return blob_hash

    def import_file(self, source: Path, logical_path: Optional[str] = None) -> str:
        """Store the contents of an existing file and return its hash."""
        with open(source, "rb") as f:
            data = f.read()
        return self.put(data, logical_path)

    def read(self, blob_hash: str, logical_path: Optional[str] = None) -> Optional[bytes]:
        """Read a blob's bytes, or None on a miss."""
        path = self.resolve(blob_hash, logical_path)
        if not path.is_file():
            return None
        return path.read_bytes()

    def iter_blobs(self) -> Iterator[Tuple[str, Path]]:
        """
        Enumerate every physical blob file.

        Yields:
            (hash, path) pairs; the hash is the file name stem
        """
        if not self.files_dir.is_dir():
            return
        for path in sorted(self.files_dir.rglob("*")):
            if path.is_file() and not path.name.startswith("."):
                yield path.stem, path

    def count(self) -> int:
        return sum(1 for _ in self.iter_blobs())
