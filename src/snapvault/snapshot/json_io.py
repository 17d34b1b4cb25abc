"""
JSON and byte I/O helpers with atomic replacement.

Every metadata write goes to a sibling temporary file first and is moved
over the target with ``os.replace``, so a failed write leaves the previous
content intact.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Optional


logger = logging.getLogger(__name__)


def atomic_write_bytes(path: Path, content: bytes) -> None:
    """Write bytes to ``path`` via a temporary file and atomic replace."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def atomic_write_json(path: Path, data: Any, indent: Optional[int] = 2) -> None:
    """Serialize ``data`` as JSON and write it atomically."""
    payload = json.dumps(data, indent=indent, ensure_ascii=False)
    atomic_write_bytes(path, payload.encode("utf-8"))
    logger.debug(f"Wrote {path}")


def read_json(path: Path) -> Any:
    """
    Read a JSON document.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the content is not valid JSON
    """
    with open(path, "r", encoding="utf-8-sig") as f:
        return json.load(f)


def read_json_or_none(path: Path) -> Optional[Any]:
    """Read a JSON document, returning None if it is missing or unparsable."""
    path = Path(path)
    if not path.exists():
        return None

    try:
        return read_json(path)
    except (OSError, ValueError) as e:
        logger.error(f"Failed to read {path}: {e}")
        return None
