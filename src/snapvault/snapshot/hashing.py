"""
Content hashing for blobs.

Blob identity is the SHA-1 digest of the raw bytes rendered as uppercase
hexadecimal. This matches the identifiers third-party containers carry for
their file entries, so a hash read from an imported container and a hash
computed here name the same blob.
"""

import hashlib
import re
from pathlib import Path
from typing import Union


HASH_PATTERN = re.compile(r"^[0-9A-Fa-f]{40}$")

_CHUNK_SIZE = 1024 * 1024


def compute_blob_hash(data: bytes) -> str:
    """
    Compute the content hash of a byte payload.

    Args:
        data: Raw bytes

    Returns:
        40-character uppercase hex SHA-1 digest
    """
    return hashlib.sha1(data).hexdigest().upper()


def compute_file_hash(path: Union[str, Path]) -> str:
    """Compute the content hash of a file, streaming it in chunks."""
    digest = hashlib.sha1()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest().upper()


def is_blob_hash(value: str) -> bool:
    """Check whether a string looks like a blob hash."""
    return bool(value) and bool(HASH_PATTERN.match(value))


def hashes_equal(left: str, right: str) -> bool:
    """Compare two hashes ignoring case."""
    return (left or "").upper() == (right or "").upper()
