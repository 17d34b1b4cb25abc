"""
MCDF character data container codec.

After LZ4 frame decompression a container is::

    b"MCDF"                 magic
    u8                      format version (only 1 is defined)
    i32 (little-endian)     metadata length
    bytes[length]           UTF-8 JSON metadata
    bytes...                file payloads, concatenated in metadata order
"""

import json
import logging
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import lz4.frame

from ..core.exceptions import ContainerFormatError, TruncatedPayload, UnsupportedContainerVersion
from ..snapshot.json_io import atomic_write_bytes


logger = logging.getLogger(__name__)


MAGIC = b"MCDF"
SUPPORTED_VERSION = 1

_LENGTH = struct.Struct("<i")
_PREAMBLE_SIZE = len(MAGIC) + 1


@dataclass
class ContainerFileEntry:
    """One file payload declared by the container metadata."""
    game_paths: List[str] = field(default_factory=list)
    length: int = 0
    hash: str = ""

    @property
    def label(self) -> str:
        return self.game_paths[0] if self.game_paths else (self.hash or "<unnamed>")

    def to_dict(self) -> Dict[str, Any]:
        return {"GamePaths": self.game_paths, "Length": self.length, "Hash": self.hash}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContainerFileEntry":
        if not isinstance(data, dict):
            raise ContainerFormatError("File entry is not an object")
        length = data.get("Length", 0)
        if not isinstance(length, int) or isinstance(length, bool) or length < 0:
            raise ContainerFormatError(f"Invalid file entry length: {length!r}")
        game_paths = data.get("GamePaths") or []
        if not isinstance(game_paths, list):
            raise ContainerFormatError("File entry GamePaths must be a list")
        return cls(
            game_paths=[str(p) for p in game_paths if p],
            length=length,
            hash=data.get("Hash") or "",
        )


@dataclass
class ContainerMetadata:
    """
    Metadata block of a container.

    Attributes:
        description: Free text; used as the imported snapshot's name
        glamourer_data: Glamourer design payload
        customize_plus_data: Base64 of the Customize profile JSON
        manipulation_data: Manipulation payload
        files: File entries, in payload order
        file_swaps: Path redirections (kept, not materialised)
    """
    description: str = ""
    glamourer_data: str = ""
    customize_plus_data: str = ""
    manipulation_data: str = ""
    files: List[ContainerFileEntry] = field(default_factory=list)
    file_swaps: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "Description": self.description,
            "GlamourerData": self.glamourer_data,
            "CustomizePlusData": self.customize_plus_data,
            "ManipulationData": self.manipulation_data,
            "Files": [entry.to_dict() for entry in self.files],
            "FileSwaps": self.file_swaps,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "ContainerMetadata":
        if not isinstance(data, dict):
            raise ContainerFormatError("Container metadata is not an object")
        files = data.get("Files") or []
        if not isinstance(files, list):
            raise ContainerFormatError("Container metadata Files must be a list")
        swaps = data.get("FileSwaps") or []
        return cls(
            description=data.get("Description") or "",
            glamourer_data=data.get("GlamourerData") or "",
            customize_plus_data=data.get("CustomizePlusData") or "",
            manipulation_data=data.get("ManipulationData") or "",
            files=[ContainerFileEntry.from_dict(item) for item in files],
            file_swaps=swaps if isinstance(swaps, list) else [],
        )


@dataclass
class Container:
    """A decoded container: metadata plus the raw payload region."""
    version: int
    metadata: ContainerMetadata
    payload: bytes
    path: Optional[Path] = None


def decode_container(raw: bytes, path: Optional[Path] = None) -> Container:
    """
    Decode decompressed container bytes.

    Raises:
        ContainerFormatError: Bad magic or malformed metadata
        UnsupportedContainerVersion: Version other than 1
        TruncatedPayload: Metadata block shorter than declared
    """
    if len(raw) < _PREAMBLE_SIZE or raw[:len(MAGIC)] != MAGIC:
        raise ContainerFormatError("Not a Mare Chara File", path)

    version = raw[len(MAGIC)]
    if version != SUPPORTED_VERSION:
        raise UnsupportedContainerVersion(version, SUPPORTED_VERSION)

    offset = _PREAMBLE_SIZE
    if len(raw) < offset + _LENGTH.size:
        raise TruncatedPayload("Container ends before metadata length", _LENGTH.size, len(raw) - offset)
    (metadata_length,) = _LENGTH.unpack_from(raw, offset)
    offset += _LENGTH.size

    if metadata_length < 0:
        raise ContainerFormatError(f"Negative metadata length {metadata_length}", path)

    metadata_bytes = raw[offset:offset + metadata_length]
    if len(metadata_bytes) != metadata_length:
        raise TruncatedPayload(
            "Container metadata block is truncated", metadata_length, len(metadata_bytes)
        )

    try:
        document = json.loads(metadata_bytes.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise ContainerFormatError(f"Container metadata is not valid JSON: {e}", path)

    return Container(
        version=version,
        metadata=ContainerMetadata.from_dict(document),
        payload=raw[offset + metadata_length:],
        path=path,
    )


def read_container(path: Path) -> Container:
    """Read, decompress and decode a container file."""
    path = Path(path)
    compressed = path.read_bytes()
    try:
        raw = lz4.frame.decompress(compressed)
    except RuntimeError as e:
        raise ContainerFormatError(f"Could not decompress {path.name}: {e}", path)
    logger.debug(f"Decompressed {path.name}: {len(compressed)} -> {len(raw)} bytes")
    return decode_container(raw, path)


def encode_container(
    metadata: ContainerMetadata,
    payloads: Iterable[bytes],
    version: int = SUPPORTED_VERSION,
) -> bytes:
    """Encode a container without the compression layer."""
    metadata_bytes = json.dumps(metadata.to_dict()).encode("utf-8")
    parts = [MAGIC, bytes([version]), _LENGTH.pack(len(metadata_bytes)), metadata_bytes]
    parts.extend(payloads)
    return b"".join(parts)


def write_container(
    path: Path,
    metadata: ContainerMetadata,
    payloads: Iterable[bytes],
    version: int = SUPPORTED_VERSION,
) -> Path:
    """
    Write a compressed container file.

    Payloads are written as given; entry lengths in ``metadata`` are not
    adjusted, so a mismatching length produces a truncated container.
    """
    path = Path(path)
    atomic_write_bytes(path, lz4.frame.compress(encode_container(metadata, payloads, version)))
    logger.debug(f"Wrote container {path}")
    return path
