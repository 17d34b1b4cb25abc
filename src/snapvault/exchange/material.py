"""
Minimal reader for material (``.mtrl``) resources.

Only the parts needed to find texture dependencies are decoded: the
header, the texture/UV-set/colour-set offset tables and the string table.

Layout (little-endian)::

    u32 version
    u16 file size
    u16 data set size
    u16 string table size
    u16 shader package name offset
    u8  texture count
    u8  uv set count
    u8  colour set count
    u8  additional data size
    (u16 offset, u16 flags) * texture count
    (u16 offset, u16 index) * uv set count
    (u16 offset, u16 index) * colour set count
    string table (NUL-terminated strings addressed by offset)
"""

import logging
import struct
from dataclasses import dataclass, field
from typing import Iterator, List, Optional


logger = logging.getLogger(__name__)


MATERIAL_EXTENSION = ".mtrl"
DX11_FLAG = 0x8000
DX11_PREFIX = "--"

_HEADER = struct.Struct("<IHHHHBBBB")
_PAIR = struct.Struct("<HH")


class MaterialParseError(ValueError):
    """Material bytes are too short or internally inconsistent."""


@dataclass
class MaterialTexture:
    path: str
    flags: int = 0

    @property
    def is_dx11(self) -> bool:
        return bool(self.flags & DX11_FLAG)


@dataclass
class MaterialFile:
    version: int
    shader_package: str = ""
    textures: List[MaterialTexture] = field(default_factory=list)
    uv_sets: List[str] = field(default_factory=list)
    color_sets: List[str] = field(default_factory=list)

    @classmethod
    def parse(cls, data: bytes) -> "MaterialFile":
        """
        Parse material bytes.

        Raises:
            MaterialParseError: If the data is truncated or malformed
        """
        if len(data) < _HEADER.size:
            raise MaterialParseError(f"Material too short for header ({len(data)} bytes)")

        (version, _file_size, _data_set_size, string_table_size, shader_offset,
         texture_count, uv_count, color_count, _additional) = _HEADER.unpack_from(data, 0)

        offset = _HEADER.size
        tables = []
        for count in (texture_count, uv_count, color_count):
            end = offset + count * _PAIR.size
            if end > len(data):
                raise MaterialParseError("Material offset tables exceed file size")
            tables.append([_PAIR.unpack_from(data, offset + i * _PAIR.size) for i in range(count)])
            offset = end

        strings_start = offset
        strings_end = strings_start + string_table_size
        if strings_end > len(data):
            raise MaterialParseError("Material string table exceeds file size")
        strings = data[strings_start:strings_end]

        texture_pairs, uv_pairs, color_pairs = tables
        return cls(
            version=version,
            shader_package=_read_string(strings, shader_offset),
            textures=[MaterialTexture(_read_string(strings, o), flags) for o, flags in texture_pairs],
            uv_sets=[_read_string(strings, o) for o, _ in uv_pairs],
            color_sets=[_read_string(strings, o) for o, _ in color_pairs],
        )

    def texture_paths(self) -> Iterator[str]:
        """
        Every texture path this material may load.

        DX11 textures yield their ``--`` spelling first, then the path as
        written when it differs.
        """
        for texture in self.textures:
            if not texture.path or not texture.path.strip():
                continue
            if texture.is_dx11:
                alternate = dx11_path(texture.path)
                if alternate:
                    yield alternate
                if alternate.lower() != texture.path.lower():
                    yield texture.path
                continue
            yield texture.path


def _read_string(strings: bytes, offset: int) -> str:
    if offset >= len(strings):
        raise MaterialParseError(f"String offset {offset} outside string table")
    end = strings.find(b"\x00", offset)
    if end == -1:
        end = len(strings)
    return strings[offset:end].decode("utf-8", errors="replace")


def dx11_path(path: str) -> str:
    """Insert the DX11 ``--`` marker before the file name component."""
    normalized = path.replace("\\", "/")
    directory, sep, name = normalized.rpartition("/")
    if name.startswith(DX11_PREFIX):
        return normalized
    return f"{directory}{sep}{DX11_PREFIX}{name}"


def build_material(texture_paths: List[str], dx11_flags: Optional[List[bool]] = None,
                   shader_package: str = "character.shpk", version: int = 0x01030000) -> bytes:
    """Encode a material with the given textures (no UV or colour sets)."""
    dx11_flags = dx11_flags or [False] * len(texture_paths)
    table = bytearray()
    offsets = []
    for path in texture_paths:
        offsets.append(len(table))
        table += path.encode("utf-8") + b"\x00"
    shader_offset = len(table)
    table += shader_package.encode("utf-8") + b"\x00"
    while len(table) % 4:
        table += b"\x00"

    pairs = b"".join(
        _PAIR.pack(o, DX11_FLAG if dx11 else 0) for o, dx11 in zip(offsets, dx11_flags)
    )
    body_size = _HEADER.size + len(pairs) + len(table)
    header = _HEADER.pack(version, body_size, 0, len(table), shader_offset, len(texture_paths), 0, 0, 0)
    return header + pairs + bytes(table)
