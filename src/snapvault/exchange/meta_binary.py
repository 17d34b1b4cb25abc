"""
Binary manipulation bodies (payload versions 1 and 2).

Both versions store packed little-endian identifier/entry records after an
8-byte magic:

- version 1 (``META0001``): fixed section order, each section an ``i32``
  count followed by that many records. Imc, Eqp, Eqdp, Est, Rsp, Gmp and
  GlobalEqp are always present; Atch, Shp and Atr are optional trailers.
- version 2 (``META0002``): tagged sections, each ``u32 tag, i32 count``
  then the records. Tags are the type name packed big-endian into a u32
  (``IMC\\0``, ``EQDP``, ...); unknown or empty sections may appear in any
  order.

Record layouts (identifier | entry)::

    Imc        u16 primary, u8 variant, u8 object type, u16 secondary,
               u8 equip slot, u8 body slot  | u8 material, u8 decal,
               u16 attribute+sound, u8 vfx, u8 material animation
    Eqp        u16 set, u8 slot, pad        | u64 flags
    Eqdp       u16 set, u8 slot, pad, u16 gender/race | u16 flags
    Est        u16 set, u8 slot, pad, u16 gender/race | u16 skeleton id
    Rsp        u8 sub race, u8 attribute    | f32 value
    Gmp        u16 set                      | u64 packed entry
    GlobalEqp  u32 type, u16 condition, pad | (none)

Atch, Shp and Atr records carry game strings whose layout is not decoded
here; sections of those types end parsing, keeping what was read so far.
Enumerated fields are emitted as their numeric values.
"""

import logging
import struct
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple


logger = logging.getLogger(__name__)


V1_MAGIC = b"META0001"
V2_MAGIC = b"META0002"

_COUNT = struct.Struct("<i")
_TAG = struct.Struct("<I")

# Output order of converted manipulations
OUTPUT_ORDER = ("Imc", "Eqp", "Eqdp", "Est", "Gmp", "Rsp", "Atch", "Shp", "Atr", "GlobalEqp")
UNDECODED_TYPES = ("Atch", "Shp", "Atr")


class MetaFormatError(ValueError):
    """Binary manipulation body is truncated or inconsistent."""


def section_tag(name: str) -> int:
    """Version 2 section tag: up to four ASCII letters packed big-endian."""
    return int.from_bytes(name.upper().encode("ascii").ljust(4, b"\0"), "big")


def _imc_entry(material_id: int, decal_id: int, attribute_and_sound: int, vfx_id: int, animation_id: int) -> Dict[str, int]:
    return {
        "MaterialId": material_id,
        "DecalId": decal_id,
        "VfxId": vfx_id,
        "MaterialAnimationId": animation_id,
        "AttributeMask": attribute_and_sound & 0x3FF,
        "SoundId": attribute_and_sound >> 10,
    }


def _gmp_entry(value: int) -> Dict[str, Any]:
    return {
        "Enabled": bool(value & 0x1),
        "Animated": bool(value & 0x2),
        "RotationA": (value >> 2) & 0x3FF,
        "RotationB": (value >> 12) & 0x3FF,
        "RotationC": (value >> 22) & 0x3FF,
        "UnknownA": (value >> 32) & 0xF,
        "UnknownB": (value >> 36) & 0xF,
        "Value": value,
    }


def _scalar(value: Any) -> Any:
    return value


@dataclass(frozen=True)
class RecordLayout:
    type_name: str
    identifier: struct.Struct
    identifier_fields: Tuple[str, ...]
    entry: Optional[struct.Struct] = None
    entry_value: Callable[..., Any] = _scalar

    @property
    def record_size(self) -> int:
        return self.identifier.size + (self.entry.size if self.entry else 0)

    def read(self, data: bytes, offset: int) -> Tuple[Tuple[Any, ...], Dict[str, Any]]:
        """Decode one record at ``offset`` into (identifier key, manipulation object)."""
        if offset + self.record_size > len(data):
            raise MetaFormatError(f"{self.type_name} record at offset {offset} is truncated")

        key = self.identifier.unpack_from(data, offset)
        manipulation: Dict[str, Any] = dict(zip(self.identifier_fields, key))
        if self.entry is not None:
            values = self.entry.unpack_from(data, offset + self.identifier.size)
            manipulation["Entry"] = self.entry_value(*values)
        return key, manipulation

    def pack(self, identifier: Sequence[Any], entry: Sequence[Any] = ()) -> bytes:
        data = self.identifier.pack(*identifier)
        if self.entry is not None:
            data += self.entry.pack(*entry)
        return data


LAYOUTS: Dict[str, RecordLayout] = {
    layout.type_name: layout
    for layout in (
        RecordLayout(
            "Imc", struct.Struct("<HBBHBB"),
            ("PrimaryId", "Variant", "ObjectType", "SecondaryId", "EquipSlot", "BodySlot"),
            struct.Struct("<BBHBB"), _imc_entry,
        ),
        RecordLayout("Eqp", struct.Struct("<HBx"), ("SetId", "Slot"), struct.Struct("<Q")),
        RecordLayout("Eqdp", struct.Struct("<HBxH"), ("SetId", "Slot", "GenderRace"), struct.Struct("<H")),
        RecordLayout("Est", struct.Struct("<HBxH"), ("SetId", "Slot", "GenderRace"), struct.Struct("<H")),
        RecordLayout("Rsp", struct.Struct("<BB"), ("SubRace", "Attribute"), struct.Struct("<f")),
        RecordLayout("Gmp", struct.Struct("<H"), ("SetId",), struct.Struct("<Q"), _gmp_entry),
        RecordLayout("GlobalEqp", struct.Struct("<IHxx"), ("Type", "Condition")),
    )
}

V1_SECTIONS = ("Imc", "Eqp", "Eqdp", "Est", "Rsp", "Gmp", "GlobalEqp")
V1_TRAILERS = UNDECODED_TYPES

V2_TAGS: Dict[int, str] = {
    section_tag(name): name
    for name in ("Imc", "Eqp", "Eqdp", "Est", "Rsp", "Gmp", "Atch", "Shp", "Atr")
}
V2_TAGS[section_tag("Geqp")] = "GlobalEqp"


class _Collector:
    """Accumulates decoded records; a repeated identifier invalidates the body."""

    def __init__(self):
        self.by_type: Dict[str, List[Dict[str, Any]]] = {}
        self._seen = set()

    def add(self, type_name: str, key: Tuple[Any, ...], manipulation: Dict[str, Any]) -> None:
        if (type_name, key) in self._seen:
            raise MetaFormatError(f"Duplicate {type_name} manipulation {key}")
        self._seen.add((type_name, key))
        self.by_type.setdefault(type_name, []).append(manipulation)

    def entries(self) -> List[Dict[str, Any]]:
        return [
            {"Type": type_name, "Manipulation": manipulation}
            for type_name in OUTPUT_ORDER
            for manipulation in self.by_type.get(type_name, [])
        ]


def _read_count(data: bytes, offset: int) -> int:
    if offset + _COUNT.size > len(data):
        raise MetaFormatError(f"Section count at offset {offset} is truncated")
    count = _COUNT.unpack_from(data, offset)[0]
    if count < 0:
        raise MetaFormatError(f"Negative section count {count} at offset {offset}")
    return count


def _read_section(data: bytes, offset: int, layout: RecordLayout, count: int, collector: _Collector) -> int:
    for _ in range(count):
        key, manipulation = layout.read(data, offset)
        collector.add(layout.type_name, key, manipulation)
        offset += layout.record_size
    return offset


def read_v1(body: bytes) -> List[Dict[str, Any]]:
    """
    Decode a version 1 body (magic included).

    Raises:
        MetaFormatError: On a wrong magic, truncation or a duplicate record
    """
    if not body.startswith(V1_MAGIC):
        raise MetaFormatError("Version 1 manipulations do not start with META0001")

    collector = _Collector()
    offset = len(V1_MAGIC)
    for type_name in V1_SECTIONS:
        count = _read_count(body, offset)
        offset = _read_section(body, offset + _COUNT.size, LAYOUTS[type_name], count, collector)

    for type_name in V1_TRAILERS:
        if offset + _COUNT.size > len(body):
            break
        count = _read_count(body, offset)
        offset += _COUNT.size
        if count:
            logger.warning(f"{count} {type_name} manipulation(s) are not converted; stopping")
            break

    return collector.entries()


def read_v2(body: bytes) -> List[Dict[str, Any]]:
    """
    Decode a version 2 body (magic included).

    Raises:
        MetaFormatError: On a wrong magic, truncation or a duplicate record
    """
    if not body.startswith(V2_MAGIC):
        raise MetaFormatError("Version 2 manipulations do not start with META0002")

    collector = _Collector()
    offset = len(V2_MAGIC)
    while len(body) - offset > _TAG.size:
        tag = _TAG.unpack_from(body, offset)[0]
        offset += _TAG.size
        count = 0
        if len(body) - offset > _COUNT.size:
            count = _read_count(body, offset)
            offset += _COUNT.size
        if count == 0:
            continue

        type_name = V2_TAGS.get(tag)
        layout = LAYOUTS.get(type_name) if type_name else None
        if layout is None:
            logger.warning(f"Manipulation section {type_name or hex(tag)} with {count} record(s) is not converted; stopping")
            break
        offset = _read_section(body, offset, layout, count, collector)

    return collector.entries()


Records = Mapping[str, Sequence[Tuple[Sequence[Any], Sequence[Any]]]]


def pack_v1(records: Records) -> bytes:
    """Build a version 1 body (magic included) from raw identifier/entry tuples."""
    parts = [V1_MAGIC]
    for type_name in V1_SECTIONS:
        items = records.get(type_name, ())
        parts.append(_COUNT.pack(len(items)))
        parts.extend(LAYOUTS[type_name].pack(identifier, entry) for identifier, entry in items)
    parts.extend(_COUNT.pack(0) for _ in V1_TRAILERS)
    return b"".join(parts)


def pack_v2(records: Records) -> bytes:
    """Build a version 2 body (magic included) from raw identifier/entry tuples."""
    tags = {name: tag for tag, name in V2_TAGS.items()}
    parts = [V2_MAGIC]
    for type_name, items in records.items():
        parts.append(_TAG.pack(tags[type_name]))
        parts.append(_COUNT.pack(len(items)))
        parts.extend(LAYOUTS[type_name].pack(identifier, entry) for identifier, entry in items)
    return b"".join(parts)
