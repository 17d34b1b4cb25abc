"""
Character pack (``.pcp``) documents.

A character pack is a ZIP archive holding::

    meta.json           mod metadata (tagged "PCP")
    character.json      actor, Glamourer design and Customize template
    default_mod.json    logical path -> archive file manifest + manipulations
    files/<HASH><ext>   blob copies

Glamourer designs travel as JSON inside ``character.json`` and as a share
string in snapshot histories: ``base64(version byte + gzip(json))``. Older
strings may lack the version byte or the compression; decoding accepts all
three spellings.
"""

import base64
import binascii
import gzip
import json
import logging
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..snapshot.models import parse_timestamp


logger = logging.getLogger(__name__)


PCP_EXTENSION = ".pcp"
CHARACTER_ENTRY = "character.json"
PCP_TAG = "PCP"
DEFAULT_HOME_WORLD = 40
GLAMOURER_DESIGN_VERSION = 6
CHARACTER_DATA_VERSION = 1

_GZIP_MAGIC = b"\x1f\x8b"


def decode_glamourer_design(glamourer_string: str) -> Optional[Dict[str, Any]]:
    """
    Decode a Glamourer share string to its design object.

    Returns None for an empty or undecodable string.
    """
    if not glamourer_string or not glamourer_string.strip():
        return None
    try:
        data = base64.b64decode(glamourer_string)
        if data[:2] == _GZIP_MAGIC:
            text = gzip.decompress(data).decode("utf-8")
        elif data[1:3] == _GZIP_MAGIC:
            text = gzip.decompress(data[1:]).decode("utf-8")
        else:
            text = data.decode("utf-8")
        design = json.loads(text)
    except (binascii.Error, OSError, EOFError, zlib.error, UnicodeDecodeError, ValueError) as e:
        logger.warning(f"Could not decode Glamourer design: {e}")
        return None
    return design if isinstance(design, dict) else None


def encode_glamourer_design(design: Dict[str, Any]) -> str:
    """Encode a design object as a Glamourer share string."""
    body = json.dumps(design, separators=(",", ":")).encode("utf-8")
    return base64.b64encode(bytes([GLAMOURER_DESIGN_VERSION]) + gzip.compress(body)).decode("ascii")


@dataclass
class PcpActor:
    type: str = "Player"
    player_name: str = ""
    home_world: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"Type": self.type, "PlayerName": self.player_name, "HomeWorld": self.home_world}

    @classmethod
    def from_dict(cls, data: Any) -> "PcpActor":
        if not isinstance(data, dict):
            return cls()
        try:
            home_world = int(data.get("HomeWorld") or 0)
        except (TypeError, ValueError):
            home_world = 0
        return cls(
            type=str(data.get("Type") or "Player"),
            player_name=str(data.get("PlayerName") or ""),
            home_world=home_world,
        )


@dataclass
class PcpCharacterData:
    """
    Contents of ``character.json``.

    Attributes:
        actor: Character the pack was made from
        mod: Mod name the pack installs as
        collection: Collection name the pack installs into
        time: Capture time
        note: Free text
        glamourer: ``{"Version": 1, "Design": {...}}`` or a legacy design object
        customize_plus: ``{"Template": {...}}`` or a legacy profile object
    """
    version: int = CHARACTER_DATA_VERSION
    actor: PcpActor = field(default_factory=PcpActor)
    mod: str = ""
    collection: str = ""
    time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    note: str = ""
    glamourer: Optional[Dict[str, Any]] = None
    customize_plus: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "Version": self.version,
            "Actor": self.actor.to_dict(),
            "Mod": self.mod,
            "Collection": self.collection,
            "Time": self.time.isoformat(),
            "Note": self.note,
            "CustomizePlus": self.customize_plus,
            "Glamourer": self.glamourer,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PcpCharacterData":
        glamourer = data.get("Glamourer")
        customize_plus = data.get("CustomizePlus")
        return cls(
            version=data.get("Version") or CHARACTER_DATA_VERSION,
            actor=PcpActor.from_dict(data.get("Actor")),
            mod=data.get("Mod") or "",
            collection=data.get("Collection") or "",
            time=parse_timestamp(data.get("Time")),
            note=data.get("Note") or "",
            glamourer=glamourer if isinstance(glamourer, dict) else None,
            customize_plus=customize_plus if isinstance(customize_plus, dict) else None,
        )


@dataclass
class PcpModData:
    """Contents of a character pack's ``default_mod.json``."""
    version: int = 0
    files: Dict[str, str] = field(default_factory=dict)
    file_swaps: Dict[str, str] = field(default_factory=dict)
    manipulations: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "Version": self.version,
            "Files": self.files,
            "FileSwaps": self.file_swaps,
            "Manipulations": self.manipulations,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PcpModData":
        files = data.get("Files") or {}
        swaps = data.get("FileSwaps") or {}
        manipulations = data.get("Manipulations") or []
        return cls(
            version=data.get("Version") or 0,
            files={str(k): str(v) for k, v in files.items() if isinstance(v, str)} if isinstance(files, dict) else {},
            file_swaps=dict(swaps) if isinstance(swaps, dict) else {},
            manipulations=[m for m in manipulations if isinstance(m, dict)] if isinstance(manipulations, list) else [],
        )
