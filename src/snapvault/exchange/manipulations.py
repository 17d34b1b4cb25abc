"""
Manipulation payload codec.

A manipulation payload is ``base64(gzip(version byte + body))``:

- version 0: UTF-8 JSON, either a list of ``{"Type", "Manipulation"}``
  entries or a mapping of type name -> list of manipulation objects
- versions 1 and 2: packed binary records (``META0001`` / ``META0002``
  headers), see ``meta_binary``
"""

import base64
import binascii
import gzip
import json
import logging
import zlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .meta_binary import MetaFormatError, read_v1, read_v2


logger = logging.getLogger(__name__)


MANIPULATION_TYPES = (
    "Imc", "Eqp", "Eqdp", "Est", "Gmp", "Rsp", "Atch", "Shp", "Atr", "GlobalEqp",
)


@dataclass
class ManipulationPayload:
    """Decoded manipulation payload."""
    version: Optional[int] = None
    entries: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.entries


def _entries_from_json(document: Any) -> List[Dict[str, Any]]:
    entries: List[Dict[str, Any]] = []
    if isinstance(document, list):
        for item in document:
            if isinstance(item, dict) and "Type" in item:
                entries.append({"Type": item.get("Type"), "Manipulation": item.get("Manipulation")})
    elif isinstance(document, dict):
        for type_name in MANIPULATION_TYPES:
            for item in document.get(type_name) or []:
                entries.append({"Type": type_name, "Manipulation": item})
        unknown = set(document) - set(MANIPULATION_TYPES)
        if unknown:
            logger.debug(f"Ignoring unknown manipulation types: {sorted(unknown)}")
    else:
        raise ValueError("Manipulation body must be a JSON list or object")
    return entries


def decode_manipulations(payload: Optional[str]) -> ManipulationPayload:
    """
    Decode a manipulation payload.

    Never raises: an empty payload gives an empty result, an undecodable
    one is logged and gives an empty result.
    """
    if not payload:
        return ManipulationPayload()

    try:
        raw = gzip.decompress(base64.b64decode(payload))
    except (binascii.Error, OSError, EOFError, zlib.error) as e:
        logger.warning(f"Could not decode manipulation payload: {e}")
        return ManipulationPayload()

    if not raw:
        return ManipulationPayload()

    version, body = raw[0], raw[1:]
    if version == 0:
        try:
            return ManipulationPayload(0, _entries_from_json(json.loads(body.decode("utf-8"))))
        except (UnicodeDecodeError, ValueError) as e:
            logger.warning(f"Invalid version 0 manipulation body: {e}")
            return ManipulationPayload(0)

    if version in (1, 2):
        reader = read_v1 if version == 1 else read_v2
        try:
            return ManipulationPayload(version, reader(body))
        except MetaFormatError as e:
            logger.warning(f"Invalid version {version} manipulation body: {e}")
            return ManipulationPayload(version)

    logger.warning(f"Unknown manipulation payload version {version}")
    return ManipulationPayload(version)


def convert_manipulations(payload: Optional[str]) -> List[Dict[str, Any]]:
    """Manipulation entries ready for a mod manifest."""
    return decode_manipulations(payload).entries


def encode_manipulations(entries: List[Dict[str, Any]]) -> str:
    """Encode entries as a version 0 payload."""
    body = json.dumps(entries, separators=(",", ":")).encode("utf-8")
    return base64.b64encode(gzip.compress(b"\x00" + body)).decode("ascii")
