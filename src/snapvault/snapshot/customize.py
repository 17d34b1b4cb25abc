"""
Customize profile → template conversion.

A Customize profile (as carried by containers and capture data) is JSON of
the form ``{"Bones": {name: {"Translation": v, "Rotation": v, "Scaling": v}}}``
with vectors as ``{"X", "Y", "Z"}``. The template form that the Customize
tool accepts on import is::

    base64(gzip(0x04 + json({"Version": 4, "Bones": {...}, "IsWriteProtected": false})))
"""

import base64
import binascii
import gzip
import json
import logging
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)


TEMPLATE_VERSION = 4

_ZERO = {"X": 0.0, "Y": 0.0, "Z": 0.0}
_ONE = {"X": 1.0, "Y": 1.0, "Z": 1.0}


def _vector(value: Any, default: Dict[str, float]) -> Dict[str, float]:
    if not isinstance(value, dict):
        return dict(default)
    vector = {}
    for axis in ("X", "Y", "Z"):
        component = value.get(axis)
        vector[axis] = float(component) if component is not None else default[axis]
    return vector


def decode_profile_base64(encoded: str) -> Optional[str]:
    """Decode a base64 Customize profile to its JSON text, or None."""
    if not encoded:
        return None
    try:
        return base64.b64decode(encoded, validate=False).decode("utf-8")
    except (binascii.Error, ValueError) as e:
        logger.warning(f"Customize payload is not valid base64 text: {e}")
        return None


def build_template(profile: Dict[str, Any]) -> str:
    """
    Build the template string for a parsed profile.

    Raises:
        ValueError: If ``Bones`` is present but not a mapping
    """
    bones = profile.get("Bones")
    if not bones:
        return ""
    if not isinstance(bones, dict):
        raise ValueError("Customize profile 'Bones' must be a mapping")

    template_bones = {}
    for name, transform in bones.items():
        transform = transform if isinstance(transform, dict) else {}
        template_bones[name] = {
            "Translation": _vector(transform.get("Translation"), _ZERO),
            "Rotation": _vector(transform.get("Rotation"), _ZERO),
            "Scaling": _vector(transform.get("Scaling"), _ONE),
        }

    document = {
        "Version": TEMPLATE_VERSION,
        "Bones": template_bones,
        "IsWriteProtected": False,
    }
    body = json.dumps(document, separators=(",", ":")).encode("utf-8")
    compressed = gzip.compress(bytes([TEMPLATE_VERSION]) + body)
    return base64.b64encode(compressed).decode("ascii")


def derive_template(profile_json: Optional[str]) -> str:
    """
    Derive a template from profile JSON text.

    Never raises: any failure is logged and yields an empty template.
    """
    if not profile_json:
        return ""
    try:
        profile = json.loads(profile_json)
        if not isinstance(profile, dict):
            raise ValueError("Customize profile must be a JSON object")
        return build_template(profile)
    except (ValueError, TypeError) as e:
        logger.warning(f"Could not derive Customize template: {e}")
        return ""


def read_template(template: str) -> Optional[Dict[str, Any]]:
    """Decode a template string back to its JSON document, or None."""
    if not template:
        return None
    try:
        raw = gzip.decompress(base64.b64decode(template))
    except (binascii.Error, OSError, EOFError) as e:
        logger.warning(f"Could not decode Customize template: {e}")
        return None
    if not raw or raw[0] != TEMPLATE_VERSION:
        return None
    return json.loads(raw[1:].decode("utf-8"))
