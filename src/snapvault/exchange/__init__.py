"""
Import and export of snapshots in third-party formats.

- MCDF containers (import): ``McdfImporter``, ``read_container``, ``write_container``
- Penumbra mod packs (export): ``PmpExporter``
- Character packs (import and export): ``PcpImporter``, ``PcpExporter``
- Material dependency expansion and the manipulation payload codec
"""

from .container import (
    Container,
    ContainerFileEntry,
    ContainerMetadata,
    read_container,
    write_container,
)
from .dependencies import expand_material_dependencies
from .manipulations import convert_manipulations, decode_manipulations, encode_manipulations
from .material import MaterialFile, MaterialParseError
from .mcdf_import import ImportResult, McdfImporter
from .pcp import PcpActor, PcpCharacterData, PcpModData, decode_glamourer_design, encode_glamourer_design
from .pcp_export import PcpExporter
from .pcp_import import PcpImporter
from .pmp_export import ExportResult, PmpExporter

__all__ = [
    "Container",
    "ContainerFileEntry",
    "ContainerMetadata",
    "read_container",
    "write_container",
    "expand_material_dependencies",
    "convert_manipulations",
    "decode_manipulations",
    "encode_manipulations",
    "MaterialFile",
    "MaterialParseError",
    "ImportResult",
    "McdfImporter",
    "ExportResult",
    "PmpExporter",
    "PcpActor",
    "PcpCharacterData",
    "PcpModData",
    "decode_glamourer_design",
    "encode_glamourer_design",
    "PcpExporter",
    "PcpImporter",
]
