"""
File map chain: the version history of a snapshot's logical-path → hash map.

Each node stores only the entries that differ from its parent. The full
view of a node (its effective mapping) is the fold of ``changes`` from the
root down to that node, later entries winning. An empty-string hash in
``changes`` is a deletion marker that removes the key from the
accumulated map.

Nodes live in an arena (an ordered list) with an id → position index.
Parent links are followed through the index, so a damaged file can yield a
dangling parent or a cycle. Both are reported as ``CorruptChain`` rather
than looping or silently truncating.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Mapping, Optional

from requests.structures import CaseInsensitiveDict

from ..core.exceptions import CorruptChain
from .hashing import hashes_equal


logger = logging.getLogger(__name__)


MAX_CHAIN_DEPTH = 64
REMOVED = ""


def new_node_id() -> str:
    return uuid.uuid4().hex


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def path_map(source: Optional[Mapping[str, str]] = None) -> CaseInsensitiveDict:
    """Build a case-insensitive logical-path → hash map."""
    return CaseInsensitiveDict(source or {})


@dataclass
class FileMapNode:
    """
    One diff step in a snapshot's mapping history.

    Attributes:
        id: Opaque unique id (uuid4 hex)
        parent_id: Id of the node this one overlays; None for a root
        changes: Logical paths whose hash differs from the parent
            (empty-string hash = removed)
        manipulation_override: Manipulation payload captured with this node
        created_at: ISO-8601 UTC timestamp
    """
    id: str
    parent_id: Optional[str] = None
    changes: CaseInsensitiveDict = field(default_factory=CaseInsensitiveDict)
    manipulation_override: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "Id": self.id,
            "BaseId": self.parent_id,
            "Changes": dict(self.changes.items()),
            "Timestamp": self.created_at,
            "ManipulationString": self.manipulation_override,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileMapNode":
        if not isinstance(data, dict):
            raise CorruptChain(f"File map node is not an object: {data!r}")
        parent_id = str(data["BaseId"]) if data.get("BaseId") else None
        changes = data.get("Changes") or {}
        if not isinstance(changes, dict):
            raise CorruptChain(f"File map node {data.get('Id')!r} has malformed changes", data.get("Id"))
        return cls(
            id=str(data.get("Id") or ""),
            parent_id=parent_id,
            changes=path_map({str(k): "" if v is None else str(v) for k, v in changes.items()}),
            manipulation_override=data.get("ManipulationString"),
            created_at=data.get("Timestamp") or "",
        )


def apply_changes(base: Mapping[str, str], changes: Mapping[str, str]) -> CaseInsensitiveDict:
    """Overlay ``changes`` onto ``base``; an empty hash removes the key."""
    result = path_map(base)
    for logical_path, blob_hash in changes.items():
        if not blob_hash:
            result.pop(logical_path, None)
        else:
            result[logical_path] = blob_hash
    return result


def diff_mappings(
    new_mapping: Mapping[str, str],
    current_mapping: Mapping[str, str],
    include_removals: bool = True,
) -> CaseInsensitiveDict:
    """
    Compute the minimal changes turning ``current_mapping`` into ``new_mapping``.

    Added and changed keys carry their new hash. With ``include_removals``,
    keys missing from ``new_mapping`` are emitted with the empty-string
    deletion marker; without it, removals are not expressed and the
    resulting node keeps those keys alive.
    """
    current = path_map(current_mapping)
    incoming = path_map(new_mapping)
    changes = path_map()

    for logical_path, blob_hash in incoming.items():
        existing = current.get(logical_path)
        if existing is None or not hashes_equal(existing, blob_hash):
            changes[logical_path] = blob_hash

    if include_removals:
        for logical_path in current.keys():
            if logical_path not in incoming:
                changes[logical_path] = REMOVED

    return changes


class FileMapChain:
    """
    Append-only arena of FileMapNodes.

    Example:
        >>> chain = FileMapChain()
        >>> root = chain.append(None, {"a.tex": "AA"})
        >>> child = chain.append(root.id, {"b.tex": "BB"})
        >>> dict(chain.resolve(child.id))
        {'a.tex': 'AA', 'b.tex': 'BB'}
    """

    def __init__(self, nodes: Optional[List[FileMapNode]] = None, max_depth: int = MAX_CHAIN_DEPTH):
        self.max_depth = max_depth
        self._nodes: List[FileMapNode] = []
        self._index: Dict[str, int] = {}
        for node in nodes or []:
            self._add(node)

    def _add(self, node: FileMapNode) -> None:
        if not node.id:
            raise CorruptChain("File map node without an id")
        key = node.id.lower()
        if key in self._index:
            raise CorruptChain(f"Duplicate file map node id: {node.id}", node.id)
        self._index[key] = len(self._nodes)
        self._nodes.append(node)

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[FileMapNode]:
        return iter(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return isinstance(node_id, str) and node_id.lower() in self._index

    @property
    def nodes(self) -> List[FileMapNode]:
        return list(self._nodes)

    def get(self, node_id: Optional[str]) -> Optional[FileMapNode]:
        if not node_id:
            return None
        position = self._index.get(node_id.lower())
        return self._nodes[position] if position is not None else None

    def append(
        self,
        parent_id: Optional[str],
        changes: Mapping[str, str],
        manipulation_override: Optional[str] = None,
        created_at: Optional[str] = None,
    ) -> FileMapNode:
        """
        Append a node overlaying ``changes`` on ``parent_id`` (or a root).

        Raises:
            CorruptChain: If ``parent_id`` names no node in this chain
        """
        if parent_id is not None and parent_id not in self:
            raise CorruptChain(f"Parent file map {parent_id} does not exist", parent_id)

        node = FileMapNode(
            id=new_node_id(),
            parent_id=self.get(parent_id).id if parent_id is not None else None,
            changes=path_map(changes),
            manipulation_override=manipulation_override,
            created_at=created_at or utc_now_iso(),
        )
        self._add(node)
        logger.debug(
            f"Appended file map {node.id} (parent={node.parent_id}, changes={len(node.changes)})"
        )
        return node

    def lineage(self, node_id: str) -> List[FileMapNode]:
        """
        Nodes from the root down to ``node_id`` (inclusive).

        Raises:
            CorruptChain: On an unknown id, a dangling parent, a cycle, or a
                chain deeper than ``max_depth`` hops
        """
        node = self.get(node_id)
        if node is None:
            raise CorruptChain(f"File map {node_id} does not exist", node_id)

        path: List[FileMapNode] = []
        visited = set()
        while True:
            key = node.id.lower()
            if key in visited:
                raise CorruptChain(f"Cycle in file map chain at {node.id}", node.id)
            visited.add(key)
            path.append(node)

            if node.parent_id is None:
                break
            if len(path) > self.max_depth:
                raise CorruptChain(
                    f"File map chain exceeds {self.max_depth} hops at {node_id}", node_id
                )

            parent = self.get(node.parent_id)
            if parent is None:
                raise CorruptChain(
                    f"File map {node.id} references missing parent {node.parent_id}", node.id
                )
            node = parent

        path.reverse()
        return path

    def depth(self, node_id: str) -> int:
        """Number of parent hops from ``node_id`` to its root."""
        return len(self.lineage(node_id)) - 1

    def resolve(self, node_id: str) -> CaseInsensitiveDict:
        """Effective mapping of a node: left fold of changes from root to node."""
        resolved = path_map()
        for node in self.lineage(node_id):
            resolved = apply_changes(resolved, node.changes)
        return resolved

    def resolve_manipulation(self, node_id: Optional[str], default: str = "") -> str:
        """Manipulation payload recorded with a node, else ``default``."""
        node = self.get(node_id)
        if node is not None and node.manipulation_override is not None:
            return node.manipulation_override
        return default

    def to_list(self) -> List[Dict[str, Any]]:
        return [node.to_dict() for node in self._nodes]

    @classmethod
    def from_list(cls, data: Optional[List[Dict[str, Any]]]) -> "FileMapChain":
        if data is None:
            return cls()
        if not isinstance(data, list):
            raise CorruptChain("File maps must be a list")
        return cls([FileMapNode.from_dict(item) for item in data])
