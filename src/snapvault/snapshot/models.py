"""
Appearance history models.

A snapshot keeps two independent, append-only histories, one per
companion appearance system (Glamourer and Customize). Each entry links
its payload to the file map node that was current when it was captured.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar

from .customize import decode_profile_base64, derive_template


logger = logging.getLogger(__name__)


UNNAMED_ENTRY = "Unnamed Entry"


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 timestamp; unparsable values map to the epoch."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        except ValueError:
            logger.warning(f"Unparsable timestamp: {value!r}")
    return datetime.fromtimestamp(0, tz=timezone.utc)


@dataclass
class HistoryEntry:
    """
    Fields shared by every appearance history entry.

    Attributes:
        timestamp: When the entry was captured (UTC)
        description: Free-text label shown in history lists
        file_map_id: File map node current at capture time
    """
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    description: str = ""
    file_map_id: Optional[str] = None

    def preview(self) -> str:
        """One-line label: description and local capture time."""
        label = self.description.strip() or UNNAMED_ENTRY
        local = self.timestamp.astimezone().strftime("%Y-%m-%d %H:%M:%S")
        return f"{label}  ({local})"

    def _base_dict(self) -> Dict[str, Any]:
        return {
            "Timestamp": self.timestamp.isoformat(),
            "Description": self.description,
            "FileMapId": self.file_map_id,
        }

    @staticmethod
    def _base_kwargs(data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "timestamp": parse_timestamp(data.get("Timestamp")),
            "description": data.get("Description") or "",
            "file_map_id": data.get("FileMapId") or None,
        }


@dataclass
class GlamourerHistoryEntry(HistoryEntry):
    """Glamourer design payload (an opaque base64 string)."""
    glamourer_string: str = ""

    @property
    def payload(self) -> str:
        return self.glamourer_string

    def to_dict(self) -> Dict[str, Any]:
        data = self._base_dict()
        data["GlamourerString"] = self.glamourer_string
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GlamourerHistoryEntry":
        return cls(glamourer_string=data.get("GlamourerString") or "", **cls._base_kwargs(data))


@dataclass
class CustomizeHistoryEntry(HistoryEntry):
    """
    Customize profile payload plus its derived template.

    Attributes:
        customize_data: Base64 of the profile JSON, as captured
        customize_template: Derived template string (may be empty)
    """
    customize_data: str = ""
    customize_template: str = ""

    @property
    def payload(self) -> str:
        return self.customize_data

    @classmethod
    def create_from_base64(
        cls,
        description: str,
        base64_data: str,
        file_map_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> "CustomizeHistoryEntry":
        """
        Create an entry from a base64 profile, deriving the template.

        A payload that cannot be decoded or converted still produces an
        entry; only the template is left empty.
        """
        template = derive_template(decode_profile_base64(base64_data))
        return cls(
            timestamp=timestamp or datetime.now(timezone.utc),
            description=description,
            file_map_id=file_map_id,
            customize_data=base64_data or "",
            customize_template=template,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = self._base_dict()
        data["CustomizeData"] = self.customize_data
        data["CustomizeTemplate"] = self.customize_template
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CustomizeHistoryEntry":
        return cls(
            customize_data=data.get("CustomizeData") or "",
            customize_template=data.get("CustomizeTemplate") or "",
            **cls._base_kwargs(data),
        )


E = TypeVar("E", GlamourerHistoryEntry, CustomizeHistoryEntry)


class History(Generic[E]):
    """Append-only list of history entries of one kind."""

    entry_type: Type[E]

    def __init__(self, entries: Optional[List[E]] = None):
        self._entries: List[E] = list(entries or [])

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(self._entries)

    @property
    def entries(self) -> List[E]:
        return list(self._entries)

    @property
    def last(self) -> Optional[E]:
        return self._entries[-1] if self._entries else None

    def append(self, entry: E) -> E:
        self._entries.append(entry)
        return entry

    def to_dict(self) -> Dict[str, Any]:
        return {"Entries": [entry.to_dict() for entry in self._entries]}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]):
        if not isinstance(data, dict):
            return cls()
        raw_entries = data.get("Entries") or []
        return cls([cls.entry_type.from_dict(item) for item in raw_entries if isinstance(item, dict)])


class GlamourerHistory(History[GlamourerHistoryEntry]):
    entry_type = GlamourerHistoryEntry


class CustomizeHistory(History[CustomizeHistoryEntry]):
    entry_type = CustomizeHistoryEntry


@dataclass
class SnapshotHistories:
    """
    Both appearance histories of a snapshot.

    The ``record_*`` helpers skip a capture identical to the latest entry so
    repeated captures of an unchanged appearance do not grow the history.
    """
    glamourer: GlamourerHistory = field(default_factory=GlamourerHistory)
    customize: CustomizeHistory = field(default_factory=CustomizeHistory)

    def record_glamourer(
        self,
        description: str,
        glamourer_string: str,
        file_map_id: Optional[str],
    ) -> Optional[GlamourerHistoryEntry]:
        if not glamourer_string:
            return None
        last = self.glamourer.last
        if last is not None and last.glamourer_string == glamourer_string:
            logger.debug("Glamourer payload unchanged, history entry skipped")
            return None
        return self.glamourer.append(GlamourerHistoryEntry(
            description=description,
            file_map_id=file_map_id,
            glamourer_string=glamourer_string,
        ))

    def record_customize(
        self,
        description: str,
        customize_base64: str,
        file_map_id: Optional[str],
    ) -> Optional[CustomizeHistoryEntry]:
        if not customize_base64:
            return None
        last = self.customize.last
        if last is not None and last.customize_data == customize_base64:
            logger.debug("Customize payload unchanged, history entry skipped")
            return None
        return self.customize.append(
            CustomizeHistoryEntry.create_from_base64(description, customize_base64, file_map_id)
        )
