# src/replica_backfill/models.py
"""
Record model for copy tasks.

Each line of the difference list describes one object version present on
the source but missing or stale on the destination. `DiffRecord` is the
parsed, immutable form of such a line.
"""

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Type, TypeVar

from replica_backfill.exceptions import InputError

_T = TypeVar("_T")

_NANOS: re.Pattern[str] = re.compile(r"(\.\d{6})\d+")


class Outcome(Enum):
    """The result log a record ends up in."""

    SUCCESS = "success"
    FAILURE = "failure"


def parse_timestamp(value: str) -> datetime:
    """
    Parse an RFC 3339 timestamp such as ``2021-06-01T10:00:00.123456789Z``.

    Fractional seconds beyond microseconds are truncated. Values without a
    UTC offset, including bare dates, are rejected with `ValueError`.
    """
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    value = _NANOS.sub(r"\1", value)
    parsed: datetime = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        raise ValueError(f"timestamp {value!r} has no UTC offset")
    return parsed


def format_timestamp(value: datetime) -> str:
    """Format a timestamp in UTC the way MinIO expects replication times."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text: str = value.astimezone(timezone.utc).isoformat(timespec="microseconds")
    if text.endswith("+00:00"):
        text = text[:-6] + "Z"
    return text


def _field(raw: Mapping[str, Any], name: str, kind: Type[_T], default: _T) -> _T:
    value: Any = raw.get(name)
    if value is None:
        return default
    # bool is a subclass of int, so reject it explicitly for numeric fields
    if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
        raise InputError(
            f"Field '{name}' must be of type {kind.__name__}, got {value!r}"
        )
    return value


@dataclass(frozen=True)
class DiffRecord:
    """
    One object (and optional version) to copy from source to destination.

    Attributes:
        key (str): The object key. Never empty.
        status (str): Listing status reported by the diff tool.
        type (str): Object type reported by the diff tool.
        last_modified (datetime, optional): Source modification time.
        size (int): Object size in bytes.
        etag (str): Source ETag the fetched bytes must match.
        url (str): Optional object URL.
        version_id (str): Version to copy; empty for unversioned objects.
        version_ordinal (int): Position of the version in its history.
        version_index (int): Index of the version in the listing.
        is_delete_marker (bool): Whether the version is a delete marker.
        raw (Mapping[str, Any]): The JSON object the record was parsed from.
    """

    key: str
    status: str = ""
    type: str = ""
    last_modified: Optional[datetime] = None
    size: int = 0
    etag: str = ""
    url: str = ""
    version_id: str = ""
    version_ordinal: int = 0
    version_index: int = 0
    is_delete_marker: bool = False
    raw: Mapping[str, Any] = field(
        default_factory=lambda: MappingProxyType({}), compare=False, repr=False
    )

    @classmethod
    def from_json(cls, line: str) -> "DiffRecord":
        """
        Parse one line of the difference list.

        Args:
            line (str): A JSON object serialized on a single line.

        Returns:
            DiffRecord: The parsed record.

        Raises:
            InputError: If the line is not a valid record.
        """
        try:
            raw: Any = json.loads(line)
        except json.JSONDecodeError as e:
            raise InputError(f"Malformed diff entry {line!r}: {e}") from e
        if not isinstance(raw, dict):
            raise InputError(f"Diff entry is not a JSON object: {line!r}")
        return cls.from_dict(raw)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "DiffRecord":
        key: str = _field(raw, "key", str, "")
        if not key:
            raise InputError(f"Diff entry has no object key: {dict(raw)!r}")

        last_modified: Optional[datetime] = None
        timestamp: str = _field(raw, "lastModified", str, "")
        if timestamp:
            try:
                last_modified = parse_timestamp(timestamp)
            except ValueError as e:
                raise InputError(
                    f"Invalid lastModified {timestamp!r} for '{key}'"
                ) from e

        return cls(
            key=key,
            status=_field(raw, "status", str, ""),
            type=_field(raw, "type", str, ""),
            last_modified=last_modified,
            size=_field(raw, "size", int, 0),
            etag=_field(raw, "etag", str, ""),
            url=_field(raw, "url", str, ""),
            version_id=_field(raw, "versionId", str, ""),
            version_ordinal=_field(raw, "versionOrdinal", int, 0),
            version_index=_field(raw, "versionIndex", int, 0),
            is_delete_marker=_field(raw, "isDeleteMarker", bool, False),
            raw=MappingProxyType(dict(raw)),
        )

    def as_dict(self) -> Dict[str, Any]:
        """
        The JSON object for this record.

        Records read from input return their original object untouched;
        records built in code omit empty optional fields.
        """
        if self.raw:
            return dict(self.raw)
        data: Dict[str, Any] = {
            "status": self.status,
            "type": self.type,
            "lastModified": (
                format_timestamp(self.last_modified) if self.last_modified else None
            ),
            "size": self.size,
            "key": self.key,
            "etag": self.etag,
        }
        optional: Dict[str, Any] = {
            "url": self.url,
            "versionId": self.version_id,
            "versionOrdinal": self.version_ordinal,
            "versionIndex": self.version_index,
            "isDeleteMarker": self.is_delete_marker,
        }
        data.update({name: value for name, value in optional.items() if value})
        return {name: value for name, value in data.items() if value is not None}

    def to_json(self) -> str:
        """Serialize the record as one line of a result log."""
        return json.dumps(self.as_dict(), separators=(",", ":"))

    def describe(self) -> str:
        """Short `key (version)` label for log messages."""
        return f"{self.key} ({self.version_id})" if self.version_id else self.key
