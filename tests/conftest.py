# tests/conftest.py
"""
Pytest configuration and fixtures for the replica-backfill tests.

This module provides:
- In-memory fake object stores implementing the `ObjectStore` protocol,
  recording every call and the number of operations in flight.
- Helpers for writing difference lists and reading result logs.
- An isolated `AppConfig` rooted in a temporary directory.
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import pytest

from replica_backfill.config import AppConfig
from replica_backfill.exceptions import StoreError
from replica_backfill.feeder import DIFF_FILE
from replica_backfill.sink import FAILURE_LOG, SUCCESS_LOG
from replica_backfill.store import ObjectInfo, PutOptions, RemoveOptions

SOURCE_MTIME: datetime = datetime(2021, 6, 1, 10, 0, 0, tzinfo=timezone.utc)


class FakeStream:
    """An in-memory object body."""

    def __init__(self, data: bytes) -> None:
        self._data: bytes = data
        self.closed: bool = False

    async def read(self, amt: Optional[int] = None) -> bytes:
        return self._data

    def close(self) -> None:
        self.closed = True


@dataclass
class InFlightTracker:
    """Counts store operations running at the same time, across stores."""

    current: int = 0
    peak: int = 0

    def enter(self) -> None:
        self.current += 1
        self.peak = max(self.peak, self.current)

    def exit(self) -> None:
        self.current -= 1


@dataclass
class FakeStore:
    """
    An in-memory `ObjectStore`.

    Attributes:
        objects: Stored objects keyed by (key, version ID).
        errors: Errors to raise, keyed by operation name.
        calls: Every call as (operation, key, version ID).
        uploads: Every upload as (key, body, size, options).
        deletes: Every delete as (key, version ID, options).
        streams: Every stream handed out by `fetch`.
        delay_s: Simulated latency of every operation.
        tracker: Shared in-flight operation counter.
        on_call: Hook invoked with the operation name before it runs.
    """

    objects: Dict[Tuple[str, str], Tuple[bytes, ObjectInfo]] = field(
        default_factory=dict
    )
    errors: Dict[str, StoreError] = field(default_factory=dict)
    calls: List[Tuple[str, str, str]] = field(default_factory=list)
    uploads: List[Tuple[str, bytes, int, PutOptions]] = field(default_factory=list)
    deletes: List[Tuple[str, str, RemoveOptions]] = field(default_factory=list)
    streams: List[FakeStream] = field(default_factory=list)
    delay_s: float = 0.0
    tracker: InFlightTracker = field(default_factory=InFlightTracker)
    on_call: Optional[Callable[[str], None]] = None

    def add(self, key: str, data: bytes = b"data", **info: Any) -> ObjectInfo:
        """Store an object; `info` overrides `ObjectInfo` fields."""
        fields: Dict[str, Any] = {"etag": "abc", "size": len(data)}
        fields.update(info)
        object_info: ObjectInfo = ObjectInfo(key=key, **fields)
        self.objects[(key, object_info.version_id)] = (data, object_info)
        return object_info

    def ops(self, operation: str) -> List[Tuple[str, str, str]]:
        return [call for call in self.calls if call[0] == operation]

    async def _begin(self, operation: str, key: str, version_id: str) -> None:
        self.calls.append((operation, key, version_id))
        if self.on_call is not None:
            self.on_call(operation)
        self.tracker.enter()
        try:
            await asyncio.sleep(self.delay_s)
        finally:
            self.tracker.exit()
        if operation in self.errors:
            raise self.errors[operation]

    def _lookup(self, key: str, version_id: str) -> Tuple[bytes, ObjectInfo]:
        try:
            return self.objects[(key, version_id)]
        except KeyError:
            raise StoreError("NoSuchKey", f"'{key}' does not exist.", 404) from None

    async def probe(self, key: str, version_id: str, proxy_request: bool) -> ObjectInfo:
        await self._begin("probe", key, version_id)
        return self._lookup(key, version_id)[1]

    async def fetch(
        self, key: str, version_id: str, etag: str, proxy_request: bool
    ) -> Tuple[FakeStream, ObjectInfo]:
        await self._begin("fetch", key, version_id)
        data, info = self._lookup(key, version_id)
        if etag != info.etag:
            raise StoreError("PreconditionFailed", f"ETag mismatch for '{key}'.", 412)
        stream: FakeStream = FakeStream(data)
        self.streams.append(stream)
        return stream, info

    async def upload(
        self, key: str, stream: FakeStream, size: int, options: PutOptions
    ) -> ObjectInfo:
        await self._begin("upload", key, "")
        body: bytes = await stream.read()
        self.uploads.append((key, body, size, options))
        return self.add(key, body, etag=options.internal.source_etag)

    async def delete(self, key: str, version_id: str, options: RemoveOptions) -> None:
        await self._begin("delete", key, version_id)
        self.deletes.append((key, version_id, options))


@pytest.fixture
def tracker() -> InFlightTracker:
    return InFlightTracker()


@pytest.fixture
def source_store(tracker: InFlightTracker) -> FakeStore:
    """An empty fake source store."""
    return FakeStore(tracker=tracker)


@pytest.fixture
def dest_store(tracker: InFlightTracker) -> FakeStore:
    """An empty fake destination store sharing the source's tracker."""
    return FakeStore(tracker=tracker)


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """
    Provide run options rooted in a temporary working directory.

    Args:
        tmp_path (Path): The pytest fixture for a temporary directory.

    Returns:
        AppConfig: Options with a small pool and no feeder grace delay.
    """
    return AppConfig(data_dir=tmp_path, concurrency=4, feeder_grace_s=0.0)


def write_diff(data_dir: Path, entries: Iterable[Any]) -> Path:
    """
    Write a difference list; dicts are serialized, strings written as-is.

    Args:
        data_dir (Path): The working directory.
        entries (Iterable[Any]): One entry per line.

    Returns:
        Path: The path of the difference list.
    """
    path: Path = data_dir / DIFF_FILE
    lines: List[str] = [
        entry if isinstance(entry, str) else json.dumps(entry) for entry in entries
    ]
    path.write_text("".join(line + "\n" for line in lines), encoding="utf-8")
    return path


def read_log(path: Path) -> List[Dict[str, Any]]:
    """Parse a result log into its JSON objects."""
    return [json.loads(line) for line in path.read_text().splitlines()]


def find_log(data_dir: Path, success: bool) -> Path:
    """Locate the single success or failure log in a working directory."""
    prefix: str = SUCCESS_LOG if success else FAILURE_LOG
    matches: List[Path] = sorted(data_dir.glob(f"{prefix}.*"))
    assert len(matches) == 1, f"Expected one {prefix} log, found {matches}"
    return matches[0]
