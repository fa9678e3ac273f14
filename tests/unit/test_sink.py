# tests/unit/test_sink.py
"""Unit tests for the `ResultSink` result logs."""

import asyncio
from datetime import datetime
from pathlib import Path

import pytest
from conftest import read_log

from replica_backfill.exceptions import ResultLogError
from replica_backfill.models import DiffRecord, Outcome
from replica_backfill.sink import ResultSink
from replica_backfill.state import RunState

STARTED_AT: datetime = datetime(2024, 3, 9, 14, 5, 7)


def test_log_paths_carry_run_timestamp(tmp_path: Path) -> None:
    """Tests that both logs are named after the run start time."""
    sink: ResultSink = ResultSink(tmp_path, STARTED_AT)

    assert sink.paths[Outcome.SUCCESS].name == "copy_success.txt.03-09-2024-14-05-07"
    assert sink.paths[Outcome.FAILURE].name == "copy_fails.txt.03-09-2024-14-05-07"
    assert sink.paths[Outcome.SUCCESS].parent == tmp_path


def test_logs_are_created_owner_only(tmp_path: Path) -> None:
    """Tests that both logs exist with 0600 permissions once opened."""
    with ResultSink(tmp_path, STARTED_AT) as sink:
        for path in sink.paths.values():
            assert path.exists()
            assert path.stat().st_mode & 0o777 == 0o600


@pytest.mark.asyncio
async def test_drain_routes_records_until_both_queues_close(tmp_path: Path) -> None:
    """
    Tests that the sink writes records from both queues to their own logs.

    Arrange:
        - Report two successes and one failure, then close the result queues.
    Act:
        - Drain the queues into an open sink.
    Assert:
        - Each log holds exactly its records, in arrival order.
    """
    state: RunState = RunState(workers=4)
    await state.report(DiffRecord.from_json('{"key": "a"}'), Outcome.SUCCESS)
    await state.report(DiffRecord.from_json('{"key": "b"}'), Outcome.FAILURE)
    await state.report(DiffRecord.from_json('{"key": "c"}'), Outcome.SUCCESS)
    await state.close_results()

    with ResultSink(tmp_path, STARTED_AT) as sink:
        await asyncio.wait_for(sink.drain(state), timeout=1)

    assert read_log(sink.paths[Outcome.SUCCESS]) == [{"key": "a"}, {"key": "c"}]
    assert read_log(sink.paths[Outcome.FAILURE]) == [{"key": "b"}]
    assert (state.succeeded, state.failed) == (2, 1)


def test_write_requires_open_log(tmp_path: Path) -> None:
    """Tests that writing to an unopened sink is an error."""
    sink: ResultSink = ResultSink(tmp_path, STARTED_AT)

    with pytest.raises(ResultLogError, match="not open"):
        sink.write(Outcome.SUCCESS, DiffRecord(key="a"))


def test_write_failure_raises_result_log_error(tmp_path: Path) -> None:
    """
    Tests that an I/O error while logging is reported as `ResultLogError`.

    Arrange:
        - Replace the success log handle with one that fails on write.
    Act & Assert:
        - Writing a record raises `ResultLogError` naming the record.
    """

    class BrokenFile:
        def write(self, data: str) -> int:
            raise OSError(28, "No space left on device")

        def close(self) -> None:
            pass

    with ResultSink(tmp_path, STARTED_AT) as sink:
        sink._files[Outcome.SUCCESS].close()
        sink._files[Outcome.SUCCESS] = BrokenFile()  # type: ignore[assignment]

        with pytest.raises(ResultLogError, match="a.txt"):
            sink.write(Outcome.SUCCESS, DiffRecord(key="a.txt"))


def test_unwritable_directory_raises_result_log_error(tmp_path: Path) -> None:
    """Tests that a log which cannot be created is reported as `ResultLogError`."""
    sink: ResultSink = ResultSink(tmp_path / "missing", STARTED_AT)

    with pytest.raises(ResultLogError, match="Could not create"):
        sink.open()
