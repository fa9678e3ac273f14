# src/replica_backfill/sink.py
"""
Durable per-outcome result logs.

Every record leaving the worker pool is appended as one JSON line to
either the failure log or the success log of the run. A record that
cannot be written aborts the run: losing an entry silently would break
the guarantee that each input record is accounted for.
"""

import asyncio
import logging
import os
from datetime import datetime
from pathlib import Path
from types import TracebackType
from typing import IO, Dict, Optional, Type

from replica_backfill.exceptions import ResultLogError
from replica_backfill.models import DiffRecord, Outcome
from replica_backfill.state import RunState

logger: logging.Logger = logging.getLogger(__name__)

FAILURE_LOG: str = "copy_fails.txt"
SUCCESS_LOG: str = "copy_success.txt"
TIMESTAMP_FORMAT: str = "%m-%d-%Y-%H-%M-%S"


def _private_opener(path: str, flags: int) -> int:
    return os.open(path, flags, 0o600)


class ResultSink:
    """Owns the two result logs of a run and drains the result queues."""

    def __init__(self, data_dir: Path, started_at: datetime) -> None:
        """
        Args:
            data_dir (Path): Directory the logs are written to.
            started_at (datetime): Run start time, used as the log suffix.
        """
        suffix: str = started_at.strftime(TIMESTAMP_FORMAT)
        self.paths: Dict[Outcome, Path] = {
            Outcome.FAILURE: data_dir / f"{FAILURE_LOG}.{suffix}",
            Outcome.SUCCESS: data_dir / f"{SUCCESS_LOG}.{suffix}",
        }
        self._files: Dict[Outcome, IO[str]] = {}

    def __enter__(self) -> "ResultSink":
        self.open()
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        self.close()

    def open(self) -> None:
        """Create (or truncate) both logs."""
        for outcome, path in self.paths.items():
            try:
                self._files[outcome] = open(
                    path, "w", encoding="utf-8", opener=_private_opener
                )
            except OSError as e:
                self.close()
                raise ResultLogError(f"Could not create '{path}': {e}") from e
            logger.debug(f"Opened {outcome.value} log '{path}'.")

    def write(self, outcome: Outcome, record: DiffRecord) -> None:
        """
        Append one record to the log for `outcome`.

        Raises:
            ResultLogError: If the log is not open or the write fails.
        """
        handle: Optional[IO[str]] = self._files.get(outcome)
        if handle is None:
            raise ResultLogError(f"The {outcome.value} log is not open.")
        try:
            handle.write(record.to_json() + "\n")
        except OSError as e:
            raise ResultLogError(
                f"Error writing to '{self.paths[outcome]}' for "
                f"{record.describe()}: {e}"
            ) from e

    async def drain(self, state: RunState) -> None:
        """
        Write records from both result queues until both are closed.

        Neither queue has priority over the other: whichever delivers a
        record first is served first.

        Args:
            state (RunState): The run whose result queues to drain.
        """
        pending: Dict["asyncio.Task[Optional[DiffRecord]]", Outcome] = {
            asyncio.create_task(state.result_queue(outcome).get()): outcome
            for outcome in (Outcome.SUCCESS, Outcome.FAILURE)
        }
        try:
            while pending:
                done, _ = await asyncio.wait(
                    pending, return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    outcome: Outcome = pending.pop(task)
                    record: Optional[DiffRecord] = task.result()
                    if record is None:
                        logger.debug(f"No more {outcome.value} outcomes.")
                        continue
                    self.write(outcome, record)
                    pending[
                        asyncio.create_task(state.result_queue(outcome).get())
                    ] = outcome
        finally:
            for task in pending:
                task.cancel()

    def close(self) -> None:
        """Flush and close both logs."""
        errors: Dict[Outcome, OSError] = {}
        for outcome, handle in self._files.items():
            try:
                handle.close()
            except OSError as e:
                errors[outcome] = e
        self._files.clear()
        if errors:
            outcome, error = next(iter(errors.items()))
            raise ResultLogError(
                f"Error flushing '{self.paths[outcome]}': {error}"
            ) from error
