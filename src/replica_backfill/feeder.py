# src/replica_backfill/feeder.py
"""
Feeds the difference list into the task queue.

The difference list is newline-delimited JSON, one `DiffRecord` per line.
Any unreadable or malformed line aborts the run: copying from a partially
understood list is worse than not copying at all.
"""

import asyncio
import logging
from pathlib import Path

from replica_backfill.exceptions import InputError
from replica_backfill.models import DiffRecord
from replica_backfill.state import RunState

logger: logging.Logger = logging.getLogger(__name__)

DIFF_FILE: str = "srcdiff.json"


class TaskFeeder:
    """Reads the difference list and queues one task per record."""

    def __init__(
        self,
        path: Path,
        skip: int,
        shutdown_event: asyncio.Event,
        grace_s: float = 0.1,
    ) -> None:
        """
        Args:
            path (Path): The difference list to read.
            skip (int): Number of leading lines to ignore without parsing.
            shutdown_event (asyncio.Event): Stops feeding when set.
            grace_s (float): Delay before the task queue is closed.
        """
        self._path: Path = path
        self._skip: int = skip
        self._shutdown_event: asyncio.Event = shutdown_event
        self._grace_s: float = grace_s

    async def feed(self, state: RunState) -> int:
        """
        Queue every record past the skip-prefix, then close the task queue.

        Blocks whenever the task queue is full. The queue is left open if
        shutdown is signaled, since nobody will drain it.

        Args:
            state (RunState): The run to feed.

        Returns:
            int: The number of records queued.

        Raises:
            InputError: If the file cannot be read or a line cannot be parsed.
        """
        queued: int = 0
        try:
            with self._path.open("r", encoding="utf-8") as diff_file:
                for line_no, line in enumerate(diff_file, start=1):
                    if self._shutdown_event.is_set():
                        logger.warning(
                            "Shutdown initiated, stopped feeding after "
                            f"{queued} records."
                        )
                        return queued
                    if line_no <= self._skip or not line.strip():
                        continue
                    try:
                        record: DiffRecord = DiffRecord.from_json(line)
                    except InputError as e:
                        raise InputError(f"{self._path}:{line_no}: {e}") from e
                    await state.task_queue.put(record)
                    queued += 1
                    logger.debug(f"Queued {record.describe()} for copy.")
        except (OSError, UnicodeDecodeError) as e:
            raise InputError(f"Could not read '{self._path}': {e}") from e

        logger.info(f"Queued {queued} records from '{self._path}'.")
        # Let the last enqueued tasks settle before closing.
        await asyncio.sleep(self._grace_s)
        await state.close_tasks()
        return queued
