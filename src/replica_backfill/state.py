# src/replica_backfill/state.py
"""
Shared state of one copy run.

`RunState` owns the three bounded queues connecting feeder, workers and
result sink, plus the outcome counters. Queues are closed by sentinel:
the task queue receives one `None` per worker, each result queue a single
`None` once every worker has exited.
"""

import asyncio
import logging
from typing import Optional

from replica_backfill.models import DiffRecord, Outcome

logger: logging.Logger = logging.getLogger(__name__)

TaskQueue = asyncio.Queue[Optional[DiffRecord]]


class RunState:
    """Queues and counters shared by the components of a single run."""

    def __init__(self, workers: int) -> None:
        """
        Args:
            workers (int): Number of workers; also the capacity of every queue.
        """
        self.workers: int = workers
        self.task_queue: TaskQueue = asyncio.Queue(maxsize=workers)
        self.success_queue: TaskQueue = asyncio.Queue(maxsize=workers)
        self.failure_queue: TaskQueue = asyncio.Queue(maxsize=workers)
        # Only touched from the event loop thread, so increments are atomic.
        self._succeeded: int = 0
        self._failed: int = 0

    @property
    def succeeded(self) -> int:
        return self._succeeded

    @property
    def failed(self) -> int:
        return self._failed

    def result_queue(self, outcome: Outcome) -> TaskQueue:
        if outcome is Outcome.SUCCESS:
            return self.success_queue
        return self.failure_queue

    async def report(self, record: DiffRecord, outcome: Outcome) -> None:
        """
        Count an outcome and hand the record to the result sink.

        Blocks while the matching result queue is full. The counter only
        moves once the record is queued, so a cancelled report leaves the
        counters in step with the logs.
        """
        await self.result_queue(outcome).put(record)
        if outcome is Outcome.SUCCESS:
            self._succeeded += 1
        else:
            self._failed += 1

    async def close_tasks(self) -> None:
        """Signal every worker that no more tasks will arrive."""
        for _ in range(self.workers):
            await self.task_queue.put(None)
        logger.debug("Task queue closed.")

    async def close_results(self) -> None:
        """Signal the result sink that no more outcomes will arrive."""
        await self.success_queue.put(None)
        await self.failure_queue.put(None)
        logger.debug("Result queues closed.")
