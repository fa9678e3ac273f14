# src/replica_backfill/worker.py
"""
Defines the copy worker coroutine.

A fixed pool of these workers drains the task queue. Each worker handles
one record at a time, so the pool size bounds the number of store
operations in flight.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Optional

from replica_backfill.copier import CopyAction, ObjectCopier
from replica_backfill.exceptions import CopyError, StoreError
from replica_backfill.models import DiffRecord, Outcome
from replica_backfill.state import RunState

if TYPE_CHECKING:
    from rich.progress import Progress, TaskID

logger: logging.Logger = logging.getLogger(__name__)


async def copy_worker(
    worker_id: int,
    state: RunState,
    copier: ObjectCopier,
    shutdown_event: asyncio.Event,
    progress_bar: Optional["Progress"] = None,
    progress_task_id: Optional["TaskID"] = None,
) -> None:
    """
    A long-lived worker task that replicates records from the task queue.

    The worker exits when it receives the close sentinel or when shutdown
    is signaled. Every record it takes off the queue is reported to exactly
    one result queue, unless the worker is cancelled mid-copy.

    Args:
        worker_id (int): A unique identifier for this worker.
        state (RunState): The run providing tasks and collecting outcomes.
        copier (ObjectCopier): Performs the per-object replication.
        shutdown_event (asyncio.Event): Event to signal graceful shutdown.
        progress_bar (Progress, optional): Progress display to advance.
        progress_task_id (TaskID, optional): The task on `progress_bar`.
    """
    logger.debug(f"Worker {worker_id} started.")
    while not shutdown_event.is_set():
        record: Optional[DiffRecord] = await state.task_queue.get()
        if record is None:
            break
        if shutdown_event.is_set():
            logger.debug(f"Worker {worker_id} abandoning {record.describe()}.")
            break

        outcome: Outcome = await _copy_record(record, copier)
        await state.report(record, outcome)
        if progress_bar is not None and progress_task_id is not None:
            progress_bar.update(
                progress_task_id,
                advance=1,
                succeeded=state.succeeded,
                failed=state.failed,
            )
    logger.debug(f"Worker {worker_id} shutting down.")


async def _copy_record(record: DiffRecord, copier: ObjectCopier) -> Outcome:
    """
    Replicate one record and classify the result.

    Args:
        record (DiffRecord): The record to replicate.
        copier (ObjectCopier): The replication logic.

    Returns:
        Outcome: Which result log the record belongs in.
    """
    logger.debug(f"Copying {record.describe()}...")
    try:
        action: CopyAction = await copier.copy(record)
    except (StoreError, CopyError) as e:
        logger.error(
            f"Error moving object {record.describe()}: {type(e).__name__} - {e}"
        )
        return Outcome.FAILURE
    except Exception:
        logger.exception(f"An unexpected error occurred copying {record.describe()}")
        return Outcome.FAILURE
    logger.info(f"Successfully processed {record.describe()}: {action.value}.")
    return Outcome.SUCCESS
