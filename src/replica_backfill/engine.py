# src/replica_backfill/engine.py
"""Coordinates one copy run from difference list to result logs."""

import asyncio
import logging
from contextlib import nullcontext
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import ContextManager, Iterable, List, Optional

from rich.progress import (
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)

from replica_backfill.config import AppConfig
from replica_backfill.copier import ObjectCopier
from replica_backfill.exceptions import ResultLogError
from replica_backfill.feeder import DIFF_FILE, TaskFeeder
from replica_backfill.models import Outcome
from replica_backfill.sink import ResultSink
from replica_backfill.state import RunState
from replica_backfill.store import ObjectStore
from replica_backfill.worker import copy_worker

logger: logging.Logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunSummary:
    """
    The result of a copy run.

    Attributes:
        succeeded (int): Records written to the success log.
        failed (int): Records written to the failure log.
        success_log (Path): Path of the success log.
        failure_log (Path): Path of the failure log.
        dry_run (bool): Whether the destination was left untouched.
        cancelled (bool): Whether the run was stopped by a shutdown signal.
    """

    succeeded: int
    failed: int
    success_log: Path
    failure_log: Path
    dry_run: bool = False
    cancelled: bool = False


async def _cancel_tasks(tasks: Iterable["asyncio.Task[object]"]) -> None:
    """Cancel tasks and wait for them to finish; finished tasks are untouched."""
    pending: List["asyncio.Task[object]"] = list(tasks)
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)


class CopyEngine:
    """
    Replicates the records of a difference list from one store to another.

    The engine owns all queues of a run and enforces the shutdown order:
    stop feeding, close the task queue, join the workers, close the result
    queues, join the sink, and only then read the counters.
    """

    def __init__(
        self,
        source: ObjectStore,
        destination: ObjectStore,
        app_config: AppConfig,
        shutdown_event: Optional[asyncio.Event] = None,
    ) -> None:
        """
        Args:
            source (ObjectStore): The store to copy from.
            destination (ObjectStore): The store to copy to.
            app_config (AppConfig): The run options.
            shutdown_event (asyncio.Event, optional): Event to signal graceful
                shutdown. A private event is used if omitted.
        """
        self._config: AppConfig = app_config
        self._shutdown_event: asyncio.Event = shutdown_event or asyncio.Event()
        self._copier: ObjectCopier = ObjectCopier(
            source,
            destination,
            dry_run=app_config.dry_run,
            strict_fetch=app_config.strict_fetch,
        )

    def _progress(self) -> ContextManager[Optional[Progress]]:
        if not self._config.show_progress:
            return nullcontext()
        return Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            TextColumn("([green]{task.fields[succeeded]} ok[/], "),
            TextColumn("[red]{task.fields[failed]} failed[/])"),
            transient=True,
        )

    async def run(self) -> RunSummary:
        """
        Execute the copy run.

        Returns:
            RunSummary: Counts and log locations of the finished run.

        Raises:
            InputError: If the difference list is unreadable or malformed.
            ResultLogError: If an outcome could not be logged.
        """
        data_dir: Path = self._config.data_dir
        state: RunState = RunState(self._config.workers)
        feeder: TaskFeeder = TaskFeeder(
            data_dir / DIFF_FILE,
            self._config.skip,
            self._shutdown_event,
            self._config.feeder_grace_s,
        )
        mode: str = " (dry run)" if self._config.dry_run else ""
        logger.info(
            f"Copying objects listed in '{data_dir / DIFF_FILE}' with "
            f"{state.workers} workers{mode}."
        )

        cancelled: bool = False
        with ResultSink(data_dir, datetime.now()) as sink, self._progress() as progress:
            task_id: Optional[TaskID] = None
            if progress is not None:
                task_id = progress.add_task(
                    "Copying...", total=None, succeeded=0, failed=0
                )

            sink_task: asyncio.Task[None] = asyncio.create_task(sink.drain(state))
            worker_tasks: List[asyncio.Task[None]] = [
                asyncio.create_task(
                    copy_worker(
                        worker_id=i,
                        state=state,
                        copier=self._copier,
                        shutdown_event=self._shutdown_event,
                        progress_bar=progress,
                        progress_task_id=task_id,
                    )
                )
                for i in range(state.workers)
            ]
            feeder_task: asyncio.Task[int] = asyncio.create_task(feeder.feed(state))
            pipeline_task: asyncio.Task[None] = asyncio.create_task(
                self._feed_and_join(feeder_task, worker_tasks)
            )
            shutdown_task: asyncio.Task[bool] = asyncio.create_task(
                self._shutdown_event.wait()
            )
            close_task: Optional[asyncio.Task[None]] = None
            try:
                done, _ = await asyncio.wait(
                    {pipeline_task, sink_task, shutdown_task},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if sink_task in done:
                    # The sink only finishes early when a write fails.
                    await _cancel_tasks([feeder_task, pipeline_task, *worker_tasks])
                    sink_task.result()
                    raise ResultLogError("Result sink stopped before the run ended.")

                if pipeline_task not in done:
                    logger.warning("Shutdown signal received. Terminating copies.")
                    cancelled = True
                # A failed feeder leaves workers waiting on the task queue.
                await _cancel_tasks([feeder_task, pipeline_task, *worker_tasks])
                # Closing may block on a full queue, so it must not outlive
                # a failed sink.
                close_task = asyncio.create_task(state.close_results())
                await asyncio.gather(sink_task, close_task)
            finally:
                await _cancel_tasks(
                    [
                        shutdown_task,
                        feeder_task,
                        pipeline_task,
                        sink_task,
                        *worker_tasks,
                        *([close_task] if close_task is not None else []),
                    ]
                )

        if not cancelled:
            # Surfaces InputError from the feeder.
            pipeline_task.result()

        summary: RunSummary = RunSummary(
            succeeded=state.succeeded,
            failed=state.failed,
            success_log=sink.paths[Outcome.SUCCESS],
            failure_log=sink.paths[Outcome.FAILURE],
            dry_run=self._config.dry_run,
            cancelled=cancelled,
        )
        if summary.dry_run:
            logger.info(
                f"Dry run: {summary.succeeded} objects would be replicated, "
                f"{summary.failed} failures"
            )
        else:
            logger.info(
                f"Copied {summary.succeeded} objects, {summary.failed} failures"
            )
        return summary

    async def _feed_and_join(
        self,
        feeder_task: "asyncio.Task[int]",
        worker_tasks: List["asyncio.Task[None]"],
    ) -> None:
        """
        Wait for the feeder to close the task queue, then for every worker.

        Args:
            feeder_task (asyncio.Task[int]): The running feeder.
            worker_tasks (List[asyncio.Task[None]]): The running workers.
        """
        await feeder_task
        await asyncio.gather(*worker_tasks)
        logger.debug("All workers finished.")
