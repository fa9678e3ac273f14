# src/replica_backfill/signals.py
"""
Graceful shutdown on SIGINT and SIGTERM.

The first signal sets an `asyncio.Event` that the copy engine watches:
feeding stops and workers exit after their current object. A second signal
exits the process immediately.
"""

import asyncio
import logging
import os
import signal
from types import FrameType
from typing import Any, Callable, Dict, Optional, Tuple, Union

logger: logging.Logger = logging.getLogger(__name__)

_PreviousHandler = Union[Callable[[int, Optional[FrameType]], Any], int, None]

HANDLED_SIGNALS: Tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM)


class GracefulShutdown:
    """
    An async context manager translating shutdown signals into an event.

    Previous signal handlers are restored on exit.
    """

    def __init__(self) -> None:
        self._event: asyncio.Event = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._previous: Dict[signal.Signals, _PreviousHandler] = {}

    @property
    def event(self) -> asyncio.Event:
        return self._event

    def _handle(self, signum: int, _: Optional[FrameType]) -> None:
        if self._event.is_set():
            logger.critical("Received second shutdown signal. Forcing immediate exit.")
            # Skip cleanup: whatever is hanging would hang again.
            os._exit(1)
        logger.warning(
            f"Received shutdown signal: {signal.strsignal(signum)}. "
            "Finishing in-flight copies and writing logs..."
        )
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._event.set)
        else:
            self._event.set()

    async def __aenter__(self) -> asyncio.Event:
        """
        Install the signal handlers.

        Returns:
            asyncio.Event: Set once the first shutdown signal arrives.
        """
        self._loop = asyncio.get_running_loop()
        for sig in HANDLED_SIGNALS:
            try:
                self._previous[sig] = signal.signal(sig, self._handle)
            except (ValueError, OSError) as e:
                # Only the main thread may install handlers, e.g. not in tests.
                logger.warning(f"Could not set handler for {sig.name}: {e}")
        return self._event

    async def __aexit__(self, *args: Any) -> None:
        """Restore the previous signal handlers."""
        for sig, handler in self._previous.items():
            if handler is None:
                # Installed outside Python; there is nothing to restore.
                continue
            try:
                signal.signal(sig, handler)
            except (ValueError, OSError) as e:
                logger.warning(f"Could not restore handler for {sig.name}: {e}")
        self._previous.clear()
        self._loop = None
