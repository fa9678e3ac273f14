# tests/unit/test_signals.py
"""Unit tests for `GracefulShutdown`."""

import asyncio
import signal
from unittest.mock import patch

import pytest

from replica_backfill.signals import HANDLED_SIGNALS, GracefulShutdown


@pytest.mark.asyncio
async def test_first_signal_sets_event() -> None:
    """
    Tests that the first shutdown signal sets the event without exiting.

    Arrange:
        - Enter the shutdown manager.
    Act:
        - Deliver SIGTERM to its handler.
    Assert:
        - The event is set on the next loop iteration.
    """
    manager: GracefulShutdown = GracefulShutdown()
    async with manager as shutdown_event:
        assert not shutdown_event.is_set()

        manager._handle(signal.SIGTERM, None)

        await asyncio.wait_for(shutdown_event.wait(), timeout=1)


@pytest.mark.asyncio
async def test_second_signal_forces_exit() -> None:
    """Tests that a second signal exits the process immediately."""
    manager: GracefulShutdown = GracefulShutdown()
    manager.event.set()

    with patch("replica_backfill.signals.os._exit") as exit_mock:
        manager._handle(signal.SIGINT, None)

    exit_mock.assert_called_once_with(1)


@pytest.mark.asyncio
async def test_previous_handlers_are_restored() -> None:
    """Tests that leaving the manager reinstates the original handlers."""
    before = {sig: signal.getsignal(sig) for sig in HANDLED_SIGNALS}

    async with GracefulShutdown():
        pass

    assert {sig: signal.getsignal(sig) for sig in HANDLED_SIGNALS} == before
