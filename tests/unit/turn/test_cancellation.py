"""Unit tests for the turn cancellation controller."""

from __future__ import annotations

import asyncio

import pytest

from codeturn.tools.interfaces import CallKind
from codeturn.turn.cancellation import CancellationController, CancellationState
from codeturn.turn.pending import PendingCallTracker


def test_cancel_without_outstanding_calls_terminates_immediately() -> None:
    controller = CancellationController(PendingCallTracker())

    assert controller.state is CancellationState.ACTIVE
    assert controller.cancel("user interrupt") is True
    assert controller.state is CancellationState.TERMINATED
    assert controller.token.reason == "user interrupt"
    assert controller.cancel("again") is False
    assert controller.token.reason == "user interrupt"


async def test_cancel_waits_for_outstanding_calls() -> None:
    tracker = PendingCallTracker()
    tracker.add("call_1", CallKind.EXEC, "shell")
    controller = CancellationController(tracker)

    controller.cancel()
    assert controller.state is CancellationState.CANCELLING
    assert controller.is_cancelled

    waiter = asyncio.create_task(controller.wait_terminated())
    await asyncio.sleep(0)
    assert not waiter.done()

    tracker.resolve("call_1")
    assert await asyncio.wait_for(waiter, timeout=0.1) is CancellationState.TERMINATED


async def test_wait_terminated_requires_cancel() -> None:
    with pytest.raises(RuntimeError, match="before cancel"):
        await CancellationController(PendingCallTracker()).wait_terminated()


def test_registered_stream_is_aborted_once_on_cancel() -> None:
    controller = CancellationController(PendingCallTracker())
    aborted: list[str] = []

    deregister = controller.register_stream(lambda: aborted.append("first"))
    deregister()
    controller.register_stream(lambda: aborted.append("second"))
    controller.cancel()

    assert aborted == ["second"]


def test_stream_registered_after_cancel_is_aborted_immediately() -> None:
    controller = CancellationController(PendingCallTracker())
    controller.cancel()
    aborted: list[bool] = []

    controller.register_stream(lambda: aborted.append(True))

    assert aborted == [True]
