"""Unit tests for the stream coordinator."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field

import pytest

from codeturn.backends.base import BackendConnectionError, BackendServiceError, StreamEvent
from codeturn.conversation.transcript import TranscriptStore
from codeturn.domain.items import FunctionCallOutputItem, MessageItem, ToolCallItem, user_message
from codeturn.tools.dispatcher import ToolDispatcher
from codeturn.tools.interfaces import CallKind
from codeturn.turn.pending import PendingCallTracker
from codeturn.turn.stream import StreamCoordinator
from codeturn.utils.concurrency import CancellationToken

from . import FakeExecutor, FakePatchApplier, call_event, done_event, message_event


@dataclass(slots=True)
class ExplodingDispatcher:
    """Dispatcher whose dispatch task dies without producing an output."""

    calls: list[str] = field(default_factory=list)

    def call_kind(self, item: ToolCallItem) -> CallKind:
        return CallKind.EXEC

    async def dispatch(
        self, item: ToolCallItem, *, tracker: PendingCallTracker, cancel_token: CancellationToken
    ) -> FunctionCallOutputItem:
        self.calls.append(item.call_id)
        raise RuntimeError("kaput")


async def _events(steps: Sequence[StreamEvent]) -> AsyncIterator[StreamEvent]:
    for step in steps:
        yield step


def _coordinator(
    *,
    dispatcher: object | None = None,
    transcript: TranscriptStore | None = None,
    tracker: PendingCallTracker | None = None,
    token: CancellationToken | None = None,
    sink=None,
) -> StreamCoordinator:
    return StreamCoordinator(
        transcript=transcript if transcript is not None else TranscriptStore(),
        tracker=tracker if tracker is not None else PendingCallTracker(),
        dispatcher=dispatcher  # type: ignore[arg-type]
        if dispatcher is not None
        else ToolDispatcher(executor=FakeExecutor(), patch_applier=FakePatchApplier()),
        cancel_token=token if token is not None else CancellationToken(),
        backend_id="primary",
        sink=sink,
    )


async def test_consume_commits_in_arrival_order_and_dispatches_calls() -> None:
    transcript = TranscriptStore(items=[user_message("go")])
    tracker = PendingCallTracker()
    received: list[str] = []

    async def sink(item: object) -> None:
        received.append(item.text)  # type: ignore[attr-defined]

    coordinator = _coordinator(transcript=transcript, tracker=tracker, sink=sink)
    events = [
        StreamEvent.item_started(MessageItem(role="assistant", text="")),
        message_event("Checking."),
        call_event("call_1", "ls"),
        call_event("call_2", "pwd"),
        done_event("resp_1", total_tokens=4),
    ]

    outcome = await coordinator.consume(_events(events))

    assert outcome.completed
    assert outcome.response_id == "resp_1"
    assert outcome.usage.total_tokens == 4
    assert [call.call_id for call in outcome.tool_calls] == ["call_1", "call_2"]
    assert len(transcript) == 4
    assert received == ["Checking."]
    assert coordinator.committed_count == 3
    assert coordinator.has_dispatches

    outputs = await coordinator.collect_outputs()

    assert [output.call_id for output in outputs] == ["call_1", "call_2"]
    assert tracker.is_empty
    assert not coordinator.has_dispatches
    assert await coordinator.collect_outputs() == []


async def test_stream_without_done_is_a_connection_error() -> None:
    coordinator = _coordinator()
    with pytest.raises(BackendConnectionError, match="stream closed before response.completed"):
        await coordinator.consume(_events([message_event("cut off")]))
    assert coordinator.committed_count == 1


async def test_error_event_is_raised() -> None:
    coordinator = _coordinator()
    failure = StreamEvent.failed(BackendServiceError("overloaded", backend="primary"))
    with pytest.raises(BackendServiceError):
        await coordinator.consume(_events([failure]))


async def test_failed_dispatch_becomes_failure_output() -> None:
    tracker = PendingCallTracker()
    dispatcher = ExplodingDispatcher()
    coordinator = _coordinator(dispatcher=dispatcher, tracker=tracker)

    await coordinator.consume(_events([call_event("call_x"), done_event()]))
    outputs = await coordinator.collect_outputs()

    assert dispatcher.calls == ["call_x"]
    assert outputs[0].output == "tool execution failed: kaput"
    assert tracker.was_resolved("call_x")


async def test_cancelled_token_stops_consumption_before_reading() -> None:
    token = CancellationToken()
    token.cancel("user interrupt")
    transcript = TranscriptStore()
    coordinator = _coordinator(token=token, transcript=transcript)

    outcome = await coordinator.consume(_events([message_event("never read"), done_event()]))

    assert outcome.cancelled
    assert not outcome.completed
    assert len(transcript) == 0


async def test_cancelled_dispatch_tasks_yield_aborted_outputs() -> None:
    executor = FakeExecutor(block=True)
    tracker = PendingCallTracker()
    coordinator = _coordinator(
        dispatcher=ToolDispatcher(executor=executor, patch_applier=FakePatchApplier()),
        tracker=tracker,
    )
    await coordinator.consume(_events([call_event("call_1"), done_event()]))
    await asyncio.wait_for(executor.started.wait(), timeout=1.0)
    assert [entry.call_id for entry in tracker.snapshot()] == ["call_1"]

    collector = asyncio.create_task(coordinator.collect_outputs())
    await asyncio.sleep(0)
    collector.cancel()
    with pytest.raises(asyncio.CancelledError):
        await collector

    # Dispatches survive the interrupted collect and drain as aborted.
    assert coordinator.has_dispatches
    outputs = await coordinator.collect_outputs()
    assert [(output.call_id, output.output) for output in outputs] == [("call_1", "aborted")]
    assert tracker.is_empty
