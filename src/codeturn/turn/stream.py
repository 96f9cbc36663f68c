"""
codeturn — stream coordinator

File: src/codeturn/turn/stream.py

Purpose
- Consume one backend attempt's canonical events, commit completed items to
  the transcript in arrival order and fan tool calls out to the dispatcher.
- Collect tool outputs in the arrival order of their call items.

Contracts
- Every dispatched call id is registered in the pending-call tracker before
  its dispatch task starts.
- ``collect_outputs`` returns exactly one output per dispatched call,
  substituting ``aborted`` or a failure message when a dispatch task did not
  produce one.
- A stream that ends without ``stream-done`` is a retryable connection error.
- ``idle_timeout_seconds`` bounds the wait for each next event, opening the
  stream included; a stream that keeps producing events is never cut off.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, TypeAlias

import structlog

from codeturn.backends.base import (
    BackendConnectionError,
    BackendTimeoutError,
    StreamEvent,
    StreamEventType,
    TokenUsage,
)
from codeturn.constants import ABORTED_OUTPUT_TEXT
from codeturn.conversation.transcript import TranscriptStore
from codeturn.domain.items import (
    ConversationItem,
    ToolCallItem,
    ToolOutputItem,
    is_tool_call,
    output_for_call,
)
from codeturn.tools.dispatcher import ToolDispatcher
from codeturn.turn.pending import PendingCallTracker
from codeturn.utils.concurrency import (
    CancellationToken,
    await_with_cancellation,
    run_with_timeout,
)

OutputSink: TypeAlias = Callable[[ConversationItem], "Awaitable[None] | None"]


@dataclass(slots=True)
class StreamOutcome:
    response_id: str | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    committed: list[ConversationItem] = field(default_factory=list)
    tool_calls: list[ToolCallItem] = field(default_factory=list)
    completed: bool = False
    cancelled: bool = False


class StreamCoordinator:
    """Drive one event stream; one instance per backend attempt."""

    def __init__(
        self,
        *,
        transcript: TranscriptStore,
        tracker: PendingCallTracker,
        dispatcher: ToolDispatcher,
        cancel_token: CancellationToken,
        backend_id: str,
        sink: OutputSink | None = None,
        register_stream: Callable[[Callable[[], None]], Callable[[], None]] | None = None,
        idle_timeout_seconds: float | None = None,
        logger: Any | None = None,
    ) -> None:
        self._transcript = transcript
        self._tracker = tracker
        self._dispatcher = dispatcher
        self._token = cancel_token
        self._backend_id = backend_id
        self._sink = sink
        self._register_stream = register_stream
        self._idle_timeout = idle_timeout_seconds
        self._dispatches: list[tuple[ToolCallItem, asyncio.Task[ToolOutputItem]]] = []
        self.outcome = StreamOutcome()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def committed_count(self) -> int:
        return len(self.outcome.committed)

    @property
    def has_dispatches(self) -> bool:
        return bool(self._dispatches)

    async def consume(self, events: AsyncIterator[StreamEvent]) -> StreamOutcome:
        iterator = aiter(events)
        pending_next: asyncio.Future[Any] | None = None

        def _abort() -> None:
            if pending_next is not None and not pending_next.done():
                pending_next.cancel()

        deregister = self._register_stream(_abort) if self._register_stream else None
        try:
            while True:
                if self._token.is_cancelled:
                    self.outcome.cancelled = True
                    return self.outcome
                pending_next = asyncio.ensure_future(anext(iterator))
                try:
                    event = await self._next_event(pending_next)
                except StopAsyncIteration:
                    raise BackendConnectionError(
                        "stream closed before response.completed", backend=self._backend_id
                    ) from None
                except TimeoutError as exc:
                    if self._idle_timeout is None:
                        raise
                    raise BackendTimeoutError(
                        f"no response within {self._idle_timeout} seconds",
                        backend=self._backend_id,
                    ) from exc
                except asyncio.CancelledError:
                    task = asyncio.current_task()
                    if self._token.is_cancelled and (task is None or task.cancelling() == 0):
                        self._logger.info("stream_aborted", backend_id=self._backend_id)
                        self.outcome.cancelled = True
                        return self.outcome
                    raise
                finally:
                    pending_next = None

                if event.kind is StreamEventType.ITEM_STARTED:
                    self._logger.debug(
                        "stream_item_started",
                        backend_id=self._backend_id,
                        item_type=event.item.type.value if event.item is not None else None,
                    )
                elif event.kind is StreamEventType.ITEM_COMPLETED and event.item is not None:
                    await self._commit(event.item)
                elif event.kind is StreamEventType.STREAM_ERROR and event.error is not None:
                    raise event.error
                elif event.kind is StreamEventType.STREAM_DONE:
                    self.outcome.response_id = event.response_id
                    if event.usage is not None:
                        self.outcome.usage = event.usage
                    self.outcome.completed = True
                    self._logger.debug(
                        "stream_done",
                        backend_id=self._backend_id,
                        response_id=event.response_id,
                        items=len(self.outcome.committed),
                    )
                    return self.outcome
        finally:
            if deregister is not None:
                deregister()
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                with suppress(RuntimeError, StopAsyncIteration):
                    await aclose()

    async def _next_event(self, pending: asyncio.Future[Any]) -> StreamEvent:
        if self._idle_timeout is None:
            return await await_with_cancellation(pending, self._token)
        return await run_with_timeout(pending, self._idle_timeout, self._token)

    async def _commit(self, item: ConversationItem) -> None:
        self._transcript.append(item)
        self.outcome.committed.append(item)
        if is_tool_call(item):
            call: ToolCallItem = item  # type: ignore[assignment]
            self._tracker.add(call.call_id, self._dispatcher.call_kind(call), call.name)
            task = asyncio.create_task(
                self._dispatcher.dispatch(call, tracker=self._tracker, cancel_token=self._token),
                name=f"tool-dispatch-{call.call_id}",
            )
            self._dispatches.append((call, task))
            self.outcome.tool_calls.append(call)
            return
        if self._sink is not None:
            result = self._sink(item)
            if inspect.isawaitable(result):
                await result

    async def collect_outputs(self) -> list[ToolOutputItem]:
        """Await every dispatch and return outputs in call arrival order."""
        dispatches = list(self._dispatches)
        if not dispatches:
            return []
        # Dispatches stay registered until gathered, so a drain after an
        # interrupted collect still sees them.
        results = await asyncio.gather(*(task for _, task in dispatches), return_exceptions=True)
        del self._dispatches[: len(dispatches)]

        outputs: list[ToolOutputItem] = []
        for (call, _), result in zip(dispatches, results, strict=True):
            if isinstance(result, asyncio.CancelledError):
                if call.call_id in self._tracker:
                    self._tracker.resolve(call.call_id)
                outputs.append(output_for_call(call, ABORTED_OUTPUT_TEXT))
            elif isinstance(result, BaseException):
                self._logger.error(
                    "tool_dispatch_failed",
                    call_id=call.call_id,
                    name=call.name,
                    error=repr(result),
                )
                if call.call_id in self._tracker:
                    self._tracker.resolve(call.call_id)
                outputs.append(output_for_call(call, f"tool execution failed: {result}"))
            else:
                outputs.append(result)
        return outputs


__all__ = ["OutputSink", "StreamCoordinator", "StreamOutcome"]
