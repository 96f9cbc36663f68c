"""
codeturn — turn orchestrator

File: src/codeturn/turn/orchestrator.py

Purpose
- Run one conversational turn end to end: prepare the transcript, classify
  the new input, select a backend once, stream each response through a
  ``StreamCoordinator`` under bounded retry, append tool outputs and repeat
  until a response requests no tools.

State machine
- ``IDLE -> PREPARING -> REQUESTING -> STREAMING -> DISPATCHING ->
  (REQUESTING ...) -> COMPLETED | CANCELLED | FAILED``.

Contracts
- Every tool call committed during the turn has exactly one output item in
  the transcript before ``run_turn`` returns or raises.
- A retryable failure after an attempt committed an item is fatal, so a
  retry never duplicates transcript items.
- Failures surface as ``TurnFailedError`` carrying the partial result.
  Cancellation through ``cancel()`` returns a ``CANCELLED`` result; an
  external task cancellation drains outputs and re-raises.
"""

from __future__ import annotations

import asyncio
import enum
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from codeturn.backends.base import (
    DEFAULT_TOOLS,
    BackendClient,
    BackendError,
    BackendFatalError,
    BackendRequest,
    ClientFactory,
    TokenUsage,
    ToolDefinition,
    adapter_for,
)
from codeturn.backends.retry import CancellableSleep, RetryingCaller, RetryPolicy
from codeturn.constants import ABORTED_OUTPUT_TEXT, DEFAULT_MAX_STEPS
from codeturn.conversation.transcript import StorageMode, TranscriptStore
from codeturn.domain import ids
from codeturn.domain.items import (
    ConversationItem,
    is_conversation_item,
    output_for_call,
    user_message,
)
from codeturn.observability.logging import correlation_scope
from codeturn.routing.classifier import TaskCategory, classify_input
from codeturn.routing.registry import BackendDescriptor, BackendRegistry, RoutingTable
from codeturn.tools.dispatcher import ToolDispatcher
from codeturn.turn.cancellation import CancellationController
from codeturn.turn.pending import PendingCallTracker
from codeturn.turn.stream import OutputSink, StreamCoordinator, StreamOutcome
from codeturn.utils.concurrency import sleep_with_cancellation


class TurnState(enum.Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    DISPATCHING = "dispatching"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class SessionSettings:
    """Per-session request settings shared by every turn."""

    instructions: str | None = None
    max_steps: int = DEFAULT_MAX_STEPS
    stream: bool = True
    tools: tuple[ToolDefinition, ...] = DEFAULT_TOOLS

    def __post_init__(self) -> None:
        if isinstance(self.max_steps, bool) or not isinstance(self.max_steps, int):
            raise TypeError("max_steps must be an integer")
        if self.max_steps <= 0:
            raise ValueError("max_steps must be > 0")
        object.__setattr__(self, "tools", tuple(self.tools))


@dataclass(frozen=True, slots=True)
class TurnResult:
    turn_id: str
    state: TurnState
    backend_id: str | None = None
    category: TaskCategory | None = None
    items: tuple[ConversationItem, ...] = ()
    requests: int = 0
    usage: TokenUsage = field(default_factory=TokenUsage)
    fell_back: bool = False
    error: str | None = None


class TurnFailedError(RuntimeError):
    """Terminal turn failure; ``result`` reflects everything appended so far."""

    def __init__(self, result: TurnResult, error: BaseException) -> None:
        super().__init__(f"turn {result.turn_id} failed: {error}")
        self.result = result
        self.error = error


class TurnInProgressError(RuntimeError):
    """Raised when ``run_turn`` is called while another turn is active."""


class StepLimitExceededError(RuntimeError):
    """The model kept requesting tools past ``max_steps`` requests."""


@dataclass(slots=True)
class _TurnRun:
    turn_id: str
    start_index: int
    controller: CancellationController
    tracker: PendingCallTracker
    descriptor: BackendDescriptor | None = None
    category: TaskCategory | None = None
    fell_back: bool = False
    requests: int = 0
    usage: TokenUsage = field(default_factory=TokenUsage)
    coordinator: StreamCoordinator | None = None


def _cancelled_by_caller() -> bool:
    task = asyncio.current_task()
    return task is not None and task.cancelling() > 0


class TurnOrchestrator:
    """Compose transcript, routing, retry, streaming and dispatch into turns."""

    def __init__(
        self,
        *,
        registry: BackendRegistry,
        routing: RoutingTable,
        transcript: TranscriptStore,
        dispatcher: ToolDispatcher,
        retry_policy: RetryPolicy | None = None,
        settings: SessionSettings | None = None,
        client_factory: ClientFactory = adapter_for,
        sleep: CancellableSleep = sleep_with_cancellation,
        session_id: str | None = None,
        logger: Any | None = None,
    ) -> None:
        self._registry = registry
        self._routing = routing
        self._transcript = transcript
        self._dispatcher = dispatcher
        self._retry_policy = retry_policy if retry_policy is not None else RetryPolicy()
        self.settings = settings if settings is not None else SessionSettings()
        self._client_factory = client_factory
        self._sleep = sleep
        self.session_id = session_id if session_id is not None else ids.new_session_id()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._clients: dict[str, BackendClient] = {}
        self._active: _TurnRun | None = None
        self._state = TurnState.IDLE

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def transcript(self) -> TranscriptStore:
        return self._transcript

    @property
    def is_running(self) -> bool:
        return self._active is not None

    def cancel(self, reason: str = "user requested") -> bool:
        """Cancel the active turn. Returns ``False`` when idle or already cancelling."""
        run = self._active
        if run is None:
            return False
        return run.controller.cancel(reason)

    async def run_turn(
        self,
        new_input: str | ConversationItem | Sequence[ConversationItem],
        *,
        sink: OutputSink | None = None,
    ) -> TurnResult:
        """Run one turn for ``new_input`` and return its result."""
        if self._active is not None:
            raise TurnInProgressError(f"turn {self._active.turn_id} is still running")
        items = _normalize_input(new_input)

        tracker = PendingCallTracker()
        run = _TurnRun(
            turn_id=ids.new_turn_id(),
            start_index=len(self._transcript),
            controller=CancellationController(tracker, logger=self._logger),
            tracker=tracker,
        )
        self._active = run
        try:
            with correlation_scope(session_id=self.session_id, turn_id=run.turn_id):
                return await self._run(run, items, sink)
        finally:
            self._active = None

    async def _run(
        self,
        run: _TurnRun,
        items: tuple[ConversationItem, ...],
        sink: OutputSink | None,
    ) -> TurnResult:
        self._logger.info("turn_started", turn_id=run.turn_id, input_items=len(items))
        try:
            self._set_state(TurnState.PREPARING)
            self._repair_dangling_calls()
            self._transcript.extend(items)

            run.category = classify_input(items)
            selection = self._registry.select(run.category, self._routing)
            descriptor = run.descriptor = selection.descriptor
            run.fell_back = selection.fell_back
            self._logger.info(
                "backend_selected",
                turn_id=run.turn_id,
                task_category=run.category.value,
                backend_id=descriptor.backend_id,
                protocol=descriptor.protocol.value,
                fell_back=run.fell_back,
            )
            with correlation_scope(backend_id=descriptor.backend_id):
                cancelled = await self._drive(run, descriptor, sink)
        except asyncio.CancelledError:
            if run.controller.is_cancelled and not _cancelled_by_caller():
                return await self._finish_cancelled(run)
            run.controller.cancel("task cancelled")
            await self._drain(run)
            self._set_state(TurnState.CANCELLED)
            self._logger.info("turn_cancelled", turn_id=run.turn_id, external=True)
            raise
        except Exception as exc:
            await self._drain(run)
            self._set_state(TurnState.FAILED)
            result = self._result(run, TurnState.FAILED, error=str(exc))
            self._logger.error(
                "turn_failed",
                turn_id=run.turn_id,
                error=repr(exc),
                requests=run.requests,
            )
            raise TurnFailedError(result, exc) from exc

        if cancelled:
            return await self._finish_cancelled(run)
        self._set_state(TurnState.COMPLETED)
        result = self._result(run, TurnState.COMPLETED)
        self._logger.info(
            "turn_completed",
            turn_id=run.turn_id,
            requests=run.requests,
            appended_items=len(result.items),
            **run.usage.to_dict(),
        )
        return result

    async def _drive(
        self, run: _TurnRun, descriptor: BackendDescriptor, sink: OutputSink | None
    ) -> bool:
        """Loop request/stream/dispatch steps; returns ``True`` when cancelled."""
        client = self._client_for(descriptor)
        caller = RetryingCaller(
            self._retry_policy,
            backend=descriptor.backend_id,
            sleep=self._sleep,
            logger=self._logger,
        )

        for step in range(1, self.settings.max_steps + 1):
            if run.controller.is_cancelled:
                return True
            self._set_state(TurnState.REQUESTING)
            prepared = self._transcript.prepare_request(
                descriptor.backend_id,
                supports_previous_response=descriptor.supports_previous_response,
            )
            request = BackendRequest(
                model=descriptor.model,
                items=prepared.items,
                instructions=self.settings.instructions,
                tools=self.settings.tools,
                previous_response_id=prepared.previous_response_id,
                stream=self.settings.stream,
                store=self._transcript.mode is StorageMode.STATEFUL,
                max_output_tokens=descriptor.max_output_tokens,
                temperature=descriptor.temperature,
            )
            self._logger.debug(
                "turn_step",
                step=step,
                items=len(prepared.items),
                delta=prepared.is_delta,
            )

            async def attempt() -> StreamOutcome:
                return await self._attempt(run, descriptor, client, request, sink)

            outcome = await caller.call(attempt, cancel_token=run.controller.token)
            run.usage = run.usage + outcome.usage
            if outcome.cancelled:
                return True
            if outcome.response_id is not None:
                self._transcript.acknowledge(outcome.response_id, descriptor.backend_id)

            self._set_state(TurnState.DISPATCHING)
            outputs = await run.coordinator.collect_outputs() if run.coordinator else []
            self._transcript.extend(outputs)
            if run.controller.is_cancelled:
                return True
            if not outputs:
                return False

        raise StepLimitExceededError(
            f"tool calls still requested after {self.settings.max_steps} requests"
        )

    async def _attempt(
        self,
        run: _TurnRun,
        descriptor: BackendDescriptor,
        client: BackendClient,
        request: BackendRequest,
        sink: OutputSink | None,
    ) -> StreamOutcome:
        coordinator = StreamCoordinator(
            transcript=self._transcript,
            tracker=run.tracker,
            dispatcher=self._dispatcher,
            cancel_token=run.controller.token,
            backend_id=descriptor.backend_id,
            sink=sink,
            register_stream=run.controller.register_stream,
            idle_timeout_seconds=descriptor.request_timeout_seconds,
            logger=self._logger,
        )
        run.coordinator = coordinator
        run.requests += 1
        self._set_state(TurnState.STREAMING)
        try:
            return await coordinator.consume(client.open_stream(request))
        except BackendError as exc:
            escalated = _after_commit(coordinator, exc)
            if escalated is exc:
                raise
            raise escalated from exc

    async def _finish_cancelled(self, run: _TurnRun) -> TurnResult:
        await self._drain(run)
        await run.controller.wait_terminated()
        self._set_state(TurnState.CANCELLED)
        result = self._result(run, TurnState.CANCELLED, error=run.controller.token.reason)
        self._logger.info(
            "turn_cancelled",
            turn_id=run.turn_id,
            reason=run.controller.token.reason,
            appended_items=len(result.items),
        )
        return result

    async def _drain(self, run: _TurnRun) -> None:
        """Append outputs for every call still owned by the active coordinator."""
        if run.coordinator is None or not run.coordinator.has_dispatches:
            return
        outputs = await run.coordinator.collect_outputs()
        self._transcript.extend(outputs)

    def _repair_dangling_calls(self) -> None:
        for call in self._transcript.unresolved_calls():
            self._transcript.append(output_for_call(call, ABORTED_OUTPUT_TEXT))
            self._logger.warning("dangling_call_repaired", call_id=call.call_id)

    def _client_for(self, descriptor: BackendDescriptor) -> BackendClient:
        client = self._clients.get(descriptor.backend_id)
        if client is None:
            client = self._client_factory(descriptor)
            self._clients[descriptor.backend_id] = client
        return client

    def _set_state(self, state: TurnState) -> None:
        if state is not self._state:
            self._logger.debug("turn_state", previous=self._state.value, current=state.value)
        self._state = state

    def _result(self, run: _TurnRun, state: TurnState, *, error: str | None = None) -> TurnResult:
        return TurnResult(
            turn_id=run.turn_id,
            state=state,
            backend_id=run.descriptor.backend_id if run.descriptor is not None else None,
            category=run.category,
            items=self._transcript.items()[run.start_index :],
            requests=run.requests,
            usage=run.usage,
            fell_back=run.fell_back,
            error=error,
        )


def _after_commit(coordinator: StreamCoordinator, error: BackendError) -> BackendError:
    """Escalate a retryable error once the attempt has committed items."""
    if not error.retryable or coordinator.committed_count == 0:
        return error
    return BackendFatalError(
        f"stream interrupted after {coordinator.committed_count} committed items: {error.detail}",
        backend=error.backend,
        code="stream_interrupted",
    )


def _normalize_input(
    new_input: str | ConversationItem | Sequence[ConversationItem],
) -> tuple[ConversationItem, ...]:
    if isinstance(new_input, str):
        if not new_input.strip():
            raise ValueError("turn input must not be empty")
        return (user_message(new_input),)
    if is_conversation_item(new_input):
        return (new_input,)  # type: ignore[return-value]
    items = tuple(new_input)  # type: ignore[arg-type]
    if not items:
        raise ValueError("turn input must not be empty")
    for item in items:
        if not is_conversation_item(item):
            raise TypeError(f"not a conversation item: {type(item).__name__}")
    return items


__all__ = [
    "SessionSettings",
    "StepLimitExceededError",
    "TurnFailedError",
    "TurnInProgressError",
    "TurnOrchestrator",
    "TurnResult",
    "TurnState",
]
