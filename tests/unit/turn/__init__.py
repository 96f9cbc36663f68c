"""Shared scripted fakes and builders for turn pipeline tests."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import Final

from codeturn.backends.base import BackendRequest, StreamEvent, TokenUsage
from codeturn.backends.retry import RetryPolicy
from codeturn.conversation.transcript import StorageMode, TranscriptStore
from codeturn.domain.items import FunctionCallItem, MessageItem
from codeturn.routing.registry import (
    BackendDescriptor,
    BackendRegistry,
    RoutingTable,
    WireProtocol,
)
from codeturn.tools.dispatcher import DispatchSettings, ToolDispatcher
from codeturn.tools.interfaces import ExecRequest, ExecResult, PatchResult
from codeturn.turn.orchestrator import SessionSettings, TurnOrchestrator
from codeturn.utils.concurrency import CancellationToken

# Script step that parks the stream until it is cancelled.
HANG: Final[object] = object()


@dataclass(frozen=True, slots=True)
class Pause:
    """Script step that delays the next event without ending the stream."""

    seconds: float


@dataclass(slots=True)
class ScriptedBackend:
    """Backend client replaying one scripted step list per ``open_stream`` call."""

    scripts: list[Sequence[object]]
    requests: list[BackendRequest] = field(default_factory=list)
    hung: asyncio.Event = field(default_factory=asyncio.Event)

    async def open_stream(self, request: BackendRequest) -> AsyncIterator[StreamEvent]:
        self.requests.append(request)
        if not self.scripts:
            raise AssertionError("backend called more often than scripted")
        for step in self.scripts.pop(0):
            if step is HANG:
                self.hung.set()
                await asyncio.Event().wait()
            elif isinstance(step, Pause):
                await asyncio.sleep(step.seconds)
            elif isinstance(step, BaseException):
                raise step
            else:
                yield step  # type: ignore[misc]


@dataclass(slots=True)
class FakeExecutor:
    """Echo executor; per-command delays reorder completions, ``block`` parks forever."""

    delays: dict[str, float] = field(default_factory=dict)
    block: bool = False
    requests: list[ExecRequest] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    started: asyncio.Event = field(default_factory=asyncio.Event)

    async def run(self, request: ExecRequest, *, cancel_token: CancellationToken) -> ExecResult:
        self.requests.append(request)
        self.started.set()
        if self.block:
            await asyncio.Event().wait()
        delay = self.delays.get(request.argv[0], 0.0)
        if delay:
            await asyncio.sleep(delay)
        self.completed.append(request.argv[0])
        return ExecResult(stdout=" ".join(request.argv), duration_seconds=delay)


@dataclass(slots=True)
class FakePatchApplier:
    async def apply(
        self, patch: str, *, workdir: str | None, cancel_token: CancellationToken
    ) -> PatchResult:
        return PatchResult(success=True, modified_paths=("README.md",))


@dataclass(slots=True)
class SleepRecorder:
    calls: list[float] = field(default_factory=list)

    async def __call__(self, seconds: float, token: CancellationToken | None) -> None:
        self.calls.append(seconds)


def message_event(text: str) -> StreamEvent:
    return StreamEvent.item_completed(MessageItem(role="assistant", text=text))


def call_event(call_id: str, *command: str) -> StreamEvent:
    arguments = json.dumps({"command": list(command or ("ls",))})
    return StreamEvent.item_completed(
        FunctionCallItem(call_id=call_id, name="shell", arguments=arguments)
    )


def done_event(response_id: str | None = None, total_tokens: int = 0) -> StreamEvent:
    usage = TokenUsage(input_tokens=total_tokens, output_tokens=0) if total_tokens else None
    return StreamEvent.done(response_id=response_id, usage=usage)


def descriptor(
    backend_id: str = "primary",
    *,
    protocol: WireProtocol = WireProtocol.RESPONSES,
    timeout_seconds: float = 30.0,
) -> BackendDescriptor:
    return BackendDescriptor(
        backend_id=backend_id,
        protocol=protocol,
        model=f"{backend_id}-model",
        request_timeout_seconds=timeout_seconds,
    )


@dataclass(slots=True)
class Harness:
    orchestrator: TurnOrchestrator
    backend: ScriptedBackend
    executor: FakeExecutor
    sleep: SleepRecorder
    factory_calls: list[str]

    @property
    def transcript(self) -> TranscriptStore:
        return self.orchestrator.transcript


def build_harness(
    scripts: list[Sequence[object]],
    *,
    executor: FakeExecutor | None = None,
    descriptors: Sequence[BackendDescriptor] = (),
    routing: RoutingTable | None = None,
    mode: StorageMode = StorageMode.STATELESS,
    transcript: TranscriptStore | None = None,
    settings: SessionSettings | None = None,
    retry_policy: RetryPolicy | None = None,
) -> Harness:
    backend = ScriptedBackend(scripts=list(scripts))
    executor = executor if executor is not None else FakeExecutor()
    sleep = SleepRecorder()
    factory_calls: list[str] = []

    def client_factory(selected: BackendDescriptor) -> ScriptedBackend:
        factory_calls.append(selected.backend_id)
        return backend

    orchestrator = TurnOrchestrator(
        registry=BackendRegistry(descriptors or (descriptor(),)),
        routing=routing if routing is not None else RoutingTable(default_backend="primary"),
        transcript=transcript if transcript is not None else TranscriptStore(mode=mode),
        dispatcher=ToolDispatcher(
            executor=executor,
            patch_applier=FakePatchApplier(),
            settings=DispatchSettings(max_parallel_tools=4),
        ),
        retry_policy=retry_policy if retry_policy is not None else RetryPolicy(max_attempts=3),
        settings=settings,
        client_factory=client_factory,
        sleep=sleep,
        session_id="sess_test",
    )
    return Harness(
        orchestrator=orchestrator,
        backend=backend,
        executor=executor,
        sleep=sleep,
        factory_calls=factory_calls,
    )


__all__ = [
    "HANG",
    "FakeExecutor",
    "FakePatchApplier",
    "Harness",
    "Pause",
    "ScriptedBackend",
    "SleepRecorder",
    "build_harness",
    "call_event",
    "descriptor",
    "done_event",
    "message_event",
]
