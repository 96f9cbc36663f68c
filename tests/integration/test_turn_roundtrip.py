"""
codeturn — integration tests for full turn roundtrips

File: tests/integration/test_turn_roundtrip.py

Purpose
- Drive turns end to end: TOML config -> runtime assembly -> orchestrator ->
  real wire adapters over fake SDK clients -> tool dispatch -> transcript.

What this test file should cover
- Stateful multi-step tool turns sending deltas with ``previous_response_id``.
- Category routing onto a chat-completions backend with full transcripts.
- Rate-limit retry using the server suggested delay.
- Session log lines carrying turn correlation fields.

Functional requirements
- No real provider calls; SDK clients are scripted fakes.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from types import SimpleNamespace

import pytest
import structlog

from codeturn.backends.base import adapter_for
from codeturn.config.loader import RuntimeComponents, build_runtime, load_config
from codeturn.conversation.transcript import TranscriptStore
from codeturn.domain.items import FunctionCallItem, FunctionCallOutputItem, MessageItem
from codeturn.observability.logging import (
    logging_config_from_mapping,
    setup_structured_logging,
    shutdown_logging,
)
from codeturn.routing.classifier import TaskCategory
from codeturn.routing.registry import BackendDescriptor
from codeturn.tools.dispatcher import ToolDispatcher
from codeturn.tools.interfaces import ExecRequest, ExecResult, PatchResult
from codeturn.turn.orchestrator import TurnOrchestrator, TurnState
from codeturn.utils.concurrency import CancellationToken

CONFIG_TEXT = """
[session]
storage_mode = "{storage_mode}"
instructions = "You are a careful coding assistant."

[routing]
default_backend = "primary"

[routing.task_mapping]
bug-fix = "local"

[backends.primary]
protocol = "responses"
model = "gpt-4.1"
api_key_env = "OPENAI_API_KEY"

[backends.local]
protocol = "chat"
model = "qwen2.5-coder"
endpoint = "http://localhost:8000/v1"
max_output_tokens = 1024

[retry]
max_attempts = 3
base_delay_ms = 100
max_delay_ms = 1000

[observability]
log_dir = "logs"
""".strip()


class _RateLimited(Exception):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.status_code = 429


@dataclass(slots=True)
class ScriptedCreate:
    """Fake ``create`` endpoint returning scripted streams in order."""

    results: list[object]
    payloads: list[dict[str, object]] = field(default_factory=list)

    async def create(self, **kwargs: object) -> object:
        self.payloads.append(kwargs)
        if not self.results:
            raise AssertionError("backend called more often than scripted")
        result = self.results.pop(0)
        if isinstance(result, BaseException):
            raise result
        return _stream(result)  # type: ignore[arg-type]


async def _stream(events: list[object]) -> AsyncIterator[object]:
    for event in events:
        yield event


@dataclass(slots=True)
class RecordingExecutor:
    requests: list[ExecRequest] = field(default_factory=list)

    async def run(self, request: ExecRequest, *, cancel_token: CancellationToken) -> ExecResult:
        self.requests.append(request)
        return ExecResult(stdout=f"ran: {' '.join(request.argv)}", duration_seconds=0.04)


@dataclass(slots=True)
class NoopPatchApplier:
    async def apply(
        self, patch: str, *, workdir: str | None, cancel_token: CancellationToken
    ) -> PatchResult:
        return PatchResult(success=True)


@dataclass(slots=True)
class SleepRecorder:
    calls: list[float] = field(default_factory=list)

    async def __call__(self, seconds: float, token: CancellationToken | None) -> None:
        self.calls.append(seconds)


def _responses_turn(response_id: str, *outputs: dict[str, object]) -> list[object]:
    return [
        {"type": "response.created", "response": {"id": response_id}},
        *({"type": "response.output_item.done", "item": item} for item in outputs),
        {
            "type": "response.completed",
            "response": {"id": response_id, "usage": {"input_tokens": 10, "output_tokens": 5}},
        },
    ]


def _responses_call(call_id: str, *command: str) -> dict[str, object]:
    return {
        "type": "function_call",
        "id": f"fc_{call_id}",
        "call_id": call_id,
        "name": "shell",
        "arguments": json.dumps({"command": list(command)}),
    }


def _responses_message(text: str) -> dict[str, object]:
    return {
        "type": "message",
        "id": f"msg_{len(text)}",
        "role": "assistant",
        "content": [{"type": "output_text", "text": text}],
        "status": "completed",
    }


@dataclass(slots=True)
class Session:
    runtime: RuntimeComponents
    orchestrator: TurnOrchestrator
    responses: ScriptedCreate
    completions: ScriptedCreate
    executor: RecordingExecutor
    sleep: SleepRecorder
    factory_calls: list[str]


def _session(
    tmp_path: Path,
    *,
    storage_mode: str = "stateless",
    responses: list[object] | None = None,
    completions: list[object] | None = None,
) -> Session:
    config_path = tmp_path / "codeturn.toml"
    config_path.write_text(CONFIG_TEXT.format(storage_mode=storage_mode), encoding="utf-8")
    runtime = build_runtime(load_config(config_path, environ={}))

    responses_api = ScriptedCreate(results=list(responses or []))
    completions_api = ScriptedCreate(results=list(completions or []))
    sdk = SimpleNamespace(
        responses=responses_api,
        chat=SimpleNamespace(completions=completions_api),
    )
    factory_calls: list[str] = []

    def client_factory(descriptor: BackendDescriptor) -> object:
        factory_calls.append(descriptor.backend_id)
        return adapter_for(descriptor, client=sdk)

    executor = RecordingExecutor()
    sleep = SleepRecorder()
    orchestrator = TurnOrchestrator(
        registry=runtime.registry,
        routing=runtime.routing,
        transcript=TranscriptStore(mode=runtime.storage_mode),
        dispatcher=ToolDispatcher(
            executor=executor,
            patch_applier=NoopPatchApplier(),
            settings=runtime.dispatch,
        ),
        retry_policy=runtime.retry_policy,
        settings=runtime.session,
        client_factory=client_factory,  # type: ignore[arg-type]
        sleep=sleep,
    )
    return Session(
        runtime=runtime,
        orchestrator=orchestrator,
        responses=responses_api,
        completions=completions_api,
        executor=executor,
        sleep=sleep,
        factory_calls=factory_calls,
    )


@pytest.fixture(autouse=True)
def _cleanup_logging() -> Iterator[None]:
    yield
    shutdown_logging()
    structlog.reset_defaults()


async def test_stateful_tool_turn_sends_deltas_with_previous_response_id(tmp_path: Path) -> None:
    session = _session(
        tmp_path,
        storage_mode="stateful",
        responses=[
            _responses_turn(
                "resp_1",
                _responses_call("call_1", "pytest", "-q"),
                _responses_call("call_2", "git", "status"),
            ),
            _responses_turn("resp_2", _responses_message("All tests pass.")),
            _responses_turn("resp_3", _responses_message("You're welcome.")),
        ],
    )

    first = await session.orchestrator.run_turn("please write a test runner summary")

    assert first.state is TurnState.COMPLETED
    assert first.backend_id == "primary"
    assert first.requests == 2
    assert first.usage.total_tokens == 30
    assert [request.argv for request in session.executor.requests] == [
        ("pytest", "-q"),
        ("git", "status"),
    ]

    opening, follow_up = session.responses.payloads
    assert "previous_response_id" not in opening
    assert opening["store"] is True
    assert opening["instructions"] == "You are a careful coding assistant."
    assert follow_up["previous_response_id"] == "resp_1"
    outputs = follow_up["input"]
    assert [entry["call_id"] for entry in outputs] == ["call_1", "call_2"]  # type: ignore[index,union-attr]
    assert json.loads(outputs[0]["output"]) == {  # type: ignore[index]
        "output": "ran: pytest -q",
        "metadata": {"exit_code": 0, "duration_seconds": 0.0},
    }

    second = await session.orchestrator.run_turn("thanks")

    assert second.state is TurnState.COMPLETED
    latest = session.responses.payloads[-1]
    assert latest["previous_response_id"] == "resp_2"
    assert latest["input"] == [
        {"type": "message", "role": "user", "content": [{"type": "input_text", "text": "thanks"}]}
    ]
    assert session.factory_calls == ["primary"]
    assert session.orchestrator.transcript.unresolved_calls() == ()


async def test_bug_fix_turn_routes_to_chat_backend_with_full_transcript(tmp_path: Path) -> None:
    session = _session(
        tmp_path,
        completions=[
            [
                {
                    "id": "chatcmpl-1",
                    "choices": [
                        {
                            "delta": {
                                "tool_calls": [
                                    {
                                        "index": 0,
                                        "id": "call_a",
                                        "function": {
                                            "name": "shell",
                                            "arguments": '{"command":["go","test","./..."]}',
                                        },
                                    }
                                ]
                            }
                        }
                    ],
                },
                {"choices": [], "usage": {"prompt_tokens": 8, "completion_tokens": 4, "total_tokens": 12}},
            ],
            [
                {"id": "chatcmpl-2", "choices": [{"delta": {"content": "Fixed the nil check."}}]},
            ],
        ],
    )
    seen: list[object] = []

    result = await session.orchestrator.run_turn(
        "fix the null pointer error in parser.go", sink=seen.append
    )

    assert result.state is TurnState.COMPLETED
    assert result.category is TaskCategory.BUG_FIX
    assert result.backend_id == "local"
    assert session.factory_calls == ["local"]
    assert session.responses.payloads == []

    follow_up = session.completions.payloads[1]
    messages = follow_up["messages"]
    assert messages[0] == {"role": "system", "content": "You are a careful coding assistant."}  # type: ignore[index]
    assert messages[1] == {"role": "user", "content": "fix the null pointer error in parser.go"}  # type: ignore[index]
    assert messages[-1]["role"] == "tool"  # type: ignore[index]
    assert messages[-1]["tool_call_id"] == "call_a"  # type: ignore[index]
    assert follow_up["max_tokens"] == 1024

    assert [type(item) for item in result.items] == [
        MessageItem,
        FunctionCallItem,
        FunctionCallOutputItem,
        MessageItem,
    ]
    assert isinstance(seen[-1], MessageItem)
    assert seen[-1].text == "Fixed the nil check."


async def test_rate_limited_request_waits_the_suggested_delay(tmp_path: Path) -> None:
    session = _session(
        tmp_path,
        responses=[
            _RateLimited("Rate limit reached. Please try again in 0.8s."),
            _responses_turn("resp_1", _responses_message("done")),
        ],
    )

    result = await session.orchestrator.run_turn("summarize the repository layout")

    assert result.state is TurnState.COMPLETED
    assert session.sleep.calls == [0.8]
    assert len(session.responses.payloads) == 2
    assert session.responses.payloads[0] == session.responses.payloads[1]


async def test_session_log_carries_turn_correlation(tmp_path: Path) -> None:
    session = _session(
        tmp_path,
        responses=[_responses_turn("resp_1", _responses_message("hello"))],
    )
    handle = setup_structured_logging(
        logging_config_from_mapping(
            session.runtime.observability, session_id=session.orchestrator.session_id
        )
    )

    result = await session.orchestrator.run_turn("say hello")
    shutdown_logging(handle)

    assert handle.log_path.parent == (tmp_path / "logs").resolve() / session.orchestrator.session_id
    events = [json.loads(line) for line in handle.log_path.read_text(encoding="utf-8").splitlines()]
    by_message = {event["message"]: event for event in events}
    assert {"turn_started", "backend_selected", "turn_completed"} <= set(by_message)
    completed = by_message["turn_completed"]
    assert completed["turn_id"] == result.turn_id
    assert completed["session_id"] == session.orchestrator.session_id
