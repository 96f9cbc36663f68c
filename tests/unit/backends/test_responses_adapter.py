"""Unit tests for the responses-style adapter."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from types import SimpleNamespace

import pytest

from codeturn.backends.base import (
    BackendInvalidRequestError,
    BackendRateLimitError,
    BackendRequest,
    BackendResponseError,
    BackendServiceError,
    StreamEvent,
    StreamEventType,
    adapter_for,
)
from codeturn.backends.responses_adapter import ResponsesAdapter, item_to_input
from codeturn.domain.items import (
    FunctionCallItem,
    FunctionCallOutputItem,
    LocalShellCallOutputItem,
    MessageItem,
    ReasoningItem,
    user_message,
)
from codeturn.routing.registry import BackendDescriptor, WireProtocol


@dataclass(slots=True)
class FakeResponses:
    results: list[object]
    payloads: list[dict[str, object]] = field(default_factory=list)

    async def create(self, **kwargs: object) -> object:
        self.payloads.append(kwargs)
        result = self.results.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result


class _ModelLike:
    """Mimics an SDK model object exposing ``model_dump``."""

    def __init__(self, payload: dict[str, object]) -> None:
        self._payload = payload

    def model_dump(self, *, exclude_none: bool = False) -> dict[str, object]:
        return dict(self._payload)


async def _events(events: list[object], error: BaseException | None = None) -> AsyncIterator[object]:
    for event in events:
        yield event
    if error is not None:
        raise error


def _adapter(results: list[object], *, streaming: bool = True) -> tuple[ResponsesAdapter, FakeResponses]:
    responses = FakeResponses(results=results)
    descriptor = BackendDescriptor(
        backend_id="primary",
        protocol=WireProtocol.RESPONSES,
        model="gpt-4.1",
        supports_streaming=streaming,
    )
    return ResponsesAdapter(descriptor, client=SimpleNamespace(responses=responses)), responses


async def _collect(adapter: ResponsesAdapter, request: BackendRequest) -> list[StreamEvent]:
    return [event async for event in adapter.open_stream(request)]


def _request(**kwargs: object) -> BackendRequest:
    return BackendRequest(model="gpt-4.1", items=(user_message("hello"),), **kwargs)  # type: ignore[arg-type]


def test_item_to_input_shapes() -> None:
    message = item_to_input(user_message("hi"))
    assert message == {
        "type": "message",
        "role": "user",
        "content": [{"type": "input_text", "text": "hi"}],
    }

    reasoning = ReasoningItem(summary=("s",), encrypted_content="enc")
    assert item_to_input(reasoning)["id"] == reasoning.id

    output = item_to_input(FunctionCallOutputItem(call_id="c1", output="ok"))
    assert output == {"type": "function_call_output", "call_id": "c1", "output": "ok"}

    shell_output = item_to_input(LocalShellCallOutputItem(call_id="ls_1", output="done"))
    assert shell_output == {"type": "local_shell_call_output", "id": "ls_1", "output": "done"}


def test_build_payload_passes_previous_response_and_store() -> None:
    adapter, _ = _adapter([])
    payload = adapter.build_payload(
        _request(instructions="be terse", previous_response_id="resp_0", store=True)
    )

    assert payload["previous_response_id"] == "resp_0"
    assert payload["store"] is True
    assert payload["instructions"] == "be terse"
    assert payload["parallel_tool_calls"] is True
    assert [tool["name"] for tool in payload["tools"]] == ["shell", "apply_patch"]  # type: ignore[index,union-attr]


def test_adapter_for_picks_responses_adapter() -> None:
    adapter, _ = _adapter([])
    assert isinstance(adapter_for(adapter.descriptor, client=object()), ResponsesAdapter)


async def test_streamed_events_are_normalized_in_order() -> None:
    events = [
        {"type": "response.created", "response": {"id": "resp_1"}},
        {
            "type": "response.output_item.added",
            "item": {"type": "message", "id": "msg_1", "role": "assistant", "content": [], "status": "in_progress"},
        },
        {"type": "response.output_text.delta", "delta": "Hi"},
        {
            "type": "response.output_item.done",
            "item": {
                "type": "message",
                "id": "msg_1",
                "role": "assistant",
                "content": [{"type": "output_text", "text": "Hi"}],
                "status": "completed",
            },
        },
        {"type": "response.output_item.done", "item": {"type": "web_search_call", "id": "ws_1"}},
        SimpleNamespace(
            type="response.output_item.done",
            item=_ModelLike(
                {
                    "type": "function_call",
                    "id": "fc_1",
                    "call_id": "call_1",
                    "name": "shell",
                    "arguments": '{"command":["ls"]}',
                }
            ),
        ),
        {
            "type": "response.completed",
            "response": {"id": "resp_1", "usage": {"input_tokens": 9, "output_tokens": 3}},
        },
    ]
    adapter, responses = _adapter([_events(events)])

    canonical = await _collect(adapter, _request())

    assert [event.kind for event in canonical] == [
        StreamEventType.ITEM_STARTED,
        StreamEventType.ITEM_COMPLETED,
        StreamEventType.ITEM_COMPLETED,
        StreamEventType.STREAM_DONE,
    ]
    assert isinstance(canonical[1].item, MessageItem)
    assert canonical[1].item.text == "Hi"
    assert isinstance(canonical[2].item, FunctionCallItem)
    assert canonical[2].item.call_id == "call_1"
    assert canonical[3].response_id == "resp_1"
    assert canonical[3].usage is not None and canonical[3].usage.total_tokens == 12
    assert responses.payloads[0]["stream"] is True


@pytest.mark.parametrize(
    ("event", "expected_type"),
    [
        (
            {"type": "response.failed", "response": {"error": {"code": "rate_limit_exceeded", "message": "Please try again in 1s"}}},
            BackendRateLimitError,
        ),
        (
            {"type": "response.failed", "response": {"error": {"code": "context_length_exceeded", "message": "too long"}}},
            BackendInvalidRequestError,
        ),
        (
            {"type": "response.failed", "response": {"error": {"code": "server_error", "message": "oops"}}},
            BackendServiceError,
        ),
        ({"type": "error", "code": "rate_limit", "message": "slow"}, BackendRateLimitError),
    ],
)
async def test_failure_events_are_classified(event: dict[str, object], expected_type: type) -> None:
    adapter, _ = _adapter([_events([event, {"type": "response.completed", "response": {"id": "r"}}])])

    canonical = await _collect(adapter, _request())

    assert len(canonical) == 1
    assert canonical[0].kind is StreamEventType.STREAM_ERROR
    assert isinstance(canonical[0].error, expected_type)


async def test_incomplete_response_is_fatal() -> None:
    event = {
        "type": "response.incomplete",
        "response": {"incomplete_details": {"reason": "max_output_tokens"}},
    }
    adapter, _ = _adapter([_events([event])])

    canonical = await _collect(adapter, _request())

    error = canonical[0].error
    assert error is not None
    assert error.code == "incomplete"
    assert not error.retryable
    assert "max_output_tokens" in error.detail


async def test_malformed_item_becomes_response_error_event() -> None:
    event = {"type": "response.output_item.done", "item": {"type": "local_shell_call", "call_id": "c"}}
    adapter, _ = _adapter([_events([event])])

    canonical = await _collect(adapter, _request())

    assert [event.kind for event in canonical] == [StreamEventType.STREAM_ERROR]
    assert isinstance(canonical[0].error, BackendResponseError)
    assert "malformed local_shell_call item" in canonical[0].error.detail


async def test_non_streaming_response_object() -> None:
    response = {
        "id": "resp_7",
        "output": [
            {"type": "reasoning", "id": "rs_1", "summary": []},
            {"type": "message", "role": "assistant", "content": [{"type": "output_text", "text": "done"}]},
        ],
        "usage": {"input_tokens": 2, "output_tokens": 1, "total_tokens": 3},
    }
    adapter, responses = _adapter([response], streaming=False)

    canonical = await _collect(adapter, _request())

    assert responses.payloads[0]["stream"] is False
    assert [type(event.item).__name__ for event in canonical[:-1]] == ["ReasoningItem", "MessageItem"]
    assert canonical[-1].response_id == "resp_7"
    assert canonical[-1].usage is not None and canonical[-1].usage.total_tokens == 3
