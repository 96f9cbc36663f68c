"""
codeturn — unit tests for conversation items

File: tests/unit/domain/test_items.py

Purpose
- Validate item construction, wire-shape serialization and parsing back.
"""

from __future__ import annotations

import json

import pytest

from codeturn.domain.items import (
    FunctionCallItem,
    FunctionCallOutputItem,
    ItemStatus,
    LocalShellCallItem,
    LocalShellCallOutputItem,
    MessageItem,
    ReasoningItem,
    is_tool_call,
    is_tool_output,
    item_from_dict,
    output_for_call,
    user_message,
)

try:
    from hypothesis import given, settings
    from hypothesis import strategies as st
except ModuleNotFoundError:
    _HYPOTHESIS_AVAILABLE = False
else:
    _HYPOTHESIS_AVAILABLE = True


def test_message_role_is_normalized_and_validated() -> None:
    item = MessageItem(role=" User ", text="hi")
    assert item.role == "user"
    assert item.id.startswith("msg_")
    assert item.status is ItemStatus.COMPLETED

    with pytest.raises(ValueError, match="MessageItem.role must be one of"):
        MessageItem(role="tool", text="nope")


def test_message_to_dict_uses_input_or_output_parts() -> None:
    assert user_message("hello").to_dict()["content"] == [{"type": "input_text", "text": "hello"}]
    assistant = MessageItem(role="assistant", text="done")
    assert assistant.to_dict()["content"] == [{"type": "output_text", "text": "done"}]


def test_items_are_frozen_and_with_status_returns_copy() -> None:
    call = FunctionCallItem(call_id="call_1", name="shell", arguments="{}")
    with pytest.raises(AttributeError):
        call.name = "other"  # type: ignore[misc]

    updated = call.with_status(ItemStatus.INCOMPLETE)
    assert updated.status is ItemStatus.INCOMPLETE
    assert updated.id == call.id
    assert call.status is ItemStatus.COMPLETED


def test_function_call_requires_call_id_and_name() -> None:
    with pytest.raises(ValueError, match="call_id cannot be empty"):
        FunctionCallItem(call_id=" ", name="shell", arguments="{}")
    with pytest.raises(TypeError, match="name must be a string"):
        FunctionCallItem(call_id="c1", name=None, arguments="{}")  # type: ignore[arg-type]


def test_local_shell_call_exposes_name_and_canonical_arguments() -> None:
    call = LocalShellCallItem(call_id="ls_1", action={"type": "exec", "command": ["ls", "-la"]})
    assert call.name == "local_shell"
    assert json.loads(call.arguments) == {"type": "exec", "command": ["ls", "-la"]}

    with pytest.raises(TypeError, match="must be JSON-serializable"):
        LocalShellCallItem(call_id="ls_2", action={"type": "exec", "command": {1, 2}})


def test_output_for_call_matches_call_kind() -> None:
    function_call = FunctionCallItem(call_id="call_a", name="shell", arguments="{}")
    shell_call = LocalShellCallItem(call_id="call_b", action={"type": "exec", "command": ["ls"]})

    function_output = output_for_call(function_call, "ok")
    shell_output = output_for_call(shell_call, "ok")

    assert isinstance(function_output, FunctionCallOutputItem)
    assert function_output.call_id == "call_a"
    assert isinstance(shell_output, LocalShellCallOutputItem)
    assert shell_output.call_id == "call_b"
    assert is_tool_output(function_output) and is_tool_output(shell_output)
    assert is_tool_call(function_call) and is_tool_call(shell_call)
    assert not is_tool_call(function_output)


def test_item_from_dict_parses_every_kind() -> None:
    message = item_from_dict(
        {
            "type": "message",
            "id": "msg_1",
            "role": "assistant",
            "content": [{"type": "output_text", "text": "a"}, {"type": "output_text", "text": "b"}],
        }
    )
    assert isinstance(message, MessageItem)
    assert message.text == "ab"
    assert message.id == "msg_1"

    call = item_from_dict(
        {"type": "function_call", "call_id": "c1", "name": "shell", "arguments": {"command": ["ls"]}}
    )
    assert isinstance(call, FunctionCallItem)
    assert json.loads(call.arguments) == {"command": ["ls"]}

    output = item_from_dict({"type": "function_call_output", "call_id": "c1", "output": {"x": 1}})
    assert isinstance(output, FunctionCallOutputItem)
    assert output.output == '{"x": 1}'

    reasoning = item_from_dict(
        {
            "type": "reasoning",
            "summary": [{"type": "summary_text", "text": "thinking"}],
            "encrypted_content": "opaque",
            "status": "in_progress",
        }
    )
    assert isinstance(reasoning, ReasoningItem)
    assert reasoning.summary == ("thinking",)
    assert reasoning.encrypted_content == "opaque"
    assert reasoning.status is ItemStatus.IN_PROGRESS


def test_item_from_dict_treats_role_only_payload_as_message() -> None:
    item = item_from_dict({"role": "user", "content": "plain text"})
    assert isinstance(item, MessageItem)
    assert item.text == "plain text"


def test_item_from_dict_rejects_unknown_type_and_missing_action() -> None:
    with pytest.raises(ValueError, match="unsupported item type"):
        item_from_dict({"type": "web_search_call"})
    with pytest.raises(ValueError, match="requires an action object"):
        item_from_dict({"type": "local_shell_call", "call_id": "c"})


def test_to_dict_parses_back_to_equal_item() -> None:
    items = [
        user_message("hi"),
        FunctionCallItem(call_id="c1", name="apply_patch", arguments='{"input": "x"}'),
        LocalShellCallItem(call_id="c2", action={"type": "exec", "command": ["pwd"]}),
        LocalShellCallOutputItem(call_id="c2", output="/tmp"),
        ReasoningItem(summary=("s1", "s2")),
    ]
    for item in items:
        assert item_from_dict(item.to_dict()) == item


if _HYPOTHESIS_AVAILABLE:

    @settings(max_examples=25, derandomize=True, deadline=None)
    @given(
        role=st.sampled_from(["user", "assistant", "system", "developer"]),
        text=st.text(max_size=64),
    )
    def test_property_message_roundtrip(role: str, text: str) -> None:
        item = MessageItem(role=role, text=text)
        assert item_from_dict(item.to_dict()) == item

else:

    def test_property_message_roundtrip() -> None:
        pytest.skip("hypothesis is not installed")
