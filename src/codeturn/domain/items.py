"""
codeturn — conversation item model

File: src/codeturn/domain/items.py

Purpose
- Typed, immutable conversation items that make up a transcript.

What is defined here
- One frozen dataclass per item kind (message, function call, function call
  output, local shell call, local shell call output, reasoning).
- ``to_dict()`` on every item (responses-style wire shape) and
  ``item_from_dict()`` to parse it back.

Contracts
- Items are never mutated after construction. Status changes produce a copy
  via ``with_status``.
- Tool-call arguments stay opaque here; the tool dispatcher validates them.
"""

from __future__ import annotations

import enum
import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import ClassVar, Final, TypeAlias

from codeturn.constants import LOCAL_SHELL_TOOL_NAME
from codeturn.domain import ids

JSONScalar: TypeAlias = str | int | float | bool | None
JSONValue: TypeAlias = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

MESSAGE_ROLES: Final[frozenset[str]] = frozenset({"user", "assistant", "system", "developer"})
_INPUT_ROLES: Final[frozenset[str]] = frozenset({"user", "system", "developer"})


class ItemType(enum.Enum):
    MESSAGE = "message"
    FUNCTION_CALL = "function_call"
    FUNCTION_CALL_OUTPUT = "function_call_output"
    LOCAL_SHELL_CALL = "local_shell_call"
    LOCAL_SHELL_CALL_OUTPUT = "local_shell_call_output"
    REASONING = "reasoning"


class ItemStatus(enum.Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    INCOMPLETE = "incomplete"


def _require_str(value: object, field_name: str, *, allow_empty: bool = False) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{field_name} must be a string")
    if not allow_empty and not value.strip():
        raise ValueError(f"{field_name} cannot be empty")
    return value


def _coerce_json(value: object, *, path: str) -> JSONValue:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"{path} keys must be strings")
            out[key] = _coerce_json(item, path=f"{path}.{key}")
        return out
    if isinstance(value, Sequence) and not isinstance(value, (bytes, bytearray)):
        return [_coerce_json(item, path=f"{path}[]") for item in value]
    raise TypeError(f"{path} must be JSON-serializable")


def _coerce_status(value: object) -> ItemStatus:
    if isinstance(value, ItemStatus):
        return value
    if isinstance(value, str):
        return ItemStatus(value)
    raise TypeError("status must be an ItemStatus")


@dataclass(frozen=True, slots=True)
class MessageItem:
    """Text message authored by the user, the assistant, or the system."""

    type: ClassVar[ItemType] = ItemType.MESSAGE

    role: str
    text: str
    id: str = field(default_factory=ids.new_message_id)
    status: ItemStatus = ItemStatus.COMPLETED

    def __post_init__(self) -> None:
        role = _require_str(self.role, "MessageItem.role").strip().lower()
        if role not in MESSAGE_ROLES:
            raise ValueError(f"MessageItem.role must be one of {sorted(MESSAGE_ROLES)}")
        object.__setattr__(self, "role", role)
        _require_str(self.text, "MessageItem.text", allow_empty=True)
        _require_str(self.id, "MessageItem.id")
        object.__setattr__(self, "status", _coerce_status(self.status))

    def to_dict(self) -> dict[str, JSONValue]:
        part_type = "input_text" if self.role in _INPUT_ROLES else "output_text"
        return {
            "type": self.type.value,
            "id": self.id,
            "role": self.role,
            "status": self.status.value,
            "content": [{"type": part_type, "text": self.text}],
        }

    def with_status(self, status: ItemStatus) -> MessageItem:
        return replace(self, status=status)


@dataclass(frozen=True, slots=True)
class FunctionCallItem:
    """Model-requested function call; ``arguments`` is the raw JSON text."""

    type: ClassVar[ItemType] = ItemType.FUNCTION_CALL

    call_id: str
    name: str
    arguments: str
    id: str = field(default_factory=ids.new_call_item_id)
    status: ItemStatus = ItemStatus.COMPLETED

    def __post_init__(self) -> None:
        _require_str(self.call_id, "FunctionCallItem.call_id")
        _require_str(self.name, "FunctionCallItem.name")
        _require_str(self.arguments, "FunctionCallItem.arguments", allow_empty=True)
        _require_str(self.id, "FunctionCallItem.id")
        object.__setattr__(self, "status", _coerce_status(self.status))

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "type": self.type.value,
            "id": self.id,
            "call_id": self.call_id,
            "name": self.name,
            "arguments": self.arguments,
            "status": self.status.value,
        }

    def with_status(self, status: ItemStatus) -> FunctionCallItem:
        return replace(self, status=status)


@dataclass(frozen=True, slots=True)
class LocalShellCallItem:
    """Structured shell action requested through the built-in local shell tool."""

    type: ClassVar[ItemType] = ItemType.LOCAL_SHELL_CALL

    call_id: str
    action: Mapping[str, JSONValue]
    id: str = field(default_factory=ids.new_call_item_id)
    status: ItemStatus = ItemStatus.COMPLETED

    def __post_init__(self) -> None:
        _require_str(self.call_id, "LocalShellCallItem.call_id")
        if not isinstance(self.action, Mapping):
            raise TypeError("LocalShellCallItem.action must be a mapping")
        object.__setattr__(
            self, "action", _coerce_json(dict(self.action), path="LocalShellCallItem.action")
        )
        _require_str(self.id, "LocalShellCallItem.id")
        object.__setattr__(self, "status", _coerce_status(self.status))

    @property
    def name(self) -> str:
        return LOCAL_SHELL_TOOL_NAME

    @property
    def arguments(self) -> str:
        return json.dumps(self.action, sort_keys=True, separators=(",", ":"))

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "type": self.type.value,
            "id": self.id,
            "call_id": self.call_id,
            "action": dict(self.action),
            "status": self.status.value,
        }

    def with_status(self, status: ItemStatus) -> LocalShellCallItem:
        return replace(self, status=status)


@dataclass(frozen=True, slots=True)
class FunctionCallOutputItem:
    type: ClassVar[ItemType] = ItemType.FUNCTION_CALL_OUTPUT

    call_id: str
    output: str
    id: str = field(default_factory=ids.new_output_item_id)
    status: ItemStatus = ItemStatus.COMPLETED

    def __post_init__(self) -> None:
        _require_str(self.call_id, "FunctionCallOutputItem.call_id")
        _require_str(self.output, "FunctionCallOutputItem.output", allow_empty=True)
        _require_str(self.id, "FunctionCallOutputItem.id")
        object.__setattr__(self, "status", _coerce_status(self.status))

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "type": self.type.value,
            "id": self.id,
            "call_id": self.call_id,
            "output": self.output,
            "status": self.status.value,
        }

    def with_status(self, status: ItemStatus) -> FunctionCallOutputItem:
        return replace(self, status=status)


@dataclass(frozen=True, slots=True)
class LocalShellCallOutputItem:
    type: ClassVar[ItemType] = ItemType.LOCAL_SHELL_CALL_OUTPUT

    call_id: str
    output: str
    id: str = field(default_factory=ids.new_output_item_id)
    status: ItemStatus = ItemStatus.COMPLETED

    def __post_init__(self) -> None:
        _require_str(self.call_id, "LocalShellCallOutputItem.call_id")
        _require_str(self.output, "LocalShellCallOutputItem.output", allow_empty=True)
        _require_str(self.id, "LocalShellCallOutputItem.id")
        object.__setattr__(self, "status", _coerce_status(self.status))

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "type": self.type.value,
            "id": self.id,
            "call_id": self.call_id,
            "output": self.output,
            "status": self.status.value,
        }

    def with_status(self, status: ItemStatus) -> LocalShellCallOutputItem:
        return replace(self, status=status)


@dataclass(frozen=True, slots=True)
class ReasoningItem:
    type: ClassVar[ItemType] = ItemType.REASONING

    summary: tuple[str, ...] = ()
    encrypted_content: str | None = None
    id: str = field(default_factory=ids.new_reasoning_id)
    status: ItemStatus = ItemStatus.COMPLETED

    def __post_init__(self) -> None:
        summary = tuple(self.summary)
        for entry in summary:
            _require_str(entry, "ReasoningItem.summary[]", allow_empty=True)
        object.__setattr__(self, "summary", summary)
        if self.encrypted_content is not None:
            _require_str(self.encrypted_content, "ReasoningItem.encrypted_content")
        _require_str(self.id, "ReasoningItem.id")
        object.__setattr__(self, "status", _coerce_status(self.status))

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {
            "type": self.type.value,
            "id": self.id,
            "summary": [{"type": "summary_text", "text": text} for text in self.summary],
            "status": self.status.value,
        }
        if self.encrypted_content is not None:
            payload["encrypted_content"] = self.encrypted_content
        return payload

    def with_status(self, status: ItemStatus) -> ReasoningItem:
        return replace(self, status=status)


ToolCallItem: TypeAlias = FunctionCallItem | LocalShellCallItem
ToolOutputItem: TypeAlias = FunctionCallOutputItem | LocalShellCallOutputItem
ConversationItem: TypeAlias = (
    MessageItem
    | FunctionCallItem
    | FunctionCallOutputItem
    | LocalShellCallItem
    | LocalShellCallOutputItem
    | ReasoningItem
)

_ITEM_CLASSES: Final[tuple[type, ...]] = (
    MessageItem,
    FunctionCallItem,
    FunctionCallOutputItem,
    LocalShellCallItem,
    LocalShellCallOutputItem,
    ReasoningItem,
)


def is_conversation_item(value: object) -> bool:
    return isinstance(value, _ITEM_CLASSES)


def is_tool_call(item: object) -> bool:
    return isinstance(item, (FunctionCallItem, LocalShellCallItem))


def is_tool_output(item: object) -> bool:
    return isinstance(item, (FunctionCallOutputItem, LocalShellCallOutputItem))


def user_message(text: str) -> MessageItem:
    return MessageItem(role="user", text=text)


def output_for_call(call: ToolCallItem, output: str) -> ToolOutputItem:
    """Build the output item kind that answers ``call``."""
    if isinstance(call, LocalShellCallItem):
        return LocalShellCallOutputItem(call_id=call.call_id, output=output)
    return FunctionCallOutputItem(call_id=call.call_id, output=output)


def item_from_dict(payload: Mapping[str, object]) -> ConversationItem:
    """Parse a responses-style item mapping into its typed item."""

    if not isinstance(payload, Mapping):
        raise TypeError("item payload must be a mapping")
    raw_type = payload.get("type")
    if raw_type is None and "role" in payload:
        raw_type = ItemType.MESSAGE.value
    try:
        item_type = ItemType(raw_type)
    except ValueError as exc:
        raise ValueError(f"unsupported item type: {raw_type!r}") from exc

    common: dict[str, object] = {}
    if isinstance(payload.get("id"), str) and str(payload["id"]).strip():
        common["id"] = payload["id"]
    if payload.get("status") is not None:
        common["status"] = _coerce_status(payload["status"])

    if item_type is ItemType.MESSAGE:
        return MessageItem(
            role=str(payload.get("role", "")),
            text=_message_text(payload.get("content")),
            **common,  # type: ignore[arg-type]
        )
    if item_type is ItemType.FUNCTION_CALL:
        arguments = payload.get("arguments", "")
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments)
        return FunctionCallItem(
            call_id=str(payload.get("call_id", "")),
            name=str(payload.get("name", "")),
            arguments=arguments,
            **common,  # type: ignore[arg-type]
        )
    if item_type is ItemType.LOCAL_SHELL_CALL:
        action = payload.get("action")
        if not isinstance(action, Mapping):
            raise ValueError("local_shell_call requires an action object")
        return LocalShellCallItem(
            call_id=str(payload.get("call_id", "")),
            action=action,
            **common,  # type: ignore[arg-type]
        )
    if item_type is ItemType.FUNCTION_CALL_OUTPUT:
        return FunctionCallOutputItem(
            call_id=str(payload.get("call_id", "")),
            output=_output_text(payload.get("output")),
            **common,  # type: ignore[arg-type]
        )
    if item_type is ItemType.LOCAL_SHELL_CALL_OUTPUT:
        return LocalShellCallOutputItem(
            call_id=str(payload.get("call_id", "")),
            output=_output_text(payload.get("output")),
            **common,  # type: ignore[arg-type]
        )

    summary_entries: list[str] = []
    raw_summary = payload.get("summary")
    if isinstance(raw_summary, Sequence) and not isinstance(raw_summary, str):
        for entry in raw_summary:
            if isinstance(entry, Mapping) and isinstance(entry.get("text"), str):
                summary_entries.append(str(entry["text"]))
            elif isinstance(entry, str):
                summary_entries.append(entry)
    encrypted = payload.get("encrypted_content")
    return ReasoningItem(
        summary=tuple(summary_entries),
        encrypted_content=encrypted if isinstance(encrypted, str) and encrypted else None,
        **common,  # type: ignore[arg-type]
    )


def _message_text(content: object) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, Sequence):
        parts: list[str] = []
        for part in content:
            if isinstance(part, Mapping) and isinstance(part.get("text"), str):
                parts.append(str(part["text"]))
            elif isinstance(part, str):
                parts.append(part)
        return "".join(parts)
    return ""


def _output_text(output: object) -> str:
    if isinstance(output, str):
        return output
    if output is None:
        return ""
    return json.dumps(output, sort_keys=True)


__all__ = [
    "ConversationItem",
    "FunctionCallItem",
    "FunctionCallOutputItem",
    "ItemStatus",
    "ItemType",
    "JSONValue",
    "LocalShellCallItem",
    "LocalShellCallOutputItem",
    "MESSAGE_ROLES",
    "MessageItem",
    "ReasoningItem",
    "ToolCallItem",
    "ToolOutputItem",
    "is_conversation_item",
    "is_tool_call",
    "is_tool_output",
    "item_from_dict",
    "output_for_call",
    "user_message",
]
