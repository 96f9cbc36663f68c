"""
codeturn — chat-style backend adapter

File: src/codeturn/backends/chat_adapter.py

Purpose
- Speak the OpenAI-chat ``messages``/``choices`` wire shape.
- Convert the transcript into chat messages and normalize either streamed
  chunks or a single completion object into canonical stream events.

Notes
- Streamed deltas are merged into one message-shaped mapping first, so
  streaming and non-streaming responses share ``_items_from_message``.
- Chat backends cannot reference earlier responses; every request carries the
  whole transcript.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol, cast

import structlog

from codeturn.backends.base import (
    BackendRequest,
    BackendResponseError,
    StreamEvent,
    TokenUsage,
    map_backend_exception,
    read_field,
    read_sequence,
    read_str,
)
from codeturn.backends.sdk import create_async_client
from codeturn.domain import ids
from codeturn.domain.items import (
    ConversationItem,
    FunctionCallItem,
    FunctionCallOutputItem,
    ItemStatus,
    LocalShellCallItem,
    LocalShellCallOutputItem,
    MessageItem,
)
from codeturn.routing.registry import BackendDescriptor


class _ChatCompletionsAPI(Protocol):
    async def create(self, **kwargs: object) -> object: ...


class _ChatAPI(Protocol):
    completions: _ChatCompletionsAPI


class _ChatClient(Protocol):
    chat: _ChatAPI


class ChatCompletionsAdapter:
    """Chat-completions adapter with lazy SDK loading and injectable client."""

    def __init__(
        self,
        descriptor: BackendDescriptor,
        *,
        client: object | None = None,
        logger: Any | None = None,
    ) -> None:
        self.descriptor = descriptor
        self._client = cast("_ChatClient | None", client)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def backend_id(self) -> str:
        return self.descriptor.backend_id

    def _ensure_client(self) -> _ChatClient:
        if self._client is None:
            self._client = cast(
                "_ChatClient", create_async_client(self.descriptor, required_api="chat")
            )
        return self._client

    def build_payload(self, request: BackendRequest) -> dict[str, object]:
        stream = request.stream and self.descriptor.supports_streaming
        payload: dict[str, object] = {
            "model": request.model,
            "messages": transcript_to_messages(request.items, instructions=request.instructions),
            "stream": stream,
        }
        if request.tools:
            payload["tools"] = [tool.to_chat_dict() for tool in request.tools]
        if stream:
            payload["stream_options"] = {"include_usage": True}
        if request.max_output_tokens is not None:
            payload["max_tokens"] = request.max_output_tokens
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        return payload

    async def open_stream(self, request: BackendRequest) -> AsyncIterator[StreamEvent]:
        payload = self.build_payload(request)
        client = self._ensure_client()
        try:
            raw = await client.chat.completions.create(**payload)
        except Exception as exc:
            mapped = map_backend_exception(exc, backend=self.backend_id)
            if mapped is None:
                raise
            raise mapped from exc

        if not payload["stream"]:
            async for event in self._normalize_completion(raw):
                yield event
            return

        accumulator = _ChatStreamAccumulator()
        try:
            async for chunk in cast("AsyncIterator[object]", raw):
                started = accumulator.feed(chunk)
                if started is not None:
                    yield StreamEvent.item_started(started)
        except Exception as exc:
            mapped = map_backend_exception(exc, backend=self.backend_id)
            if mapped is None:
                raise
            self._logger.warning(
                "chat_stream_error", backend_id=self.backend_id, code=mapped.code
            )
            yield StreamEvent.failed(mapped)
            return

        for item in _items_from_message(
            accumulator.message(), backend=self.backend_id, message_id=accumulator.message_id
        ):
            yield StreamEvent.item_completed(item)
        yield StreamEvent.done(response_id=accumulator.response_id, usage=accumulator.usage)

    async def _normalize_completion(self, raw: object) -> AsyncIterator[StreamEvent]:
        choices = read_sequence(raw, "choices")
        if not choices:
            yield StreamEvent.failed(
                BackendResponseError("completion has no choices", backend=self.backend_id)
            )
            return
        message = read_field(choices[0], "message")
        for item in _items_from_message(message, backend=self.backend_id):
            yield StreamEvent.item_completed(item)
        yield StreamEvent.done(
            response_id=read_str(raw, "id"),
            usage=TokenUsage.from_payload(read_field(raw, "usage")),
        )


@dataclass(slots=True)
class _ChatStreamAccumulator:
    """Merge streamed chat deltas into one message-shaped mapping."""

    response_id: str | None = None
    usage: TokenUsage | None = None
    message_id: str = field(default_factory=ids.new_message_id)
    _content: list[str] = field(default_factory=list)
    _tool_calls: dict[int, dict[str, str]] = field(default_factory=dict)
    _started: bool = False

    def feed(self, chunk: object) -> MessageItem | None:
        """Absorb one chunk; returns a placeholder item when text first appears."""
        self.response_id = self.response_id or read_str(chunk, "id")
        usage = read_field(chunk, "usage")
        if usage is not None:
            self.usage = TokenUsage.from_payload(usage)

        started: MessageItem | None = None
        for choice in read_sequence(chunk, "choices"):
            delta = read_field(choice, "delta")
            if delta is None:
                continue
            content = read_field(delta, "content")
            if isinstance(content, str) and content:
                if not self._started:
                    self._started = True
                    started = MessageItem(
                        role="assistant",
                        text="",
                        id=self.message_id,
                        status=ItemStatus.IN_PROGRESS,
                    )
                self._content.append(content)
            for raw_call in read_sequence(delta, "tool_calls"):
                self._merge_tool_call(raw_call)
        return started

    def _merge_tool_call(self, raw_call: object) -> None:
        index = read_field(raw_call, "index")
        if not isinstance(index, int):
            index = len(self._tool_calls)
        entry = self._tool_calls.setdefault(index, {"id": "", "name": "", "arguments": ""})
        call_id = read_str(raw_call, "id")
        if call_id:
            entry["id"] = call_id
        function = read_field(raw_call, "function")
        if function is not None:
            name = read_str(function, "name")
            if name:
                entry["name"] += name
            arguments = read_field(function, "arguments")
            if isinstance(arguments, str):
                entry["arguments"] += arguments

    def message(self) -> dict[str, object]:
        tool_calls = [
            {
                "id": entry["id"],
                "type": "function",
                "function": {"name": entry["name"], "arguments": entry["arguments"]},
            }
            for _, entry in sorted(self._tool_calls.items())
        ]
        return {
            "role": "assistant",
            "content": "".join(self._content) or None,
            "tool_calls": tool_calls,
        }


def _items_from_message(
    message: object,
    *,
    backend: str,
    message_id: str | None = None,
) -> list[ConversationItem]:
    if message is None:
        raise BackendResponseError("choice has no message", backend=backend)

    items: list[ConversationItem] = []
    content = read_field(message, "content")
    if isinstance(content, str) and content:
        if message_id is None:
            items.append(MessageItem(role="assistant", text=content))
        else:
            items.append(MessageItem(role="assistant", text=content, id=message_id))

    for raw_call in read_sequence(message, "tool_calls"):
        function = read_field(raw_call, "function")
        name = read_str(function, "name") if function is not None else None
        if name is None:
            raise BackendResponseError("tool call is missing a function name", backend=backend)
        arguments = read_field(function, "arguments")
        if not isinstance(arguments, str):
            arguments = "" if arguments is None else json.dumps(arguments)
        call_id = read_str(raw_call, "id") or ids.generate_prefixed_id("call")
        items.append(FunctionCallItem(call_id=call_id, name=name, arguments=arguments))
    return items


def transcript_to_messages(
    items: tuple[ConversationItem, ...] | list[ConversationItem],
    *,
    instructions: str | None = None,
) -> list[dict[str, object]]:
    """Render transcript items as chat messages.

    Consecutive tool calls attach to the preceding assistant message. Reasoning
    items have no chat representation and are skipped.
    """

    messages: list[dict[str, object]] = []
    if instructions:
        messages.append({"role": "system", "content": instructions})

    for item in items:
        if isinstance(item, MessageItem):
            messages.append({"role": item.role, "content": item.text})
        elif isinstance(item, (FunctionCallItem, LocalShellCallItem)):
            tool_call = {
                "id": item.call_id,
                "type": "function",
                "function": {"name": item.name, "arguments": item.arguments},
            }
            previous = messages[-1] if messages else None
            if previous is not None and previous.get("role") == "assistant":
                calls = cast("list[object]", previous.setdefault("tool_calls", []))
                calls.append(tool_call)
            else:
                messages.append({"role": "assistant", "content": None, "tool_calls": [tool_call]})
        elif isinstance(item, (FunctionCallOutputItem, LocalShellCallOutputItem)):
            messages.append({"role": "tool", "tool_call_id": item.call_id, "content": item.output})
    return messages


__all__ = ["ChatCompletionsAdapter", "transcript_to_messages"]
