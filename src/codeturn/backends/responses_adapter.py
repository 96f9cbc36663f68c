"""
codeturn — responses-style backend adapter

File: src/codeturn/backends/responses_adapter.py

Purpose
- Speak the typed-output-item "responses" wire shape.
- Normalize streamed ``response.*`` events, or a single response object, into
  canonical stream events.

Notes
- Output items from either path go through ``_item_from_payload``.
- ``previous_response_id`` and ``store`` pass through so stateful sessions can
  send only the transcript delta.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from typing import Any, Protocol, cast

import structlog

from codeturn.backends.base import (
    BackendError,
    BackendFatalError,
    BackendInvalidRequestError,
    BackendRateLimitError,
    BackendRequest,
    BackendResponseError,
    BackendServiceError,
    StreamEvent,
    StreamEventType,
    TokenUsage,
    map_backend_exception,
    read_field,
    read_sequence,
    read_str,
)
from codeturn.backends.sdk import create_async_client
from codeturn.domain.items import (
    ConversationItem,
    ItemType,
    LocalShellCallOutputItem,
    item_from_dict,
)
from codeturn.routing.registry import BackendDescriptor


class _ResponsesAPI(Protocol):
    async def create(self, **kwargs: object) -> object: ...


class _ResponsesClient(Protocol):
    responses: _ResponsesAPI


_RATE_LIMIT_CODES = frozenset({"rate_limit_exceeded", "rate_limit"})
_FATAL_CODES = frozenset(
    {"context_length_exceeded", "insufficient_quota", "invalid_prompt", "invalid_request_error"}
)
# Item ids the backend must see again when an item is replayed.
_KEEP_ID_TYPES = frozenset({ItemType.REASONING.value, ItemType.LOCAL_SHELL_CALL.value})


class ResponsesAdapter:
    """Responses-API adapter with lazy SDK loading and injectable client."""

    def __init__(
        self,
        descriptor: BackendDescriptor,
        *,
        client: object | None = None,
        logger: Any | None = None,
    ) -> None:
        self.descriptor = descriptor
        self._client = cast("_ResponsesClient | None", client)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def backend_id(self) -> str:
        return self.descriptor.backend_id

    def _ensure_client(self) -> _ResponsesClient:
        if self._client is None:
            self._client = cast(
                "_ResponsesClient",
                create_async_client(self.descriptor, required_api="responses"),
            )
        return self._client

    def build_payload(self, request: BackendRequest) -> dict[str, object]:
        stream = request.stream and self.descriptor.supports_streaming
        payload: dict[str, object] = {
            "model": request.model,
            "input": [item_to_input(item) for item in request.items],
            "stream": stream,
            "store": request.store,
        }
        if request.instructions:
            payload["instructions"] = request.instructions
        if request.tools:
            payload["tools"] = [tool.to_responses_dict() for tool in request.tools]
            payload["parallel_tool_calls"] = True
        if request.previous_response_id is not None:
            payload["previous_response_id"] = request.previous_response_id
        if request.max_output_tokens is not None:
            payload["max_output_tokens"] = request.max_output_tokens
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        return payload

    async def open_stream(self, request: BackendRequest) -> AsyncIterator[StreamEvent]:
        payload = self.build_payload(request)
        client = self._ensure_client()
        try:
            raw = await client.responses.create(**payload)
        except Exception as exc:
            mapped = map_backend_exception(exc, backend=self.backend_id)
            if mapped is None:
                raise
            raise mapped from exc

        if not payload["stream"]:
            for item in self._items_from_response(raw):
                yield StreamEvent.item_completed(item)
            yield StreamEvent.done(
                response_id=read_str(raw, "id"),
                usage=TokenUsage.from_payload(read_field(raw, "usage")),
            )
            return

        try:
            async for event in cast("AsyncIterator[object]", raw):
                canonical = self._normalize_event(event)
                if canonical is None:
                    continue
                yield canonical
                if canonical.kind in (StreamEventType.STREAM_DONE, StreamEventType.STREAM_ERROR):
                    return
        except Exception as exc:
            mapped = map_backend_exception(exc, backend=self.backend_id)
            if mapped is None:
                raise
            self._logger.warning(
                "responses_stream_error", backend_id=self.backend_id, code=mapped.code
            )
            yield StreamEvent.failed(mapped)

    def _normalize_event(self, event: object) -> StreamEvent | None:
        event_type = read_str(event, "type")
        if event_type == "response.output_item.added":
            item = self._item_from_payload(read_field(event, "item"))
            return None if item is None else StreamEvent.item_started(item)
        if event_type == "response.output_item.done":
            item = self._item_from_payload(read_field(event, "item"))
            return None if item is None else StreamEvent.item_completed(item)
        if event_type == "response.completed":
            response = read_field(event, "response")
            return StreamEvent.done(
                response_id=read_str(response, "id"),
                usage=TokenUsage.from_payload(read_field(response, "usage")),
            )
        if event_type == "response.failed":
            response = read_field(event, "response")
            return StreamEvent.failed(self._error_from_payload(read_field(response, "error")))
        if event_type == "response.incomplete":
            response = read_field(event, "response")
            details = read_field(response, "incomplete_details")
            reason = read_str(details, "reason") if details is not None else None
            return StreamEvent.failed(
                BackendFatalError(
                    f"incomplete response returned, reason: {reason or 'unknown'}",
                    backend=self.backend_id,
                    code="incomplete",
                )
            )
        if event_type == "error":
            return StreamEvent.failed(self._error_from_payload(event))
        return None

    def _error_from_payload(self, payload: object) -> BackendError:
        code = (read_str(payload, "code") or "").lower() if payload is not None else ""
        message = (read_str(payload, "message") if payload is not None else None) or (
            code or "response failed"
        )
        if code in _RATE_LIMIT_CODES:
            return BackendRateLimitError(message, backend=self.backend_id)
        if code in _FATAL_CODES:
            return BackendInvalidRequestError(message, backend=self.backend_id)
        return BackendServiceError(message, backend=self.backend_id)

    def _items_from_response(self, response: object) -> list[ConversationItem]:
        items: list[ConversationItem] = []
        for raw_item in read_sequence(response, "output"):
            item = self._item_from_payload(raw_item)
            if item is not None:
                items.append(item)
        return items

    def _item_from_payload(self, raw_item: object) -> ConversationItem | None:
        payload = _as_mapping(raw_item)
        if payload is None:
            raise BackendResponseError("output item is not an object", backend=self.backend_id)
        known = {item_type.value for item_type in ItemType}
        if payload.get("type") not in known:
            self._logger.debug(
                "responses_item_skipped", backend_id=self.backend_id, item_type=payload.get("type")
            )
            return None
        try:
            return item_from_dict(payload)
        except (TypeError, ValueError) as exc:
            raise BackendResponseError(
                f"malformed {payload.get('type')} item: {exc}", backend=self.backend_id
            ) from exc


def item_to_input(item: ConversationItem) -> dict[str, object]:
    """Render a transcript item as a responses ``input`` entry."""

    if isinstance(item, LocalShellCallOutputItem):
        return {"type": item.type.value, "id": item.call_id, "output": item.output}
    payload: dict[str, object] = dict(item.to_dict())
    if payload.get("type") not in _KEEP_ID_TYPES:
        payload.pop("id", None)
    if payload.get("type") in (
        ItemType.FUNCTION_CALL_OUTPUT.value,
        ItemType.MESSAGE.value,
    ):
        payload.pop("status", None)
    return payload


def _as_mapping(value: object) -> Mapping[str, object] | None:
    if isinstance(value, Mapping):
        return value
    model_dump = getattr(value, "model_dump", None)
    if callable(model_dump):
        dumped = model_dump(exclude_none=True)
        if isinstance(dumped, Mapping):
            return cast("Mapping[str, object]", dumped)
    return None


__all__ = ["ResponsesAdapter", "item_to_input"]
