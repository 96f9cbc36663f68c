"""
codeturn — backend contracts and error taxonomy

File: src/codeturn/backends/base.py

Purpose
- Canonical stream events every adapter produces, regardless of wire shape.
- Request model handed to adapters and the ``BackendClient`` protocol.
- Backend error taxonomy with retryability classification and SDK exception
  mapping.

Contracts
- Adapters never leak SDK payload shapes past ``open_stream``; the turn
  pipeline sees only ``StreamEvent`` values.
- Every ``BackendError`` carries ``backend``, ``code``, ``detail``,
  ``retryable`` and ``http_status``.
"""

from __future__ import annotations

import asyncio
import enum
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, TypeAlias, cast, runtime_checkable

from codeturn.constants import APPLY_PATCH_TOOL_NAME, SHELL_TOOL_NAME
from codeturn.domain.items import ConversationItem, JSONValue, is_conversation_item

if TYPE_CHECKING:
    from codeturn.routing.registry import BackendDescriptor


def _validate_non_empty_str(value: str, field_name: str) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{field_name} must be a string")
    normalized = value.strip()
    if not normalized:
        raise ValueError(f"{field_name} cannot be empty")
    return normalized


def _normalize_detail(value: object) -> str:
    text = str(value).strip()
    if not text:
        return "unknown error"
    return " ".join(text.split())


# --- Error taxonomy ---


class BackendError(RuntimeError):
    """Base normalized backend error with machine-readable fields."""

    def __init__(
        self,
        *,
        backend: str,
        code: str,
        detail: str,
        retryable: bool,
        http_status: int | None = None,
    ) -> None:
        self.backend = _validate_non_empty_str(backend, "backend")
        self.code = _validate_non_empty_str(code, "code")
        self.detail = _normalize_detail(detail)
        self.retryable = bool(retryable)
        self.http_status = http_status

        parts = [
            f"backend={self.backend}",
            f"code={self.code}",
            f"retryable={str(self.retryable).lower()}",
        ]
        if self.http_status is not None:
            parts.append(f"http_status={self.http_status}")
        parts.append(f"detail={self.detail}")
        super().__init__(" ".join(parts))


class BackendTransientError(BackendError):
    """Timeout, 5xx or connection failure; retried."""

    def __init__(
        self,
        detail: str,
        *,
        backend: str = "backend",
        code: str = "transient",
        http_status: int | None = None,
    ) -> None:
        super().__init__(
            backend=backend,
            code=code,
            detail=detail,
            retryable=True,
            http_status=http_status,
        )


class BackendTimeoutError(BackendTransientError):
    def __init__(
        self, detail: str, *, backend: str = "backend", http_status: int | None = None
    ) -> None:
        super().__init__(detail, backend=backend, code="timeout", http_status=http_status)


class BackendConnectionError(BackendTransientError):
    def __init__(self, detail: str, *, backend: str = "backend") -> None:
        super().__init__(detail, backend=backend, code="connection")


class BackendServiceError(BackendTransientError):
    def __init__(
        self,
        detail: str,
        *,
        backend: str = "backend",
        http_status: int | None = None,
    ) -> None:
        super().__init__(detail, backend=backend, code="service", http_status=http_status)


class BackendRateLimitError(BackendError):
    """Rate-limit response; ``retry_after_ms`` holds a structured hint if the backend sent one."""

    def __init__(
        self,
        detail: str,
        *,
        backend: str = "backend",
        http_status: int | None = 429,
        retry_after_ms: int | None = None,
    ) -> None:
        super().__init__(
            backend=backend,
            code="rate_limit",
            detail=detail,
            retryable=True,
            http_status=http_status,
        )
        if retry_after_ms is not None and retry_after_ms < 0:
            raise ValueError("retry_after_ms must be >= 0")
        self.retry_after_ms = retry_after_ms


class BackendFatalError(BackendError):
    """Non-retryable failure; terminates the turn."""

    def __init__(
        self,
        detail: str,
        *,
        backend: str = "backend",
        code: str = "fatal",
        http_status: int | None = None,
    ) -> None:
        super().__init__(
            backend=backend,
            code=code,
            detail=detail,
            retryable=False,
            http_status=http_status,
        )


class BackendAuthenticationError(BackendFatalError):
    def __init__(
        self, detail: str, *, backend: str = "backend", http_status: int | None = None
    ) -> None:
        super().__init__(detail, backend=backend, code="auth", http_status=http_status)


class BackendInvalidRequestError(BackendFatalError):
    def __init__(
        self, detail: str, *, backend: str = "backend", http_status: int | None = None
    ) -> None:
        super().__init__(detail, backend=backend, code="invalid_request", http_status=http_status)


class BackendUnavailableError(BackendFatalError):
    """Raised when the backend SDK or its configuration is unavailable."""

    def __init__(self, detail: str, *, backend: str = "backend") -> None:
        super().__init__(detail, backend=backend, code="unavailable")


class BackendResponseError(BackendFatalError):
    """Raised when a backend payload cannot be normalized."""

    def __init__(self, detail: str, *, backend: str = "backend") -> None:
        super().__init__(detail, backend=backend, code="response_invalid")


def is_retryable_error(error: BaseException) -> bool:
    return isinstance(error, BackendError) and error.retryable


def map_backend_exception(exc: BaseException, *, backend: str) -> BackendError | None:
    """Classify an SDK or transport exception; ``None`` means unclassifiable.

    Status codes win over class names. Timeout is checked before connection
    because SDK timeout errors subclass connection errors.
    """

    if isinstance(exc, BackendError):
        return exc

    status_code = _read_status_code(exc)
    class_name = exc.__class__.__name__.lower()
    detail = _exception_detail(exc)

    if status_code in {401, 403} or "authentication" in class_name or "permission" in class_name:
        return BackendAuthenticationError(detail, backend=backend, http_status=status_code)

    if status_code == 429 or "ratelimit" in class_name:
        return BackendRateLimitError(
            detail,
            backend=backend,
            http_status=status_code,
            retry_after_ms=_read_retry_after_header_ms(exc),
        )

    if status_code == 408:
        return BackendTimeoutError(detail, backend=backend, http_status=status_code)

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)) or "timeout" in class_name:
        return BackendTimeoutError(detail, backend=backend)

    if status_code is not None and status_code >= 500:
        return BackendServiceError(detail, backend=backend, http_status=status_code)

    if status_code is not None and 400 <= status_code < 500:
        return BackendInvalidRequestError(detail, backend=backend, http_status=status_code)

    if "badrequest" in class_name or "unprocessable" in class_name or "notfound" in class_name:
        return BackendInvalidRequestError(detail, backend=backend)

    if isinstance(exc, ConnectionError) or "connection" in class_name:
        return BackendConnectionError(detail, backend=backend)

    if "internalserver" in class_name or "serviceunavailable" in class_name:
        return BackendServiceError(detail, backend=backend)

    return None


def _exception_detail(exc: BaseException) -> str:
    text = str(exc).strip()
    if text:
        return " ".join(text.split())
    return exc.__class__.__name__


def _read_status_code(exc: BaseException) -> int | None:
    for key in ("status_code", "status", "http_status"):
        value = getattr(exc, key, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    response = getattr(exc, "response", None)
    if response is not None:
        nested = getattr(response, "status_code", None)
        if isinstance(nested, int) and not isinstance(nested, bool):
            return nested
    return None


def _read_retry_after_header_ms(exc: BaseException) -> int | None:
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if headers is None or not hasattr(headers, "get"):
        return None
    raw_ms = headers.get("retry-after-ms")
    if raw_ms is not None:
        try:
            return max(0, int(float(raw_ms)))
        except (TypeError, ValueError):
            pass
    raw_seconds = headers.get("retry-after")
    if raw_seconds is not None:
        try:
            return max(0, int(float(raw_seconds) * 1000))
        except (TypeError, ValueError):
            return None
    return None


# --- Payload readers shared by adapters ---


def read_field(value: object, key: str, *, default: object | None = None) -> object | None:
    if isinstance(value, Mapping):
        return cast("object | None", value.get(key, default))
    return cast("object | None", getattr(value, key, default))


def read_sequence(value: object, key: str) -> tuple[object, ...]:
    candidate = read_field(value, key)
    if isinstance(candidate, Sequence) and not isinstance(candidate, (str, bytes, bytearray)):
        return tuple(candidate)
    return ()


def read_str(value: object, key: str) -> str | None:
    candidate = read_field(value, key)
    if isinstance(candidate, str) and candidate.strip():
        return candidate
    return None


def read_int(value: object, key: str) -> int | None:
    candidate = read_field(value, key)
    if isinstance(candidate, int) and not isinstance(candidate, bool):
        return candidate
    return None


# --- Canonical stream model ---


class StreamEventType(enum.Enum):
    ITEM_STARTED = "item-started"
    ITEM_COMPLETED = "item-completed"
    STREAM_ERROR = "stream-error"
    STREAM_DONE = "stream-done"


@dataclass(frozen=True, slots=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def __post_init__(self) -> None:
        for name in ("input_tokens", "output_tokens", "total_tokens"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise TypeError(f"TokenUsage.{name} must be an integer")
            if value < 0:
                raise ValueError(f"TokenUsage.{name} must be >= 0")
        if self.total_tokens == 0 and (self.input_tokens or self.output_tokens):
            object.__setattr__(self, "total_tokens", self.input_tokens + self.output_tokens)

    def __add__(self, other: TokenUsage) -> TokenUsage:
        if not isinstance(other, TokenUsage):
            return NotImplemented
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    @classmethod
    def from_payload(cls, payload: object) -> TokenUsage:
        """Read either responses-style or chat-style usage fields."""
        if payload is None:
            return cls()
        input_tokens = read_int(payload, "input_tokens")
        if input_tokens is None:
            input_tokens = read_int(payload, "prompt_tokens") or 0
        output_tokens = read_int(payload, "output_tokens")
        if output_tokens is None:
            output_tokens = read_int(payload, "completion_tokens") or 0
        total_tokens = read_int(payload, "total_tokens") or input_tokens + output_tokens
        return cls(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=total_tokens,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(frozen=True, slots=True)
class StreamEvent:
    """One canonical event; which optional fields are set depends on ``kind``."""

    kind: StreamEventType
    item: ConversationItem | None = None
    error: BackendError | None = None
    response_id: str | None = None
    usage: TokenUsage | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.kind, StreamEventType):
            raise TypeError("StreamEvent.kind must be a StreamEventType")
        if self.kind in (StreamEventType.ITEM_STARTED, StreamEventType.ITEM_COMPLETED):
            if not is_conversation_item(self.item):
                raise TypeError(f"{self.kind.value} events require a conversation item")
        if self.kind is StreamEventType.STREAM_ERROR and not isinstance(self.error, BackendError):
            raise TypeError("stream-error events require a BackendError")

    @classmethod
    def item_started(cls, item: ConversationItem) -> StreamEvent:
        return cls(kind=StreamEventType.ITEM_STARTED, item=item)

    @classmethod
    def item_completed(cls, item: ConversationItem) -> StreamEvent:
        return cls(kind=StreamEventType.ITEM_COMPLETED, item=item)

    @classmethod
    def failed(cls, error: BackendError) -> StreamEvent:
        return cls(kind=StreamEventType.STREAM_ERROR, error=error)

    @classmethod
    def done(cls, response_id: str | None = None, usage: TokenUsage | None = None) -> StreamEvent:
        return cls(kind=StreamEventType.STREAM_DONE, response_id=response_id, usage=usage)


# --- Requests and tools ---


@dataclass(frozen=True, slots=True)
class ToolDefinition:
    """Function tool advertised to the backend."""

    name: str
    description: str
    parameters: Mapping[str, JSONValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _validate_non_empty_str(self.name, "ToolDefinition.name"))
        object.__setattr__(self, "parameters", dict(self.parameters))

    def to_chat_dict(self) -> dict[str, object]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.parameters),
            },
        }

    def to_responses_dict(self) -> dict[str, object]:
        return {
            "type": "function",
            "name": self.name,
            "description": self.description,
            "parameters": dict(self.parameters),
            "strict": False,
        }


SHELL_TOOL = ToolDefinition(
    name=SHELL_TOOL_NAME,
    description="Runs a shell command and returns its output.",
    parameters={
        "type": "object",
        "properties": {
            "command": {"type": "array", "items": {"type": "string"}},
            "workdir": {"type": "string"},
            "timeout_ms": {"type": "number"},
        },
        "required": ["command"],
        "additionalProperties": False,
    },
)

APPLY_PATCH_TOOL = ToolDefinition(
    name=APPLY_PATCH_TOOL_NAME,
    description="Applies a structured patch to files in the workspace.",
    parameters={
        "type": "object",
        "properties": {"input": {"type": "string"}},
        "required": ["input"],
        "additionalProperties": False,
    },
)

DEFAULT_TOOLS: tuple[ToolDefinition, ...] = (SHELL_TOOL, APPLY_PATCH_TOOL)


@dataclass(frozen=True, slots=True)
class BackendRequest:
    """Everything an adapter needs to open one backend stream."""

    model: str
    items: tuple[ConversationItem, ...]
    instructions: str | None = None
    tools: tuple[ToolDefinition, ...] = DEFAULT_TOOLS
    previous_response_id: str | None = None
    stream: bool = True
    store: bool = False
    max_output_tokens: int | None = None
    temperature: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "model", _validate_non_empty_str(self.model, "model"))
        object.__setattr__(self, "items", tuple(self.items))
        object.__setattr__(self, "tools", tuple(self.tools))


# --- Client protocol ---


@runtime_checkable
class BackendClient(Protocol):
    """Opens one backend call and yields canonical events."""

    def open_stream(self, request: BackendRequest) -> AsyncIterator[StreamEvent]: ...


ClientFactory: TypeAlias = Callable[["BackendDescriptor"], BackendClient]


def adapter_for(descriptor: BackendDescriptor, *, client: object | None = None) -> BackendClient:
    """Pick the adapter for the descriptor's wire protocol."""

    # Imported here; adapters import this module.
    from codeturn.backends.chat_adapter import ChatCompletionsAdapter
    from codeturn.backends.responses_adapter import ResponsesAdapter
    from codeturn.routing.registry import WireProtocol

    if descriptor.protocol is WireProtocol.CHAT:
        return ChatCompletionsAdapter(descriptor, client=client)
    if descriptor.protocol is WireProtocol.RESPONSES:
        return ResponsesAdapter(descriptor, client=client)
    raise BackendUnavailableError(
        f"no adapter for protocol {descriptor.protocol!r}", backend=descriptor.backend_id
    )


__all__ = [
    "APPLY_PATCH_TOOL",
    "DEFAULT_TOOLS",
    "SHELL_TOOL",
    "BackendAuthenticationError",
    "BackendClient",
    "BackendConnectionError",
    "BackendError",
    "BackendFatalError",
    "BackendInvalidRequestError",
    "BackendRateLimitError",
    "BackendRequest",
    "BackendResponseError",
    "BackendServiceError",
    "BackendTimeoutError",
    "BackendTransientError",
    "BackendUnavailableError",
    "ClientFactory",
    "StreamEvent",
    "StreamEventType",
    "TokenUsage",
    "ToolDefinition",
    "adapter_for",
    "is_retryable_error",
    "map_backend_exception",
    "read_field",
    "read_int",
    "read_sequence",
    "read_str",
]
