"""Backend adapters, canonical stream events and retry handling."""

from codeturn.backends.base import (
    BackendClient,
    BackendError,
    BackendFatalError,
    BackendRateLimitError,
    BackendRequest,
    BackendTransientError,
    StreamEvent,
    StreamEventType,
    TokenUsage,
    ToolDefinition,
    adapter_for,
    map_backend_exception,
)
from codeturn.backends.retry import RetryingCaller, RetryPolicy, parse_retry_after_ms

__all__ = [
    "BackendClient",
    "BackendError",
    "BackendFatalError",
    "BackendRateLimitError",
    "BackendRequest",
    "BackendTransientError",
    "RetryPolicy",
    "RetryingCaller",
    "StreamEvent",
    "StreamEventType",
    "TokenUsage",
    "ToolDefinition",
    "adapter_for",
    "map_backend_exception",
    "parse_retry_after_ms",
]
