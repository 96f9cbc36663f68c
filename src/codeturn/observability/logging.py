"""
codeturn — structured logging

File: src/codeturn/observability/logging.py

Purpose
- Queue-backed JSON-lines logging for one session, written to
  ``<log_dir>/<session_id>/codeturn.jsonl`` and optionally stdout.
- Route ``structlog`` component loggers through the same stdlib sink so
  decision events (``backend_selected``, ``backend_retry``, ...) land as
  JSON objects with their key/value fields.
- Correlation fields (session, turn, backend, call, response) bound with
  ``correlation_scope`` are attached to every record emitted in scope.
- API keys, bearer tokens and ``key=value`` secrets are redacted before any
  record reaches a sink.

Notes
- Emitting never blocks: when the queue is full the record is dropped and
  counted on the handle.
"""

from __future__ import annotations

import atexit
import contextvars
import json
import logging
import logging.handlers
import math
import queue
import re
import threading
import time
from collections.abc import Callable, Iterator, Mapping, MutableMapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final, cast

import structlog

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
LogRedactor = Callable[[JSONValue], JSONValue]

_REDACTED_VALUE: Final[str] = "***REDACTED***"
_DEFAULT_LOG_FILENAME: Final[str] = "codeturn.jsonl"
_DEFAULT_LOGGER_NAME: Final[str] = "codeturn"
_DEFAULT_QUEUE_SIZE: Final[int] = 4096

CORRELATION_KEYS: Final[tuple[str, ...]] = (
    "session_id",
    "turn_id",
    "backend_id",
    "call_id",
    "response_id",
)

_SENSITIVE_KEY_TERMS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "cookie",
)

_SENSITIVE_ASSIGNMENT_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|authorization)\b\s*([:=])\s*([^\s,;]+)"
)
_BEARER_TOKEN_PATTERN: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")
_API_KEY_PATTERN: Final[re.Pattern[str]] = re.compile(r"\bsk-[A-Za-z0-9_-]{12,}\b")

# Token counters are numbers, not credentials.
_NON_SECRET_KEYS: Final[frozenset[str]] = frozenset(
    {"input_tokens", "output_tokens", "total_tokens", "max_output_tokens"}
)

_STANDARD_LOG_RECORD_FIELDS: Final[frozenset[str]] = frozenset(
    {
        "args",
        "asctime",
        "created",
        "exc_info",
        "exc_text",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "message",
        "module",
        "msecs",
        "msg",
        "name",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "thread",
        "threadName",
        "taskName",
    }
)

_CorrelationState = tuple[tuple[str, str], ...]
_CORRELATION_CONTEXT: contextvars.ContextVar[_CorrelationState] = contextvars.ContextVar(
    "codeturn_correlation", default=()
)

_ACTIVE_HANDLE_LOCK = threading.Lock()
_ACTIVE_HANDLE: StructuredLoggingHandle | None = None
_ATEXIT_REGISTERED = False


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Configuration for queue-backed structured logging."""

    session_id: str
    base_log_dir: Path | str = Path("logs")
    logger_name: str = _DEFAULT_LOGGER_NAME
    level: int | str = "INFO"
    queue_size: int = _DEFAULT_QUEUE_SIZE
    log_filename: str = _DEFAULT_LOG_FILENAME
    log_to_stdout: bool = True
    redact_secrets: bool = True
    configure_structlog: bool = True


def logging_config_from_mapping(
    observability: Mapping[str, object] | None,
    *,
    session_id: str,
) -> LoggingConfig:
    """Build a ``LoggingConfig`` from an ``[observability]`` config section."""
    cfg = dict(observability or {})
    raw_level = cfg.get("log_level", "INFO")
    raw_dir = cfg.get("log_dir", "logs")
    return LoggingConfig(
        session_id=session_id,
        base_log_dir=raw_dir if isinstance(raw_dir, (Path, str)) else "logs",
        level=raw_level if isinstance(raw_level, (int, str)) else "INFO",
        log_to_stdout=bool(cfg.get("log_to_stdout", False)),
        redact_secrets=bool(cfg.get("redact_secrets", True)),
    )


class _DropCounter:
    """Thread-safe counter for dropped queue records."""

    __slots__ = ("_lock", "_value")

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = 0

    def increment(self) -> None:
        with self._lock:
            self._value += 1

    def value(self) -> int:
        with self._lock:
            return self._value


class _NonBlockingQueueHandler(logging.handlers.QueueHandler):
    """Queue handler that snapshots correlation context and drops when full."""

    def __init__(self, log_queue: queue.Queue[object], drop_counter: _DropCounter) -> None:
        super().__init__(log_queue)
        self._drop_counter = drop_counter

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Runs in the emitting thread, where the context variable is visible.
        context = get_correlation_context()
        if context:
            record.correlation = context
        return cast("logging.LogRecord", super().prepare(record))

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            self._drop_counter.increment()


class _JsonLineFormatter(logging.Formatter):
    """Emit one canonical JSON object per record."""

    def __init__(self, *, redactor: LogRedactor, base_context: Mapping[str, str]) -> None:
        super().__init__()
        self._redactor = redactor
        self._base_context = dict(base_context)

    def format(self, record: logging.LogRecord) -> str:
        event: dict[str, JSONValue] = {
            "timestamp": _iso8601z_from_epoch(record.created),
            "level": record.levelname,
            "logger": record.name,
            "message": _coerce_log_message(
                self._redactor(_normalize_json_value(record.getMessage()))
            ),
        }
        for key, value in sorted(_merge_correlation_context(record, self._base_context).items()):
            event[key] = value

        extras = _extract_extra_fields(record)
        if extras:
            event["fields"] = self._redactor(_normalize_json_value(extras))
        if record.exc_info is not None:
            event["exception"] = _coerce_log_message(
                self._redactor(self.formatException(record.exc_info))
            )
        return json.dumps(event, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class StructuredLoggingHandle:
    """Runtime handle for an active structured logging setup."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        session_id: str,
        log_path: Path,
        log_queue: queue.Queue[object],
        queue_handler: _NonBlockingQueueHandler,
        sink_handlers: tuple[logging.Handler, ...],
        listener: logging.handlers.QueueListener,
        drop_counter: _DropCounter,
    ) -> None:
        self.logger = logger
        self.session_id = session_id
        self.log_path = log_path
        self._queue = log_queue
        self._queue_handler = queue_handler
        self._sink_handlers = sink_handlers
        self._listener = listener
        self._drop_counter = drop_counter
        self._shutdown_lock = threading.Lock()
        self._is_shutdown = False

    @property
    def dropped_records(self) -> int:
        return self._drop_counter.value()

    @property
    def is_shutdown(self) -> bool:
        return self._is_shutdown

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        deadline = time.monotonic() + max(timeout_seconds, 0.0)
        while self._queue.unfinished_tasks > 0 and time.monotonic() < deadline:
            time.sleep(0.01)
        for handler in self._sink_handlers:
            handler.flush()

    def shutdown(self, *, timeout_seconds: float = 2.0) -> None:
        with self._shutdown_lock:
            if self._is_shutdown:
                return
            self.flush(timeout_seconds=timeout_seconds)
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()
            for handler in self._sink_handlers:
                handler.flush()
                handler.close()
            self._is_shutdown = True


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Configure queue-backed structured logging for one session."""
    _shutdown_previous_active_handle()

    session_id = _validate_non_empty(config.session_id, "session_id")
    logger_name = _validate_non_empty(config.logger_name, "logger_name")
    log_filename = _validate_non_empty(config.log_filename, "log_filename")
    if Path(log_filename).name != log_filename:
        raise ValueError("log_filename must not include path separators")
    if config.queue_size <= 0:
        raise ValueError("queue_size must be > 0")
    level = _parse_log_level(config.level)

    session_log_dir = Path(config.base_log_dir) / session_id
    session_log_dir.mkdir(parents=True, exist_ok=True)
    log_path = session_log_dir / log_filename

    redactor = default_log_redactor if config.redact_secrets else _identity_redactor
    formatter = _JsonLineFormatter(redactor=redactor, base_context={"session_id": session_id})

    sink_handlers: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if config.log_to_stdout:
        sink_handlers.append(logging.StreamHandler())
    for handler in sink_handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)

    logger = logging.getLogger(logger_name)
    logger.setLevel(level)
    logger.propagate = False
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()

    log_queue: queue.Queue[object] = queue.Queue(maxsize=config.queue_size)
    drop_counter = _DropCounter()
    queue_handler = _NonBlockingQueueHandler(log_queue, drop_counter)
    queue_handler.setLevel(level)
    listener = logging.handlers.QueueListener(log_queue, *sink_handlers, respect_handler_level=True)
    listener.start()
    logger.addHandler(queue_handler)

    if config.configure_structlog:
        configure_structlog()

    handle = StructuredLoggingHandle(
        logger=logger,
        session_id=session_id,
        log_path=log_path,
        log_queue=log_queue,
        queue_handler=queue_handler,
        sink_handlers=tuple(sink_handlers),
        listener=listener,
        drop_counter=drop_counter,
    )
    with _ACTIVE_HANDLE_LOCK:
        global _ACTIVE_HANDLE
        _ACTIVE_HANDLE = handle
    _register_atexit_shutdown()
    return handle


def configure_structlog() -> None:
    """Render ``structlog`` events through the stdlib ``codeturn`` logger tree."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.format_exc_info,
            _rename_reserved_keys,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def _rename_reserved_keys(
    _logger: Any, _method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    # LogRecord refuses ``extra`` keys that shadow its own attributes.
    for key in [key for key in event_dict if key in _STANDARD_LOG_RECORD_FIELDS]:
        event_dict[f"{key}_"] = event_dict.pop(key)
    return event_dict


def flush_logging(handle: StructuredLoggingHandle | None = None) -> None:
    resolved = handle if handle is not None else get_active_logging_handle()
    if resolved is not None:
        resolved.flush()


def shutdown_logging(handle: StructuredLoggingHandle | None = None) -> None:
    """Shutdown the listener and close all sinks."""
    resolved = handle if handle is not None else get_active_logging_handle()
    if resolved is None:
        return
    resolved.shutdown()
    with _ACTIVE_HANDLE_LOCK:
        global _ACTIVE_HANDLE
        if _ACTIVE_HANDLE is resolved:
            _ACTIVE_HANDLE = None


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    with _ACTIVE_HANDLE_LOCK:
        return _ACTIVE_HANDLE


def get_correlation_context() -> dict[str, str]:
    """Return the current correlation context as a plain dictionary."""
    return dict(_CORRELATION_CONTEXT.get())


def set_correlation_fields(**fields: str | None) -> contextvars.Token[_CorrelationState]:
    """Set correlation fields for the active context and return a reset token.

    ``None`` removes a field that an enclosing scope bound.
    """
    state = get_correlation_context()
    for key, value in fields.items():
        if key not in CORRELATION_KEYS:
            raise ValueError(f"unknown correlation key {key!r}")
        if value is None:
            state.pop(key, None)
            continue
        state[key] = _validate_non_empty(value, key)
    return _CORRELATION_CONTEXT.set(tuple(state.items()))


def reset_correlation_fields(token: contextvars.Token[_CorrelationState]) -> None:
    _CORRELATION_CONTEXT.reset(token)


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Temporarily bind correlation fields for log records in scope."""
    token = set_correlation_fields(**fields)
    try:
        yield
    finally:
        reset_correlation_fields(token)


def default_log_redactor(value: JSONValue) -> JSONValue:
    """Deep redaction of secret-looking keys and inline credentials."""
    return _redact_value(value, key_context=None)


def _shutdown_previous_active_handle() -> None:
    existing = get_active_logging_handle()
    if existing is not None:
        existing.shutdown()
    with _ACTIVE_HANDLE_LOCK:
        global _ACTIVE_HANDLE
        _ACTIVE_HANDLE = None


def _register_atexit_shutdown() -> None:
    global _ATEXIT_REGISTERED
    if _ATEXIT_REGISTERED:
        return
    atexit.register(shutdown_logging)
    _ATEXIT_REGISTERED = True


def _validate_non_empty(value: object, field_name: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a string, got {type(value).__name__}")
    normalized = value.strip()
    if not normalized:
        raise ValueError(f"{field_name} must not be empty")
    return normalized


def _parse_log_level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    if not isinstance(value, str):
        raise ValueError(f"level must be int or str, got {type(value).__name__}")
    parsed = logging.getLevelName(value.strip().upper())
    if isinstance(parsed, int):
        return parsed
    raise ValueError(f"unsupported logging level {value!r}")


def _iso8601z_from_epoch(epoch_seconds: float) -> str:
    timestamp = datetime.fromtimestamp(epoch_seconds, tz=UTC)
    return timestamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _coerce_log_message(value: JSONValue) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _merge_correlation_context(
    record: logging.LogRecord,
    base_context: Mapping[str, str],
) -> dict[str, str]:
    merged = dict(base_context)
    snapshot = getattr(record, "correlation", None)
    if isinstance(snapshot, Mapping):
        merged.update({k: v for k, v in snapshot.items() if isinstance(v, str)})
    for key in CORRELATION_KEYS:
        value = getattr(record, key, None)
        if isinstance(value, str) and value.strip():
            merged[key] = value.strip()
    return merged


def _extract_extra_fields(record: logging.LogRecord) -> dict[str, object]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _STANDARD_LOG_RECORD_FIELDS
        and key not in CORRELATION_KEYS
        and key != "correlation"
        and not key.startswith("_")
    }


def _normalize_json_value(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else _REDACTED_VALUE
    if isinstance(value, datetime):
        normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, Mapping):
        return {str(key): _normalize_json_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_normalize_json_value(item) for item in value]
    return repr(value)


def _identity_redactor(value: JSONValue) -> JSONValue:
    return value


def _redact_value(value: JSONValue, *, key_context: str | None) -> JSONValue:
    if key_context is not None and _requires_redaction_for_key(key_context):
        return _REDACTED_VALUE
    if isinstance(value, str):
        return _redact_string(value)
    if isinstance(value, list):
        return [_redact_value(item, key_context=None) for item in value]
    if isinstance(value, dict):
        return {key: _redact_value(item, key_context=key) for key, item in value.items()}
    return value


def _requires_redaction_for_key(key: str) -> bool:
    key_lower = key.lower()
    if key_lower in _NON_SECRET_KEYS:
        return False
    return any(term in key_lower for term in _SENSITIVE_KEY_TERMS)


def _redact_string(text: str) -> str:
    redacted = _SENSITIVE_ASSIGNMENT_PATTERN.sub(
        lambda match: f"{match.group(1)}{match.group(2)}{_REDACTED_VALUE}", text
    )
    redacted = _BEARER_TOKEN_PATTERN.sub(f"Bearer {_REDACTED_VALUE}", redacted)
    return _API_KEY_PATTERN.sub(_REDACTED_VALUE, redacted)


__all__ = [
    "CORRELATION_KEYS",
    "JSONScalar",
    "JSONValue",
    "LogRedactor",
    "LoggingConfig",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "flush_logging",
    "get_active_logging_handle",
    "get_correlation_context",
    "logging_config_from_mapping",
    "reset_correlation_fields",
    "set_correlation_fields",
    "setup_structured_logging",
    "shutdown_logging",
]
