"""
codeturn — configuration schema and validation.

File: src/codeturn/config/schema.py

Purpose
- Define authoritative configuration defaults and strict validation rules.

What is included in this file
- Schema versioning and migration guidance.
- Validation rules for required fields, types, enums and numeric constraints.
- Routing cross-checks: task categories must exist, mapped backends must be
  defined (unless a catalog file supplies them).
- Deterministic deep-merge helpers and redaction of sensitive fields.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Reject secrets embedded directly in config; credentials are referenced by
  environment variable name (``api_key_env``).
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, NotRequired, TypedDict

from codeturn.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_EXEC_TIMEOUT_MS,
    DEFAULT_MAX_PARALLEL_TOOLS,
    DEFAULT_MAX_RETRY_DELAY_MS,
    DEFAULT_MAX_STEPS,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    MAX_RETRIES,
    RATE_LIMIT_RETRY_WAIT_MS,
)
from codeturn.routing.classifier import TaskCategory
from codeturn.routing.registry import WireProtocol

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION

STORAGE_MODES: Final[tuple[str, ...]] = ("stateless", "stateful")
APPROVAL_POLICY_MODES: Final[tuple[str, ...]] = ("untrusted", "on-failure", "on-request", "never")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")

_ENV_NAME_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_BACKEND_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {
        "secret",
        "token",
        "password",
        "passwd",
        "api",
        "key",
        "apikey",
        "private",
        "credential",
        "credentials",
        "auth",
    }
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "client_secret",
    "private_key",
    "password",
    "secret",
)

# Config paths normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("routing", "catalog_path"),
    ("observability", "log_dir"),
)


class MetaConfig(TypedDict):
    schema_version: int


class SessionConfig(TypedDict):
    storage_mode: Literal["stateless", "stateful"]
    instructions: NotRequired[str | None]
    max_steps: int
    max_parallel_tools: int
    stream: bool


class RoutingConfig(TypedDict):
    default_backend: str
    task_mapping: dict[str, str]
    catalog_path: NotRequired[str | None]


class BackendConfig(TypedDict, total=False):
    protocol: Literal["chat", "responses"]
    model: str
    endpoint: str
    api_key_env: str
    max_output_tokens: int
    temperature: float
    streaming: bool
    request_timeout_seconds: float


class RetryConfig(TypedDict):
    max_attempts: int
    base_delay_ms: int
    max_delay_ms: int


class ApprovalConfig(TypedDict):
    policy_mode: Literal["untrusted", "on-failure", "on-request", "never"]
    writable_roots: list[str]
    default_timeout_ms: int


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    log_to_stdout: bool
    redact_secrets: bool


class CodeturnConfig(TypedDict):
    meta: MetaConfig
    session: SessionConfig
    routing: RoutingConfig
    backends: dict[str, BackendConfig]
    retry: RetryConfig
    approval: ApprovalConfig
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[CodeturnConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "session": {
        "storage_mode": "stateless",
        "max_steps": DEFAULT_MAX_STEPS,
        "max_parallel_tools": DEFAULT_MAX_PARALLEL_TOOLS,
        "stream": True,
    },
    "routing": {
        "default_backend": "default",
        "task_mapping": {},
    },
    "backends": {
        "default": {
            "protocol": "responses",
            "model": "gpt-4.1",
            "api_key_env": "OPENAI_API_KEY",
            "streaming": True,
            "request_timeout_seconds": DEFAULT_REQUEST_TIMEOUT_SECONDS,
        },
    },
    "retry": {
        "max_attempts": MAX_RETRIES,
        "base_delay_ms": RATE_LIMIT_RETRY_WAIT_MS,
        "max_delay_ms": DEFAULT_MAX_RETRY_DELAY_MS,
    },
    "approval": {
        "policy_mode": "on-request",
        "writable_roots": [],
        "default_timeout_ms": DEFAULT_EXEC_TIMEOUT_MS,
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": "logs/",
        "log_to_stdout": False,
        "redact_secrets": True,
    },
}

_REQUIRED_SECTIONS: Final[frozenset[str]] = frozenset(DEFAULT_CONFIG)


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Validation result with normalized config when no issues were found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def default_config() -> CodeturnConfig:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade codeturn.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the codeturn runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, issues)
    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return a redacted copy suitable for logs."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config, parent_key=None)
    return redacted if isinstance(redacted, dict) else {}


def _validate_root(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    _reject_unknown_keys(payload, set(_REQUIRED_SECTIONS), "", issues)
    _require_keys(payload, set(_REQUIRED_SECTIONS), "", issues)

    out: dict[str, Any] = {}
    validators: tuple[tuple[str, Callable[[dict[str, object], str], dict[str, Any]]], ...] = (
        ("meta", lambda section, path: _validate_meta(section, path, issues)),
        ("session", lambda section, path: _validate_session(section, path, issues)),
        ("routing", lambda section, path: _validate_routing(section, path, issues)),
        ("backends", lambda section, path: _validate_backends(section, path, issues)),
        ("retry", lambda section, path: _validate_retry(section, path, issues)),
        ("approval", lambda section, path: _validate_approval(section, path, issues)),
        ("observability", lambda section, path: _validate_observability(section, path, issues)),
    )
    for key, validator in validators:
        raw = payload.get(key)
        if raw is None:
            continue
        section = _as_object(raw, key, issues)
        if section is not None:
            out[key] = validator(section, key)

    _validate_routing_cross_fields(out.get("routing"), out.get("backends"), issues)
    return out


def _validate_meta(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    _require_keys(payload, {"schema_version"}, path, issues)
    out: dict[str, Any] = {}
    if "schema_version" in payload:
        parsed = _as_int(payload["schema_version"], _join(path, "schema_version"), issues, minimum=1)
        if parsed is not None:
            out["schema_version"] = parsed
            if parsed != ConfigSchemaVersion:
                issues.add(_join(path, "schema_version"), migration_guidance(parsed))
    return out


def _validate_session(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"storage_mode", "instructions", "max_steps", "max_parallel_tools", "stream"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed - {"instructions"}, path, issues)

    out: dict[str, Any] = {}
    if "storage_mode" in payload:
        mode = _as_enum(
            payload["storage_mode"], _join(path, "storage_mode"), issues, allowed_values=STORAGE_MODES
        )
        if mode is not None:
            out["storage_mode"] = mode
    instructions = payload.get("instructions")
    if instructions is not None:
        if isinstance(instructions, str):
            out["instructions"] = instructions
        else:
            issues.add(
                _join(path, "instructions"), f"expected string, got {type(instructions).__name__}"
            )
    for key in ("max_steps", "max_parallel_tools"):
        if key in payload:
            parsed = _as_int(payload[key], _join(path, key), issues, minimum=1)
            if parsed is not None:
                out[key] = parsed
    if "stream" in payload:
        stream = _as_bool(payload["stream"], _join(path, "stream"), issues)
        if stream is not None:
            out["stream"] = stream
    return out


def _validate_routing(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"default_backend", "task_mapping", "catalog_path"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, {"default_backend", "task_mapping"}, path, issues)

    out: dict[str, Any] = {}
    if "default_backend" in payload:
        default = _as_backend_id(payload["default_backend"], _join(path, "default_backend"), issues)
        if default is not None:
            out["default_backend"] = default

    if "task_mapping" in payload:
        mapping_path = _join(path, "task_mapping")
        mapping = _as_object(payload["task_mapping"], mapping_path, issues)
        if mapping is not None:
            known = {category.value for category in TaskCategory}
            parsed_mapping: dict[str, str] = {}
            for category in sorted(mapping):
                entry_path = _join(mapping_path, category)
                if category not in known:
                    expected = ", ".join(sorted(known))
                    issues.add(
                        entry_path, f"unknown task category {category!r}; expected one of: {expected}"
                    )
                    continue
                backend_id = _as_backend_id(mapping[category], entry_path, issues)
                if backend_id is not None:
                    parsed_mapping[category] = backend_id
            out["task_mapping"] = parsed_mapping

    catalog = payload.get("catalog_path")
    if catalog is not None:
        parsed_catalog = _as_path_text(catalog, _join(path, "catalog_path"), issues)
        if parsed_catalog is not None:
            out["catalog_path"] = parsed_catalog
    return out


def _validate_backends(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for backend_id in sorted(payload):
        backend_path = _join(path, backend_id)
        if _as_backend_id(backend_id, backend_path, issues) is None:
            continue
        section = _as_object(payload[backend_id], backend_path, issues)
        if section is not None:
            out[backend_id] = _validate_backend(section, backend_path, issues)
    return out


def _validate_backend(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {
        "protocol",
        "model",
        "endpoint",
        "api_key_env",
        "max_output_tokens",
        "temperature",
        "streaming",
        "request_timeout_seconds",
    }
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, {"protocol", "model"}, path, issues)

    out: dict[str, Any] = {}
    if "protocol" in payload:
        protocol = _as_enum(
            payload["protocol"],
            _join(path, "protocol"),
            issues,
            allowed_values=tuple(item.value for item in WireProtocol),
        )
        if protocol is not None:
            out["protocol"] = protocol
    for key in ("model", "endpoint"):
        if key in payload:
            parsed = _as_str(payload[key], _join(path, key), issues)
            if parsed is not None:
                out[key] = parsed
    if "api_key_env" in payload:
        env_name = _as_env_name(payload["api_key_env"], _join(path, "api_key_env"), issues)
        if env_name is not None:
            out["api_key_env"] = env_name
    if "max_output_tokens" in payload:
        tokens = _as_int(
            payload["max_output_tokens"], _join(path, "max_output_tokens"), issues, minimum=1
        )
        if tokens is not None:
            out["max_output_tokens"] = tokens
    if "temperature" in payload:
        temperature = _as_float(
            payload["temperature"], _join(path, "temperature"), issues, minimum=0.0
        )
        if temperature is not None:
            if temperature > 2.0:
                issues.add(_join(path, "temperature"), "must be <= 2.0")
            else:
                out["temperature"] = temperature
    if "streaming" in payload:
        streaming = _as_bool(payload["streaming"], _join(path, "streaming"), issues)
        if streaming is not None:
            out["streaming"] = streaming
    if "request_timeout_seconds" in payload:
        timeout = _as_float(
            payload["request_timeout_seconds"], _join(path, "request_timeout_seconds"), issues
        )
        if timeout is not None:
            if timeout <= 0:
                issues.add(_join(path, "request_timeout_seconds"), "must be > 0")
            else:
                out["request_timeout_seconds"] = timeout
    return out


def _validate_retry(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"max_attempts", "base_delay_ms", "max_delay_ms"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    minimums = {"max_attempts": 1, "base_delay_ms": 0, "max_delay_ms": 0}
    for key in sorted(allowed):
        if key in payload:
            parsed = _as_int(payload[key], _join(path, key), issues, minimum=minimums[key])
            if parsed is not None:
                out[key] = parsed
    if (
        "base_delay_ms" in out
        and "max_delay_ms" in out
        and out["max_delay_ms"] < out["base_delay_ms"]
    ):
        issues.add(_join(path, "max_delay_ms"), "must be >= base_delay_ms")
    return out


def _validate_approval(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"policy_mode", "writable_roots", "default_timeout_ms"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "policy_mode" in payload:
        mode = _as_enum(
            payload["policy_mode"],
            _join(path, "policy_mode"),
            issues,
            allowed_values=APPROVAL_POLICY_MODES,
        )
        if mode is not None:
            out["policy_mode"] = mode
    if "writable_roots" in payload:
        roots_path = _join(path, "writable_roots")
        raw_roots = payload["writable_roots"]
        if not isinstance(raw_roots, (list, tuple)):
            issues.add(roots_path, f"expected array, got {type(raw_roots).__name__}")
        else:
            roots: list[str] = []
            for index, raw in enumerate(raw_roots):
                parsed = _as_path_text(raw, f"{roots_path}[{index}]", issues)
                if parsed is not None:
                    roots.append(parsed)
            out["writable_roots"] = roots
    if "default_timeout_ms" in payload:
        timeout = _as_int(
            payload["default_timeout_ms"], _join(path, "default_timeout_ms"), issues, minimum=1
        )
        if timeout is not None:
            out["default_timeout_ms"] = timeout
    return out


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"log_level", "log_dir", "log_to_stdout", "redact_secrets"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "log_level" in payload:
        level = _as_enum(
            payload["log_level"], _join(path, "log_level"), issues, allowed_values=LOG_LEVELS
        )
        if level is not None:
            out["log_level"] = level
    if "log_dir" in payload:
        log_dir = _as_path_text(payload["log_dir"], _join(path, "log_dir"), issues)
        if log_dir is not None:
            out["log_dir"] = log_dir
    for key in ("log_to_stdout", "redact_secrets"):
        if key in payload:
            parsed = _as_bool(payload[key], _join(path, key), issues)
            if parsed is not None:
                out[key] = parsed
    return out


def _validate_routing_cross_fields(
    routing: Mapping[str, Any] | None,
    backends: Mapping[str, Any] | None,
    issues: _IssueCollector,
) -> None:
    if routing is None or backends is None:
        return
    if routing.get("catalog_path"):
        # Catalog entries are only known once the file is read.
        return
    default = routing.get("default_backend")
    if isinstance(default, str) and default not in backends:
        issues.add("routing.default_backend", f"backend {default!r} is not defined")
    for category, backend_id in sorted(routing.get("task_mapping", {}).items()):
        if backend_id not in backends:
            issues.add(
                f"routing.task_mapping.{category}", f"backend {backend_id!r} is not defined"
            )


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_env_name(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if not _ENV_NAME_PATTERN.fullmatch(parsed):
        issues.add(path, "must be an env var name (example: OPENAI_API_KEY)")
        return None
    return parsed


def _as_backend_id(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if not _BACKEND_ID_PATTERN.fullmatch(parsed):
        issues.add(path, f"invalid backend id {parsed!r}")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if _looks_sensitive_key(key):
            issues.add(
                key_path,
                "embedded secret values are forbidden; use an *_env key with an env var name",
            )
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if normalized.endswith("_env"):
        return False
    if any(phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    tokens = tuple(token for token in normalized.split("_") if token)
    return any(token in _SENSITIVE_KEY_TOKENS for token in tokens)


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = {}
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = _deep_copy_value(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: _deep_copy_value(value[key]) for key in sorted(value)}


def _deep_copy_value(value: object) -> Any:
    if isinstance(value, Mapping):
        return {key: _deep_copy_value(item) for key, item in value.items() if isinstance(key, str)}
    if isinstance(value, list):
        return [_deep_copy_value(item) for item in value]
    if isinstance(value, tuple):
        return tuple(_deep_copy_value(item) for item in value)
    return copy.deepcopy(value)


def _redact_value(value: object, parent_key: str | None) -> object:
    if isinstance(value, Mapping):
        out: dict[str, object] = {}
        for key in sorted(value):
            if _key_is_sensitive_for_redaction(key):
                out[key] = "<redacted>"
            else:
                out[key] = _redact_value(value[key], key)
        return out
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    return value


def _key_is_sensitive_for_redaction(key: str) -> bool:
    normalized = _normalize_key(key)
    if normalized.endswith("_env"):
        return True
    return _looks_sensitive_key(normalized)


__all__ = [
    "APPROVAL_POLICY_MODES",
    "CodeturnConfig",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "STORAGE_MODES",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
