"""
codeturn — runtime config loader.

File: src/codeturn/config/loader.py

Purpose
- Load effective runtime config from defaults, TOML file, env vars and
  explicit overrides, then build the runtime objects the turn core consumes.

What is included in this file
- Precedence logic: overrides > env (``CODETURN_``) > file > defaults.
- TOML loading via ``tomllib``.
- Deterministic environment variable mapping and coercion.
- Path normalization relative to the config file location.
- ``build_runtime``: registry, routing table, retry policy, session and
  dispatch settings from a validated config.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final, Literal

from codeturn.backends.retry import RetryPolicy
from codeturn.config.schema import (
    PATH_FIELDS,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)
from codeturn.constants import DEFAULT_CONFIG_FILE, ENV_PREFIX
from codeturn.conversation.transcript import StorageMode
from codeturn.routing.registry import BackendRegistry, RoutingTable, registry_from_config
from codeturn.tools.dispatcher import DispatchSettings
from codeturn.turn.orchestrator import SessionSettings

_BOOLEAN_TRUE: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_BOOLEAN_FALSE: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})


@dataclass(frozen=True, slots=True)
class _Binding:
    path: tuple[str, ...]
    value_type: Literal["str", "int", "float", "bool"]


class ConfigLoadError(ValueError):
    """Raised when config cannot be loaded or overrides cannot be coerced."""


@dataclass(frozen=True, slots=True)
class RuntimeComponents:
    """Validated runtime objects assembled from one effective config."""

    registry: BackendRegistry
    routing: RoutingTable
    retry_policy: RetryPolicy
    session: SessionSettings
    dispatch: DispatchSettings
    storage_mode: StorageMode
    observability: Mapping[str, Any]


def load_config(
    config_path: str | Path | None = None,
    *,
    overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Load effective config with precedence: overrides > env > file > defaults."""

    resolved_path = _resolve_config_path(config_path)
    env_map = dict(os.environ if environ is None else environ)

    file_payload = _load_toml_file(resolved_path, required=config_path is not None)
    merged = assert_valid_config(merge_config(default_config(), file_payload))

    merged = merge_config(merged, _collect_env_overrides(merged, env_map))
    merged = merge_config(merged, _materialize_overrides(dict(overrides or {})))
    merged = assert_valid_config(merged)

    normalized = normalize_paths(merged, base_dir=resolved_path.parent)
    return assert_valid_config(normalized)


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Normalize configured path fields relative to ``base_dir``."""

    materialized = merge_config({}, config)
    for field_path in PATH_FIELDS:
        _normalize_path_field(materialized, field_path, base_dir)

    approval = materialized.get("approval")
    if isinstance(approval, dict) and isinstance(approval.get("writable_roots"), list):
        approval["writable_roots"] = [
            _normalize_one_path(root, base_dir) if isinstance(root, str) else root
            for root in approval["writable_roots"]
        ]
    return materialized


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Deterministic JSON dump of the redacted effective config."""

    return json.dumps(redact_config(config), sort_keys=True, separators=(",", ":"))


def build_runtime(config: Mapping[str, Any], *, logger: Any | None = None) -> RuntimeComponents:
    """Build the objects the turn core needs from a validated config mapping."""

    validated = assert_valid_config(config)
    registry, routing = registry_from_config(validated, logger=logger)

    retry = validated["retry"]
    session = validated["session"]
    approval = validated["approval"]
    return RuntimeComponents(
        registry=registry,
        routing=routing,
        retry_policy=RetryPolicy(
            max_attempts=retry["max_attempts"],
            base_delay_ms=retry["base_delay_ms"],
            max_delay_ms=retry["max_delay_ms"],
        ),
        session=SessionSettings(
            instructions=session.get("instructions"),
            max_steps=session["max_steps"],
            stream=session["stream"],
        ),
        dispatch=DispatchSettings(
            policy_mode=approval["policy_mode"],
            writable_roots=tuple(approval["writable_roots"]),
            default_timeout_ms=approval["default_timeout_ms"],
            max_parallel_tools=session["max_parallel_tools"],
        ),
        storage_mode=StorageMode(session["storage_mode"]),
        observability=dict(validated["observability"]),
    )


def _resolve_config_path(config_path: str | Path | None) -> Path:
    if config_path is None:
        return (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    return Path(config_path).expanduser().resolve()


def _load_toml_file(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        with path.open("rb") as handle:
            parsed = tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc
    return parsed


def _collect_env_overrides(
    config: Mapping[str, object], environ: Mapping[str, str]
) -> dict[str, Any]:
    bindings = _build_bindings(config)
    overrides: dict[str, Any] = {}
    for env_name in sorted(bindings):
        raw = environ.get(env_name)
        if raw is None:
            continue
        binding = bindings[env_name]
        _set_nested(overrides, binding.path, _coerce_env(raw, binding, env_name))
    return overrides


def _build_bindings(config: Mapping[str, object]) -> dict[str, _Binding]:
    bindings: dict[str, _Binding] = {}
    for path, value in _iter_scalar_paths(config):
        kind = _kind_for_value(value)
        if kind is not None:
            bindings[_env_name_for_path(path)] = _Binding(path=path, value_type=kind)

    # Optional fields absent from the defaults.
    optional: tuple[_Binding, ...] = (
        _Binding(("session", "instructions"), "str"),
        _Binding(("routing", "catalog_path"), "str"),
    )
    for binding in optional:
        bindings.setdefault(_env_name_for_path(binding.path), binding)
    return bindings


def _iter_scalar_paths(
    payload: Mapping[str, object],
    prefix: tuple[str, ...] = (),
) -> list[tuple[tuple[str, ...], object]]:
    pairs: list[tuple[tuple[str, ...], object]] = []
    for key in sorted(payload):
        value = payload[key]
        path = (*prefix, key)
        if isinstance(value, Mapping):
            pairs.extend(_iter_scalar_paths(value, path))
        else:
            pairs.append((path, value))
    return pairs


def _kind_for_value(value: object) -> Literal["str", "int", "float", "bool"] | None:
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, int):
        return "int"
    if isinstance(value, float):
        return "float"
    if isinstance(value, str):
        return "str"
    return None


def _coerce_env(raw: str, binding: _Binding, env_name: str) -> object:
    value = raw.strip()
    dotted = ".".join(binding.path)
    if binding.value_type == "str":
        return value
    if binding.value_type == "int":
        try:
            return int(value)
        except ValueError as exc:
            raise ConfigLoadError(f"{env_name} -> {dotted} must be an integer") from exc
    if binding.value_type == "float":
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigLoadError(f"{env_name} -> {dotted} must be a number") from exc

    lowered = value.lower()
    if lowered in _BOOLEAN_TRUE:
        return True
    if lowered in _BOOLEAN_FALSE:
        return False
    raise ConfigLoadError(
        f"{env_name} -> {dotted} must be a boolean (true/false/1/0/yes/no/on/off)"
    )


def _materialize_overrides(overrides: Mapping[str, object]) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for key in sorted(overrides):
        value = overrides[key]
        path = tuple(part for part in key.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid override key {key!r}")
        _set_nested(payload, path, value)
    return payload


def _set_nested(target: dict[str, Any], path: tuple[str, ...], value: object) -> None:
    cursor = target
    for part in path[:-1]:
        next_node = cursor.get(part)
        if not isinstance(next_node, dict):
            next_node = {}
            cursor[part] = next_node
        cursor = next_node
    cursor[path[-1]] = value


def _get_nested(payload: Mapping[str, object], path: tuple[str, ...]) -> object | None:
    cursor: object = payload
    for part in path:
        if not isinstance(cursor, Mapping) or part not in cursor:
            return None
        cursor = cursor[part]
    return cursor


def _normalize_path_field(config: dict[str, Any], path: tuple[str, ...], base_dir: Path) -> None:
    value = _get_nested(config, path)
    if isinstance(value, str):
        _set_nested(config, path, _normalize_one_path(value, base_dir))


def _normalize_one_path(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(str(candidate))).as_posix()


def _env_name_for_path(path: tuple[str, ...]) -> str:
    parts = (part.upper().replace("-", "_").replace(".", "_") for part in path)
    return ENV_PREFIX + "_".join(parts)


__all__ = [
    "ConfigLoadError",
    "RuntimeComponents",
    "build_runtime",
    "dump_effective_config",
    "load_config",
    "normalize_paths",
]
