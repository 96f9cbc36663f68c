"""Tool-call argument parsing.

Exec-style function calls (``shell``/``container.exec``) and structured
``local_shell_call`` actions normalize to one ``ExecArguments`` contract.
``apply_patch`` function calls, and exec commands whose argv[0] is
``apply_patch``, normalize to ``PatchArguments``.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import TypeAlias

from codeturn.constants import (
    APPLY_PATCH_TOOL_NAME,
    CONTAINER_EXEC_TOOL_NAME,
    SHELL_TOOL_NAME,
)
from codeturn.domain.items import LocalShellCallItem, ToolCallItem

EXEC_TOOL_NAMES: frozenset[str] = frozenset({SHELL_TOOL_NAME, CONTAINER_EXEC_TOOL_NAME})
_PATCH_PREFIX = "*** Begin Patch"


class ArgumentParseError(ValueError):
    """Arguments could not be parsed; reported back to the model as tool output."""

    def __init__(self, raw: str, reason: str) -> None:
        super().__init__(reason)
        self.raw = raw
        self.reason = reason


class UnsupportedToolError(LookupError):
    def __init__(self, name: str) -> None:
        super().__init__(f"unsupported tool: {name}")
        self.name = name


@dataclass(frozen=True, slots=True)
class ExecArguments:
    argv: tuple[str, ...]
    workdir: str | None = None
    timeout_ms: int | None = None
    env: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class PatchArguments:
    patch: str
    workdir: str | None = None


ParsedCall: TypeAlias = ExecArguments | PatchArguments


def _argv(value: object, raw: str) -> tuple[str, ...]:
    if not isinstance(value, Sequence) or isinstance(value, (str, bytes)):
        raise ArgumentParseError(raw, "command must be an array of strings")
    argv = tuple(value)
    if not argv:
        raise ArgumentParseError(raw, "command cannot be empty")
    if not all(isinstance(part, str) for part in argv):
        raise ArgumentParseError(raw, "command must be an array of strings")
    return argv


def _optional_str(payload: Mapping[str, object], key: str, raw: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ArgumentParseError(raw, f"{key} must be a non-empty string")
    return value


def _optional_timeout(payload: Mapping[str, object], key: str, raw: str) -> int | None:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ArgumentParseError(raw, f"{key} must be a positive number")
    return int(value)


def _env(value: object, raw: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping) or not all(
        isinstance(key, str) and isinstance(item, str) for key, item in value.items()
    ):
        raise ArgumentParseError(raw, "env must map strings to strings")
    return dict(value)


def _load_object(raw: str) -> Mapping[str, object]:
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as exc:
        raise ArgumentParseError(raw, f"invalid JSON: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise ArgumentParseError(raw, "arguments must be a JSON object")
    return payload


def parse_exec_arguments(raw: str) -> ExecArguments:
    payload = _load_object(raw)
    timeout = _optional_timeout(payload, "timeout_ms", raw)
    if timeout is None:
        timeout = _optional_timeout(payload, "timeout", raw)
    return ExecArguments(
        argv=_argv(payload.get("command"), raw),
        workdir=_optional_str(payload, "workdir", raw),
        timeout_ms=timeout,
        env=_env(payload.get("env"), raw),
    )


def parse_local_shell_action(action: Mapping[str, object]) -> ExecArguments:
    raw = json.dumps(action, sort_keys=True)
    action_type = action.get("type")
    if action_type != "exec":
        raise ArgumentParseError(raw, f"unsupported local shell action type: {action_type!r}")
    return ExecArguments(
        argv=_argv(action.get("command"), raw),
        workdir=_optional_str(action, "working_directory", raw),
        timeout_ms=_optional_timeout(action, "timeout_ms", raw),
        env=_env(action.get("env"), raw),
    )


def parse_patch_arguments(raw: str) -> PatchArguments:
    if raw.lstrip().startswith(_PATCH_PREFIX):
        return PatchArguments(patch=raw)
    payload = _load_object(raw)
    patch = payload.get("input")
    if not isinstance(patch, str) or not patch.strip():
        raise ArgumentParseError(raw, "input must be a non-empty patch string")
    return PatchArguments(patch=patch, workdir=_optional_str(payload, "workdir", raw))


def patch_from_exec(arguments: ExecArguments, raw: str = "") -> PatchArguments | None:
    """Return patch arguments when the command invokes ``apply_patch`` directly."""
    if arguments.argv[0] != APPLY_PATCH_TOOL_NAME:
        return None
    if len(arguments.argv) < 2 or not arguments.argv[1].strip():
        raise ArgumentParseError(raw, "apply_patch requires the patch as its first argument")
    return PatchArguments(patch=arguments.argv[1], workdir=arguments.workdir)


def parse_tool_call(item: ToolCallItem) -> ParsedCall:
    """Normalize a tool-call item; raises ``ArgumentParseError`` or ``UnsupportedToolError``."""

    if isinstance(item, LocalShellCallItem):
        exec_arguments = parse_local_shell_action(item.action)
    elif item.name in EXEC_TOOL_NAMES:
        exec_arguments = parse_exec_arguments(item.arguments)
    elif item.name == APPLY_PATCH_TOOL_NAME:
        return parse_patch_arguments(item.arguments)
    else:
        raise UnsupportedToolError(item.name)

    patch = patch_from_exec(exec_arguments, item.arguments)
    return patch if patch is not None else exec_arguments


__all__ = [
    "EXEC_TOOL_NAMES",
    "ArgumentParseError",
    "ExecArguments",
    "ParsedCall",
    "PatchArguments",
    "UnsupportedToolError",
    "parse_exec_arguments",
    "parse_local_shell_action",
    "parse_patch_arguments",
    "parse_tool_call",
    "patch_from_exec",
]
