"""
codeturn — tool dispatcher

File: src/codeturn/tools/dispatcher.py

Purpose
- Route one tool-call item to the sandbox executor or the patch applier and
  wrap the result into a canonical output item tagged with the call id.

Contracts
- Never raises for argument, approval, executor or timeout failures; each
  becomes an ordinary output the model can react to.
- Every executor call races the turn's cancellation token; cancellation
  yields the synthetic ``aborted`` output.
- The call id is resolved in the pending-call tracker exactly once, on every
  path.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from codeturn.constants import (
    ABORTED_OUTPUT_TEXT,
    DEFAULT_EXEC_TIMEOUT_MS,
    DEFAULT_MAX_PARALLEL_TOOLS,
)
from codeturn.domain.items import ToolCallItem, ToolOutputItem, output_for_call
from codeturn.tools.arguments import (
    ArgumentParseError,
    ExecArguments,
    PatchArguments,
    UnsupportedToolError,
    parse_tool_call,
)
from codeturn.tools.interfaces import (
    ApprovalDecision,
    ApprovalPolicy,
    ApprovalRequest,
    CallKind,
    ExecRequest,
    ExecResult,
    ExecutorError,
    PatchApplier,
    SandboxExecutor,
    StaticApprovalPolicy,
    UserConfirmer,
)
from codeturn.utils.concurrency import BoundedSemaphore, await_with_cancellation

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from codeturn.turn.pending import PendingCallTracker
    from codeturn.utils.concurrency import CancellationToken


@dataclass(frozen=True, slots=True)
class DispatchSettings:
    policy_mode: str = "on-request"
    writable_roots: tuple[str, ...] = ()
    default_workdir: str | None = None
    default_timeout_ms: int = DEFAULT_EXEC_TIMEOUT_MS
    max_parallel_tools: int = DEFAULT_MAX_PARALLEL_TOOLS

    def __post_init__(self) -> None:
        object.__setattr__(self, "writable_roots", tuple(self.writable_roots))
        if self.default_timeout_ms <= 0:
            raise ValueError("default_timeout_ms must be > 0")
        if self.max_parallel_tools <= 0:
            raise ValueError("max_parallel_tools must be > 0")


def format_exec_output(
    text: str, *, exit_code: int, duration_seconds: float, **extra: object
) -> str:
    """Serialize exec-style output as ``{"output": ..., "metadata": {...}}``."""
    metadata: dict[str, object] = {
        "exit_code": exit_code,
        "duration_seconds": round(duration_seconds, 1),
    }
    metadata.update(extra)
    return json.dumps({"output": text, "metadata": metadata})


def _exec_result_output(result: ExecResult) -> str:
    text = result.stdout
    if result.stderr:
        text = f"{text}\n{result.stderr}" if text else result.stderr
    extra: dict[str, object] = {}
    if result.timed_out:
        extra["timed_out"] = True
        text = f"{text}\ncommand timed out" if text else "command timed out"
    if result.truncated:
        extra["truncated"] = True
        extra["truncated_bytes"] = result.truncated_bytes
    return format_exec_output(
        text,
        exit_code=result.exit_code,
        duration_seconds=result.duration_seconds,
        **extra,
    )


def _cancelled_by_caller() -> bool:
    task = asyncio.current_task()
    return task is not None and task.cancelling() > 0


class ToolDispatcher:
    """Route tool calls to executors with approval gating and bounded fan-out."""

    def __init__(
        self,
        *,
        executor: SandboxExecutor,
        patch_applier: PatchApplier,
        approval_policy: ApprovalPolicy | None = None,
        confirmer: UserConfirmer | None = None,
        settings: DispatchSettings | None = None,
        logger: Any | None = None,
    ) -> None:
        self._executor = executor
        self._patch_applier = patch_applier
        self._approval = approval_policy if approval_policy is not None else StaticApprovalPolicy()
        self._confirmer = confirmer
        self.settings = settings if settings is not None else DispatchSettings()
        self._semaphore = BoundedSemaphore(self.settings.max_parallel_tools)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @staticmethod
    def call_kind(item: ToolCallItem) -> CallKind:
        try:
            parsed = parse_tool_call(item)
        except (ArgumentParseError, UnsupportedToolError):
            return CallKind.EXEC
        return CallKind.PATCH if isinstance(parsed, PatchArguments) else CallKind.EXEC

    async def dispatch(
        self,
        item: ToolCallItem,
        *,
        tracker: PendingCallTracker,
        cancel_token: CancellationToken,
    ) -> ToolOutputItem:
        """Run ``item`` and return its output; resolves ``item.call_id`` in ``tracker``."""
        try:
            output = await self._run(item, cancel_token)
        finally:
            tracker.resolve(item.call_id)
        self._logger.debug("tool_output_ready", call_id=item.call_id, name=item.name)
        return output_for_call(item, output)

    async def _run(self, item: ToolCallItem, cancel_token: CancellationToken) -> str:
        try:
            parsed = parse_tool_call(item)
        except ArgumentParseError as exc:
            self._logger.info(
                "tool_arguments_invalid", call_id=item.call_id, name=item.name, reason=exc.reason
            )
            return f"invalid arguments: {exc.raw}"
        except UnsupportedToolError as exc:
            self._logger.info("tool_unsupported", call_id=item.call_id, name=exc.name)
            return f"unsupported tool: {exc.name}"

        if cancel_token.is_cancelled:
            return ABORTED_OUTPUT_TEXT
        self._logger.info(
            "tool_dispatched",
            call_id=item.call_id,
            name=item.name,
            kind="patch" if isinstance(parsed, PatchArguments) else "exec",
        )
        if isinstance(parsed, PatchArguments):
            return await self._apply_patch(parsed, cancel_token)
        return await self._exec(parsed, cancel_token)

    async def _exec(self, arguments: ExecArguments, cancel_token: CancellationToken) -> str:
        workdir = arguments.workdir or self.settings.default_workdir
        approval_request = ApprovalRequest(
            argv=arguments.argv,
            workdir=workdir,
            policy_mode=self.settings.policy_mode,
            kind=CallKind.EXEC,
        )
        decision = self._approval.classify(approval_request)
        if decision is ApprovalDecision.REJECT:
            self._logger.info("tool_rejected", argv=list(arguments.argv))
            return format_exec_output(
                "exec command rejected by approval policy", exit_code=1, duration_seconds=0.0
            )
        if decision is ApprovalDecision.ASK_USER:
            approved = await self._guarded(self._confirm(approval_request), cancel_token)
            if approved is None:
                return ABORTED_OUTPUT_TEXT
            if not approved:
                self._logger.info("tool_declined", argv=list(arguments.argv))
                return format_exec_output(
                    "exec command rejected by user", exit_code=1, duration_seconds=0.0
                )

        request = ExecRequest(
            argv=arguments.argv,
            workdir=workdir,
            timeout_ms=arguments.timeout_ms or self.settings.default_timeout_ms,
            writable_roots=self.settings.writable_roots,
            approval=decision,
            env=arguments.env,
        )
        started = time.monotonic()
        try:
            result = await self._guarded(
                self._with_permit(lambda: self._executor.run(request, cancel_token=cancel_token)),
                cancel_token,
            )
        except ExecutorError as exc:
            return format_exec_output(
                f"executor error: {exc}",
                exit_code=-1,
                duration_seconds=time.monotonic() - started,
            )
        except TimeoutError:
            return format_exec_output(
                "command timed out",
                exit_code=-1,
                duration_seconds=time.monotonic() - started,
                timed_out=True,
            )
        if result is None:
            return ABORTED_OUTPUT_TEXT
        return _exec_result_output(result)

    async def _apply_patch(self, arguments: PatchArguments, cancel_token: CancellationToken) -> str:
        workdir = arguments.workdir or self.settings.default_workdir
        started = time.monotonic()
        try:
            result = await self._guarded(
                self._with_permit(
                    lambda: self._patch_applier.apply(
                        arguments.patch, workdir=workdir, cancel_token=cancel_token
                    )
                ),
                cancel_token,
            )
        except ExecutorError as exc:
            return format_exec_output(
                f"patch failed: {exc}", exit_code=1, duration_seconds=time.monotonic() - started
            )
        if result is None:
            return ABORTED_OUTPUT_TEXT

        duration = time.monotonic() - started
        if not result.success:
            return format_exec_output(
                f"patch failed: {result.error or 'unknown error'}",
                exit_code=1,
                duration_seconds=duration,
            )
        lines = ["Success. Updated the following files:"]
        lines.extend(f"M {path}" for path in result.modified_paths)
        return format_exec_output("\n".join(lines), exit_code=0, duration_seconds=duration)

    async def _confirm(self, request: ApprovalRequest) -> bool:
        if self._confirmer is None:
            return False
        return bool(await self._confirmer.confirm(request))

    async def _with_permit(self, start: Callable[[], Awaitable[Any]]) -> Any:
        async with self._semaphore.permit():
            return await start()

    async def _guarded(self, awaitable: Awaitable[Any], cancel_token: CancellationToken) -> Any:
        """Await ``awaitable`` against the token; ``None`` means the turn was cancelled."""
        try:
            return await await_with_cancellation(awaitable, cancel_token)
        except asyncio.CancelledError:
            if cancel_token.is_cancelled and not _cancelled_by_caller():
                return None
            raise


__all__ = ["DispatchSettings", "ToolDispatcher", "format_exec_output"]
