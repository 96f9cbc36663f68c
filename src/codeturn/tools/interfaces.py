"""
codeturn — tool collaborator contracts

File: src/codeturn/tools/interfaces.py

Purpose
- Narrow protocols for the external collaborators a turn drives: the sandbox
  executor, the patch applier, the approval policy and the user confirmer.
- Normalized request/result records exchanged with them.

The core never configures or selects a sandbox; it hands over normalized
arguments and consumes normalized results.
"""

from __future__ import annotations

import enum
from collections.abc import Awaitable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from codeturn.utils.concurrency import CancellationToken


class ExecutorError(RuntimeError):
    """Failure reported by an executor; becomes a terminal tool output."""


class CallKind(enum.Enum):
    EXEC = "exec"
    PATCH = "patch"


class ApprovalDecision(enum.Enum):
    AUTO_APPROVE = "auto-approve"
    ASK_USER = "ask-user"
    REJECT = "reject"


@dataclass(frozen=True, slots=True)
class ApprovalRequest:
    argv: tuple[str, ...]
    workdir: str | None
    policy_mode: str
    kind: CallKind = CallKind.EXEC


@dataclass(frozen=True, slots=True)
class ExecRequest:
    argv: tuple[str, ...]
    workdir: str | None = None
    timeout_ms: int | None = None
    writable_roots: tuple[str, ...] = ()
    approval: ApprovalDecision = ApprovalDecision.AUTO_APPROVE
    env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        argv = tuple(self.argv)
        if not argv:
            raise ValueError("ExecRequest.argv cannot be empty")
        object.__setattr__(self, "argv", argv)
        object.__setattr__(self, "writable_roots", tuple(self.writable_roots))
        if self.timeout_ms is not None and self.timeout_ms <= 0:
            raise ValueError("ExecRequest.timeout_ms must be > 0")


@dataclass(frozen=True, slots=True)
class ExecResult:
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    duration_seconds: float = 0.0
    timed_out: bool = False
    truncated: bool = False
    truncated_bytes: int = 0

    @property
    def succeeded(self) -> bool:
        return not self.timed_out and self.exit_code == 0


@dataclass(frozen=True, slots=True)
class PatchResult:
    success: bool
    modified_paths: tuple[str, ...] = ()
    error: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "modified_paths", tuple(self.modified_paths))


@runtime_checkable
class SandboxExecutor(Protocol):
    async def run(
        self, request: ExecRequest, *, cancel_token: CancellationToken
    ) -> ExecResult: ...


@runtime_checkable
class PatchApplier(Protocol):
    async def apply(
        self, patch: str, *, workdir: str | None, cancel_token: CancellationToken
    ) -> PatchResult: ...


@runtime_checkable
class ApprovalPolicy(Protocol):
    def classify(self, request: ApprovalRequest) -> ApprovalDecision: ...


@runtime_checkable
class UserConfirmer(Protocol):
    def confirm(self, request: ApprovalRequest) -> Awaitable[bool]: ...


@dataclass(frozen=True, slots=True)
class StaticApprovalPolicy:
    """Approval policy returning one fixed decision; handy default and test double."""

    decision: ApprovalDecision = ApprovalDecision.AUTO_APPROVE

    def classify(self, request: ApprovalRequest) -> ApprovalDecision:
        return self.decision


__all__ = [
    "ApprovalDecision",
    "ApprovalPolicy",
    "ApprovalRequest",
    "CallKind",
    "ExecRequest",
    "ExecResult",
    "ExecutorError",
    "PatchApplier",
    "PatchResult",
    "SandboxExecutor",
    "StaticApprovalPolicy",
    "UserConfirmer",
]
