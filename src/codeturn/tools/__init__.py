"""Tool-call parsing, collaborator contracts and dispatch."""

from codeturn.tools.arguments import (
    ArgumentParseError,
    ExecArguments,
    PatchArguments,
    parse_tool_call,
)
from codeturn.tools.dispatcher import DispatchSettings, ToolDispatcher
from codeturn.tools.interfaces import (
    ApprovalDecision,
    ApprovalPolicy,
    ApprovalRequest,
    CallKind,
    ExecRequest,
    ExecResult,
    ExecutorError,
    PatchApplier,
    PatchResult,
    SandboxExecutor,
    StaticApprovalPolicy,
    UserConfirmer,
)

__all__ = [
    "ApprovalDecision",
    "ApprovalPolicy",
    "ApprovalRequest",
    "ArgumentParseError",
    "CallKind",
    "DispatchSettings",
    "ExecArguments",
    "ExecRequest",
    "ExecResult",
    "ExecutorError",
    "PatchApplier",
    "PatchArguments",
    "PatchResult",
    "SandboxExecutor",
    "StaticApprovalPolicy",
    "ToolDispatcher",
    "UserConfirmer",
    "parse_tool_call",
]
