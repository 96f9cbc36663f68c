"""Turn pipeline: pending-call tracking, cancellation, streaming and orchestration."""

from codeturn.turn.cancellation import CancellationController, CancellationState
from codeturn.turn.orchestrator import (
    SessionSettings,
    StepLimitExceededError,
    TurnFailedError,
    TurnInProgressError,
    TurnOrchestrator,
    TurnResult,
    TurnState,
)
from codeturn.turn.pending import PendingCall, PendingCallError, PendingCallTracker
from codeturn.turn.stream import OutputSink, StreamCoordinator, StreamOutcome

__all__ = [
    "CancellationController",
    "CancellationState",
    "OutputSink",
    "PendingCall",
    "PendingCallError",
    "PendingCallTracker",
    "SessionSettings",
    "StepLimitExceededError",
    "StreamCoordinator",
    "StreamOutcome",
    "TurnFailedError",
    "TurnInProgressError",
    "TurnOrchestrator",
    "TurnResult",
    "TurnState",
]
