"""Turn cancellation: Active -> Cancelling -> Terminated."""

from __future__ import annotations

import enum
from collections.abc import Callable
from typing import Any

import structlog

from codeturn.turn.pending import PendingCallTracker
from codeturn.utils.concurrency import CancellationToken


class CancellationState(enum.Enum):
    ACTIVE = "active"
    CANCELLING = "cancelling"
    TERMINATED = "terminated"


class CancellationController:
    """Own the turn's cancellation token and track when cancellation has settled.

    ``cancel()`` is idempotent. Termination is reached once the pending-call
    tracker is empty; the dispatcher races every executor call against the
    token, so ``wait_terminated`` cannot wait forever.
    """

    def __init__(
        self,
        tracker: PendingCallTracker,
        *,
        token: CancellationToken | None = None,
        logger: Any | None = None,
    ) -> None:
        self._tracker = tracker
        self._token = token if token is not None else CancellationToken()
        self._state = CancellationState.ACTIVE
        self._stream_abort: Callable[[], None] | None = None
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def token(self) -> CancellationToken:
        return self._token

    @property
    def state(self) -> CancellationState:
        return self._state

    @property
    def is_cancelled(self) -> bool:
        return self._state is not CancellationState.ACTIVE

    def register_stream(self, abort: Callable[[], None]) -> Callable[[], None]:
        """Register the active stream's abort hook; returns a deregistration callable."""
        self._stream_abort = abort
        if self._state is not CancellationState.ACTIVE:
            abort()

        def _deregister() -> None:
            if self._stream_abort is abort:
                self._stream_abort = None

        return _deregister

    def cancel(self, reason: str = "cancelled") -> bool:
        """Begin cancellation. Returns ``False`` if it was already requested."""
        if self._state is not CancellationState.ACTIVE:
            return False
        self._state = CancellationState.CANCELLING
        self._token.cancel(reason)
        outstanding = [entry.call_id for entry in self._tracker.snapshot()]
        self._logger.info("turn_cancel_requested", reason=reason, outstanding_calls=outstanding)
        if self._stream_abort is not None:
            self._stream_abort()
        if not outstanding:
            self._state = CancellationState.TERMINATED
        return True

    async def wait_terminated(self) -> CancellationState:
        if self._state is CancellationState.ACTIVE:
            raise RuntimeError("wait_terminated called before cancel")
        await self._tracker.wait_until_empty()
        self._state = CancellationState.TERMINATED
        return self._state


__all__ = ["CancellationController", "CancellationState"]
