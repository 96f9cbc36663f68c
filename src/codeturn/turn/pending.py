"""Tracker for tool calls dispatched but not yet resolved with an output."""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from codeturn.tools.interfaces import CallKind


class PendingCallError(RuntimeError):
    """Raised on double dispatch or double resolution of a call id."""


@dataclass(frozen=True, slots=True)
class PendingCall:
    call_id: str
    kind: CallKind
    name: str
    started_at: float


class PendingCallTracker:
    """Locked set of outstanding call ids.

    A call is pending from dispatch until its output item has been produced,
    not until that output is appended to the transcript. Appending is the
    turn's job: every resolved call id has its output appended before the
    turn reports a final state, including after cancellation.

    Each call id may be added once and resolved once. ``wait_until_empty``
    wakes when the last outstanding call resolves.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._lock = threading.Lock()
        self._clock = clock
        self._pending: dict[str, PendingCall] = {}
        self._resolved: set[str] = set()
        self._empty = asyncio.Event()
        self._empty.set()

    def __contains__(self, call_id: object) -> bool:
        with self._lock:
            return call_id in self._pending

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def is_empty(self) -> bool:
        with self._lock:
            return not self._pending

    def add(self, call_id: str, kind: CallKind, name: str) -> PendingCall:
        with self._lock:
            if call_id in self._pending or call_id in self._resolved:
                raise PendingCallError(f"call {call_id} was already dispatched")
            entry = PendingCall(call_id=call_id, kind=kind, name=name, started_at=self._clock())
            self._pending[call_id] = entry
            self._empty.clear()
            return entry

    def resolve(self, call_id: str) -> PendingCall:
        with self._lock:
            entry = self._pending.pop(call_id, None)
            if entry is None:
                if call_id in self._resolved:
                    raise PendingCallError(f"call {call_id} was already resolved")
                raise PendingCallError(f"call {call_id} is not pending")
            self._resolved.add(call_id)
            if not self._pending:
                self._empty.set()
            return entry

    def was_resolved(self, call_id: str) -> bool:
        with self._lock:
            return call_id in self._resolved

    def snapshot(self) -> tuple[PendingCall, ...]:
        """Outstanding calls in dispatch order."""
        with self._lock:
            return tuple(self._pending.values())

    async def wait_until_empty(self) -> None:
        await self._empty.wait()


__all__ = ["PendingCall", "PendingCallError", "PendingCallTracker"]
