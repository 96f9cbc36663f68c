"""
codeturn — unit tests for bounded backend retry

File: tests/unit/backends/test_retry.py

Purpose
- Validate retry-after parsing, backoff computation, retry budgets and
  cancellation of backoff sleeps.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import pytest

from codeturn.backends.base import (
    BackendAuthenticationError,
    BackendConnectionError,
    BackendError,
    BackendRateLimitError,
    BackendServiceError,
)
from codeturn.backends.retry import (
    RetryingCaller,
    RetryPolicy,
    compute_retry_delay_ms,
    parse_retry_after_ms,
)
from codeturn.constants import MAX_RETRIES
from codeturn.utils.concurrency import CancellationToken


@dataclass(slots=True)
class SleepRecorder:
    calls: list[float] = field(default_factory=list)

    async def __call__(self, seconds: float, token: CancellationToken | None) -> None:
        self.calls.append(seconds)


@dataclass(slots=True)
class ScriptedThunk:
    """Raise the scripted errors in order, then return ``result``."""

    errors: list[BaseException]
    result: str = "ok"
    calls: int = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class _StatusError(Exception):
    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ("Rate limit reached. Please try again in 2.5s.", 2500),
        ("please retry again in 11.054 seconds", 11054),
        ("Try again in .5s", 500),
        ("Please retry in 3 seconds", 3000),
        ("Rate limit reached. Please try again in 250ms.", 250),
        ("retry in 2 sec", 2000),
        ("try again in 4 minutes", None),
        ("bad entry in 5s", None),
        ("rate limited", None),
        ("", None),
        (None, None),
    ],
)
def test_parse_retry_after_ms(message: str | None, expected: int | None) -> None:
    assert parse_retry_after_ms(message) == expected


def test_policy_validation() -> None:
    with pytest.raises(ValueError, match="max_attempts must be >= 1"):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError, match="max_delay_ms must be >= base_delay_ms"):
        RetryPolicy(base_delay_ms=100, max_delay_ms=10)
    with pytest.raises(TypeError):
        RetryPolicy(max_attempts=True)


def test_compute_retry_delay_backoff_and_cap() -> None:
    policy = RetryPolicy(max_attempts=8, base_delay_ms=500, max_delay_ms=3000)
    error = BackendServiceError("boom")

    delays = [compute_retry_delay_ms(attempt=n, error=error, policy=policy) for n in range(1, 6)]

    assert delays == [500, 1000, 2000, 3000, 3000]
    with pytest.raises(ValueError, match="attempt must be > 0"):
        compute_retry_delay_ms(attempt=0, error=error, policy=policy)


def test_compute_retry_delay_prefers_suggested_delay() -> None:
    policy = RetryPolicy(base_delay_ms=500, max_delay_ms=1000)
    from_text = BackendRateLimitError("Please try again in 2.5s")
    from_header = BackendRateLimitError("slow down", retry_after_ms=750)
    both = BackendRateLimitError("try again in 4s", retry_after_ms=10)

    assert compute_retry_delay_ms(attempt=1, error=from_text, policy=policy) == 2500
    assert compute_retry_delay_ms(attempt=1, error=from_header, policy=policy) == 750
    assert compute_retry_delay_ms(attempt=1, error=both, policy=policy) == 4000


async def test_transient_failures_below_budget_then_success() -> None:
    sleep = SleepRecorder()
    retries: list[int] = []
    thunk = ScriptedThunk(
        errors=[BackendConnectionError("reset", backend="primary") for _ in range(MAX_RETRIES - 1)]
    )
    caller = RetryingCaller(
        RetryPolicy(),
        backend="primary",
        sleep=sleep,
        on_retry=lambda state, error, delay: retries.append(state.attempt),
    )

    assert await caller.call(thunk) == "ok"
    assert thunk.calls == MAX_RETRIES
    assert retries == list(range(1, MAX_RETRIES))
    assert len(sleep.calls) == MAX_RETRIES - 1
    assert sleep.calls[0] == 0.5


async def test_rate_limit_uses_suggested_wait() -> None:
    sleep = SleepRecorder()
    thunk = ScriptedThunk(errors=[BackendRateLimitError("Please try again in 2.5s")])

    await RetryingCaller(RetryPolicy(), sleep=sleep).call(thunk)

    assert sleep.calls == [2.5]


async def test_fatal_error_is_not_retried() -> None:
    sleep = SleepRecorder()
    thunk = ScriptedThunk(errors=[BackendAuthenticationError("bad key", http_status=401)])

    with pytest.raises(BackendAuthenticationError):
        await RetryingCaller(RetryPolicy(), sleep=sleep).call(thunk)

    assert thunk.calls == 1
    assert sleep.calls == []


async def test_budget_exhaustion_surfaces_last_error() -> None:
    sleep = SleepRecorder()
    thunk = ScriptedThunk(errors=[BackendServiceError(f"down {n}") for n in range(5)])

    with pytest.raises(BackendServiceError, match="down 2"):
        await RetryingCaller(RetryPolicy(max_attempts=3), sleep=sleep).call(thunk)

    assert thunk.calls == 3
    assert len(sleep.calls) == 2


async def test_sdk_exceptions_are_mapped_before_retrying() -> None:
    sleep = SleepRecorder()
    thunk = ScriptedThunk(errors=[_StatusError("upstream", 503), _StatusError("bad body", 400)])

    with pytest.raises(BackendError) as excinfo:
        await RetryingCaller(RetryPolicy(), backend="primary", sleep=sleep).call(thunk)

    assert excinfo.value.code == "invalid_request"
    assert excinfo.value.http_status == 400
    assert isinstance(excinfo.value.__cause__, _StatusError)
    assert len(sleep.calls) == 1


async def test_unclassifiable_exception_propagates_unchanged() -> None:
    thunk = ScriptedThunk(errors=[KeyError("internal bug")])
    with pytest.raises(KeyError):
        await RetryingCaller(RetryPolicy(), sleep=SleepRecorder()).call(thunk)
    assert thunk.calls == 1


async def test_cancelled_token_stops_before_next_attempt() -> None:
    token = CancellationToken()

    async def sleep(seconds: float, cancel_token: CancellationToken | None) -> None:
        token.cancel("user interrupt")

    thunk = ScriptedThunk(errors=[BackendServiceError("down")])
    with pytest.raises(asyncio.CancelledError):
        await RetryingCaller(RetryPolicy(), sleep=sleep).call(thunk, cancel_token=token)
    assert thunk.calls == 1
