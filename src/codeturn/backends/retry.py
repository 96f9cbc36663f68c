"""
codeturn — bounded retry for backend calls

File: src/codeturn/backends/retry.py

Purpose
- Retry a zero-argument async backend invocation on transient failures and
  rate limits with exponential backoff.
- Honor a provider-suggested delay parsed from rate-limit error text, or a
  structured ``retry_after_ms`` when the text has none.

Contracts
- ``RetryState`` is local to one ``RetryingCaller.call`` invocation; the
  caller object itself holds only configuration.
- Non-retryable errors and exhausted budgets propagate unchanged.
- Backoff sleeps are cancellable through the turn's cancellation token.
"""

from __future__ import annotations

import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Final, TypeAlias, TypeVar

import structlog

from codeturn.backends.base import BackendError, BackendRateLimitError, map_backend_exception
from codeturn.constants import DEFAULT_MAX_RETRY_DELAY_MS, MAX_RETRIES, RATE_LIMIT_RETRY_WAIT_MS
from codeturn.utils.concurrency import CancellationToken, sleep_with_cancellation

T = TypeVar("T")

CancellableSleep: TypeAlias = Callable[[float, "CancellationToken | None"], Awaitable[None]]

_RETRY_AFTER_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"\b(?:re)?try(?:\s+again)?\s+in\s+([0-9]*\.?[0-9]+)\s*(ms|seconds?|secs?|s)\b",
    re.IGNORECASE,
)


def parse_retry_after_ms(message: str | None) -> int | None:
    """Extract "retry in N seconds" / "try again in N ms" as milliseconds.

    Returns ``None`` when the text carries no suggestion, in which case the
    caller falls back to exponential backoff.
    """
    if not message:
        return None
    match = _RETRY_AFTER_PATTERN.search(message)
    if match is None:
        return None
    try:
        amount = float(match.group(1))
    except ValueError:
        return None
    if match.group(2).lower() == "ms":
        return round(amount)
    return round(amount * 1000)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """``max_attempts`` counts the first call; ``max_delay_ms`` caps computed backoff only."""

    max_attempts: int = MAX_RETRIES
    base_delay_ms: int = RATE_LIMIT_RETRY_WAIT_MS
    max_delay_ms: int | None = DEFAULT_MAX_RETRY_DELAY_MS

    def __post_init__(self) -> None:
        if isinstance(self.max_attempts, bool) or not isinstance(self.max_attempts, int):
            raise TypeError("max_attempts must be an integer")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_ms < 0:
            raise ValueError("base_delay_ms must be >= 0")
        if self.max_delay_ms is not None and self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms must be >= base_delay_ms")


@dataclass(slots=True)
class RetryState:
    attempt: int = 0
    last_error: str | None = None

    @property
    def retries(self) -> int:
        return max(0, self.attempt - 1)


def compute_retry_delay_ms(*, attempt: int, error: BackendError, policy: RetryPolicy) -> int:
    """Delay before the attempt that follows failed attempt ``attempt`` (1-based)."""

    if attempt <= 0:
        raise ValueError("attempt must be > 0")
    delay = policy.base_delay_ms * (2 ** (attempt - 1))
    if policy.max_delay_ms is not None:
        delay = min(delay, policy.max_delay_ms)

    if isinstance(error, BackendRateLimitError):
        suggested = parse_retry_after_ms(error.detail)
        if suggested is None:
            suggested = error.retry_after_ms
        if suggested is not None:
            return suggested
    return delay


RetryCallback: TypeAlias = Callable[[RetryState, BackendError, int], None]


class RetryingCaller:
    """Run an async thunk with bounded retries on retryable backend errors."""

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        backend: str = "backend",
        sleep: CancellableSleep = sleep_with_cancellation,
        on_retry: RetryCallback | None = None,
        logger: Any | None = None,
    ) -> None:
        self.policy = policy if policy is not None else RetryPolicy()
        self._backend = backend
        self._sleep = sleep
        self._on_retry = on_retry
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def call(
        self,
        thunk: Callable[[], Awaitable[T]],
        *,
        cancel_token: CancellationToken | None = None,
    ) -> T:
        state = RetryState()
        while True:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            state.attempt += 1
            try:
                return await thunk()
            except Exception as exc:
                mapped = map_backend_exception(exc, backend=self._backend)
                if mapped is None:
                    raise
                state.last_error = mapped.code

                if not mapped.retryable or state.attempt >= self.policy.max_attempts:
                    if mapped is not exc:
                        raise mapped from exc
                    raise

                delay_ms = compute_retry_delay_ms(
                    attempt=state.attempt, error=mapped, policy=self.policy
                )
                self._logger.warning(
                    "backend_retry",
                    backend_id=mapped.backend,
                    attempt=state.attempt,
                    max_attempts=self.policy.max_attempts,
                    error_code=mapped.code,
                    http_status=mapped.http_status,
                    delay_ms=delay_ms,
                )
                if self._on_retry is not None:
                    self._on_retry(state, mapped, delay_ms)
                await self._sleep(delay_ms / 1000.0, cancel_token)


__all__ = [
    "RetryCallback",
    "RetryPolicy",
    "RetryState",
    "RetryingCaller",
    "compute_retry_delay_ms",
    "parse_retry_after_ms",
]
