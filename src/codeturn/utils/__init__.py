"""Utility exports for async concurrency helpers."""

from codeturn.utils.concurrency import (
    BoundedSemaphore,
    CancellationToken,
    await_with_cancellation,
    run_with_timeout,
    sleep_with_cancellation,
)

__all__ = [
    "BoundedSemaphore",
    "CancellationToken",
    "await_with_cancellation",
    "run_with_timeout",
    "sleep_with_cancellation",
]
