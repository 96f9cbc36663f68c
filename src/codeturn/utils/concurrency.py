"""Async concurrency primitives shared by the turn pipeline."""

from __future__ import annotations

import asyncio
import inspect
from contextlib import asynccontextmanager, suppress
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation token backed by ``asyncio.Event``.

    The token is set at most once; ``reason`` records why the first caller
    cancelled and later calls leave it untouched.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> bool:
        """Set the token. Returns ``False`` when it was already set."""
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        return True

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise asyncio.CancelledError(self._reason or "operation cancelled")


class BoundedSemaphore:
    """Small wrapper over ``asyncio.Semaphore`` with usage diagnostics."""

    def __init__(self, limit: int) -> None:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        self._limit = limit
        self._semaphore = asyncio.Semaphore(limit)
        self._in_use = 0

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def available(self) -> int:
        return self._limit - self._in_use

    async def acquire(self) -> None:
        # Cancellation while waiting here does not acquire a permit.
        await self._semaphore.acquire()
        self._in_use += 1

    def release(self) -> None:
        if self._in_use <= 0:
            raise RuntimeError("release called more times than acquire")
        self._in_use -= 1
        self._semaphore.release()

    @asynccontextmanager
    async def permit(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    def snapshot(self) -> dict[str, int]:
        return {
            "limit": self._limit,
            "in_use": self._in_use,
            "available": self.available,
        }


async def await_with_cancellation(
    awaitable: Awaitable[T],
    cancel_token: CancellationToken | None,
) -> T:
    """Await ``awaitable`` unless ``cancel_token`` fires first.

    On cancellation the underlying task is cancelled and awaited before
    ``asyncio.CancelledError`` is raised, so nothing keeps running detached.
    """
    if cancel_token is None:
        return await awaitable
    if cancel_token.is_cancelled:
        _close_unscheduled_coroutine(awaitable)
        raise asyncio.CancelledError(cancel_token.reason or "operation cancelled")

    task: asyncio.Task[T] = asyncio.ensure_future(awaitable)
    cancel_wait_task = asyncio.create_task(cancel_token.wait())
    try:
        done, _ = await asyncio.wait(
            {task, cancel_wait_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        if task in done:
            return task.result()

        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        raise asyncio.CancelledError(cancel_token.reason or "operation cancelled")
    except asyncio.CancelledError:
        if not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        raise
    finally:
        cancel_wait_task.cancel()
        with suppress(asyncio.CancelledError):
            await cancel_wait_task


async def run_with_timeout(
    coroutine: Awaitable[T],
    timeout_seconds: float,
    cancel_token: CancellationToken | None = None,
) -> T:
    """Run ``coroutine`` with timeout and cooperative cancellation support."""
    if timeout_seconds <= 0:
        _close_unscheduled_coroutine(coroutine)
        raise ValueError("timeout_seconds must be > 0")

    token = cancel_token or CancellationToken()
    if token.is_cancelled:
        _close_unscheduled_coroutine(coroutine)
        raise asyncio.CancelledError(token.reason or "operation cancelled")

    task: asyncio.Task[T] = asyncio.create_task(_await_value(coroutine))
    cancel_wait_task = asyncio.create_task(token.wait())

    try:
        done, _ = await asyncio.wait(
            {task, cancel_wait_task},
            timeout=timeout_seconds,
            return_when=asyncio.FIRST_COMPLETED,
        )

        if task in done:
            return await task

        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        if cancel_wait_task in done and token.is_cancelled:
            raise asyncio.CancelledError(token.reason or "operation cancelled")
        raise TimeoutError(f"operation timed out after {timeout_seconds} seconds")
    except asyncio.CancelledError:
        if not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        raise
    finally:
        cancel_wait_task.cancel()
        with suppress(asyncio.CancelledError):
            await cancel_wait_task


async def sleep_with_cancellation(
    delay_seconds: float,
    cancel_token: CancellationToken | None,
) -> None:
    """Sleep for ``delay_seconds``; raise ``CancelledError`` if the token fires."""
    if delay_seconds <= 0:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        return
    await await_with_cancellation(asyncio.sleep(delay_seconds), cancel_token)


async def _await_value(awaitable: Awaitable[T]) -> T:
    return await awaitable


def _close_unscheduled_coroutine(awaitable: Awaitable[object]) -> None:
    # Raw coroutine objects rejected before scheduling must be closed so the
    # interpreter does not warn that they were never awaited.
    if inspect.iscoroutine(awaitable):
        awaitable.close()


__all__ = [
    "BoundedSemaphore",
    "CancellationToken",
    "await_with_cancellation",
    "run_with_timeout",
    "sleep_with_cancellation",
]
