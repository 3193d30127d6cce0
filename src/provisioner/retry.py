"""Bounded retry and bounded wait for asynchronous cloud operations.

Both helpers suspend only through _pause(), which returns as soon as the
optional cancel event is set. Task cancellation (CancelledError) passes
through untouched.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhaustedError(Exception):
    """Raised when every retry attempt failed with a retryable error."""

    def __init__(self, description: str, attempts: int, last_error: BaseException) -> None:
        self.description = description
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{description} after {attempts} attempts: {last_error}")


class WaitTimeoutError(Exception):
    """Raised when a polled condition did not hold before the deadline."""

    pass


class OperationCancelledError(Exception):
    """Raised when the cancel signal fires during a retry or wait."""

    pass


async def _pause(seconds: float, cancel_event: asyncio.Event | None, description: str) -> None:
    if cancel_event is None:
        await asyncio.sleep(seconds)
        return
    if cancel_event.is_set():
        raise OperationCancelledError(f"{description}: cancelled")
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
    except TimeoutError:
        return
    raise OperationCancelledError(f"{description}: cancelled")


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    is_retryable: Callable[[Exception], bool],
    max_attempts: int,
    delay_seconds: float,
    cancel_event: asyncio.Event | None = None,
    description: str = "operation",
) -> T:
    """Run operation until it succeeds, fails permanently or runs out of attempts.

    Args:
        operation: Zero-argument coroutine function to attempt.
        is_retryable: Classifies an exception as transient.
        max_attempts: Total attempts including the first.
        delay_seconds: Fixed delay between attempts.
        cancel_event: Aborts the delay immediately when set.
        description: Used in log records and error messages.

    Returns:
        The operation's result.

    Raises:
        RetryExhaustedError: If every attempt failed with a retryable error.
        OperationCancelledError: If cancel_event fired while waiting.
        Exception: The first non-retryable error, unchanged.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    last_error: Exception | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except Exception as e:
            if not is_retryable(e):
                raise
            last_error = e
            logger.info(
                "Transient failure, will retry",
                extra={
                    "operation": description,
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                    "error": str(e),
                },
            )

        if attempt < max_attempts:
            await _pause(delay_seconds, cancel_event, description)

    assert last_error is not None
    raise RetryExhaustedError(description, max_attempts, last_error)


async def wait_until(
    check: Callable[[], Awaitable[bool]],
    *,
    timeout_seconds: float,
    poll_interval_seconds: float,
    cancel_event: asyncio.Event | None = None,
    description: str = "condition",
) -> None:
    """Poll check until it returns True.

    Raises:
        WaitTimeoutError: If the deadline passes first.
        OperationCancelledError: If cancel_event fired while waiting.
    """
    deadline = time.monotonic() + timeout_seconds
    while True:
        if await check():
            return
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise WaitTimeoutError(f"timeout waiting for {description} after {timeout_seconds}s")
        await _pause(min(poll_interval_seconds, remaining), cancel_event, description)
