"""Deadline guard for async operations.

The guard races an operation against a timer. It is a composition
primitive, not a cancellation mechanism: unless ``cancel_on_timeout`` is
set, an operation that loses the race keeps running in the background and
its eventual outcome is only logged.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from resilience_core.constants import DEFAULT_TIMEOUT_MESSAGE
from resilience_core.errors import OperationTimeoutError
from resilience_core.logging import get_logger, log_debug

T = TypeVar("T")

_logger = get_logger(__name__)


def _log_abandoned_outcome(task: asyncio.Future[object]) -> None:
    if task.cancelled():
        log_debug(_logger, "timeout.abandoned_cancelled")
        return
    error = task.exception()
    if error is not None:
        log_debug(
            _logger,
            "timeout.abandoned_failed",
            error_type=error.__class__.__name__,
            error=str(error),
        )
        return
    log_debug(_logger, "timeout.abandoned_completed")


class TimeoutGuard:
    """Fail fast with ``OperationTimeoutError`` when a deadline passes."""

    def __init__(
        self,
        timeout: float,
        *,
        message: str = DEFAULT_TIMEOUT_MESSAGE,
        cancel_on_timeout: bool = False,
    ) -> None:
        """Create a guard.

        Args:
            timeout: Deadline in seconds; must be positive.
            message: Message carried by the raised timeout failure.
            cancel_on_timeout: Cancel the losing operation instead of leaving
                it to finish in the background.
        """
        if timeout <= 0:
            raise ValueError("timeout must be > 0")
        self.timeout = timeout
        self.message = message
        self.cancel_on_timeout = cancel_on_timeout
        self._abandoned: set[asyncio.Future[object]] = set()

    @property
    def abandoned(self) -> int:
        """Number of timed-out operations still running in the background."""
        return len(self._abandoned)

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` and return its result if it beats the deadline.

        Raises:
            OperationTimeoutError: When the deadline passes first.
        """
        task: asyncio.Future[T] = asyncio.ensure_future(operation())
        try:
            done, _ = await asyncio.wait({task}, timeout=self.timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if task in done:
            return task.result()

        if self.cancel_on_timeout:
            task.cancel()
        self._abandoned.add(task)
        task.add_done_callback(self._abandoned.discard)
        task.add_done_callback(_log_abandoned_outcome)
        raise OperationTimeoutError(self.message, timeout=self.timeout)


async def with_timeout(
    operation: Callable[[], Awaitable[T]],
    timeout: float,
    message: str = DEFAULT_TIMEOUT_MESSAGE,
) -> T:
    """Race ``operation`` against ``timeout`` seconds without cancelling it."""
    return await TimeoutGuard(timeout, message=message).execute(operation)
