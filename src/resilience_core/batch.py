"""Concurrency-bounded fan-out with fail-fast error handling."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import Generic, TypeVar

from resilience_core.errors import BatchAbortedError
from resilience_core.logging import get_logger, log_debug, log_warning

T = TypeVar("T")
R = TypeVar("R")

_logger = get_logger(__name__)


def _discard_outcome(task: asyncio.Future[object]) -> None:
    """Retrieve the outcome of an abandoned task so it is never reported."""
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        log_debug(
            _logger,
            "batch.abandoned_item_failed",
            error_type=error.__class__.__name__,
            error=str(error),
        )


class _InFlight(Generic[T, R]):
    """Running item tasks keyed to their input position."""

    def __init__(self) -> None:
        self.tasks: dict[asyncio.Future[R], tuple[int, T]] = {}

    def __len__(self) -> int:
        return len(self.tasks)

    def start(self, index: int, item: T, fn: Callable[[T], Awaitable[R]]) -> None:
        try:
            task = asyncio.ensure_future(fn(item))
        except Exception as exc:
            raise BatchAbortedError(index, item, exc) from exc
        self.tasks[task] = (index, item)

    async def collect_next(self, results: list[R]) -> None:
        """Wait for at least one task and move finished results to ``results``.

        Raises:
            BatchAbortedError: When a finished task failed. The lowest input
                index wins when several failed together.
        """
        done, _ = await asyncio.wait(
            self.tasks, return_when=asyncio.FIRST_COMPLETED
        )
        finished = sorted(
            ((self.tasks.pop(task), task) for task in done),
            key=lambda entry: entry[0][0],
        )
        first_failure: BatchAbortedError | None = None
        for (index, item), task in finished:
            error: BaseException | None = (
                asyncio.CancelledError() if task.cancelled() else task.exception()
            )
            if error is None:
                results.append(task.result())
            elif first_failure is None:
                first_failure = BatchAbortedError(index, item, error)
                first_failure.__cause__ = error
        if first_failure is not None:
            raise first_failure

    def abandon(self, *, cancel: bool) -> None:
        for task in self.tasks:
            if cancel:
                task.cancel()
            task.add_done_callback(_discard_outcome)
        self.tasks.clear()


class BoundedBatchExecutor:
    """Run one async function over many items with a concurrency ceiling.

    Items are started in input order; results come back in completion
    order. Callers that need input order should tag items with their index
    and sort afterwards.
    """

    def __init__(self, concurrency: int = 5, *, cancel_pending: bool = False) -> None:
        """Create an executor.

        Args:
            concurrency: Maximum number of items processed at the same time.
            cancel_pending: Cancel still-running items after a failure instead
                of letting them finish and discarding their results.
        """
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.concurrency = concurrency
        self.cancel_pending = cancel_pending

    async def execute(
        self,
        items: Iterable[T],
        fn: Callable[[T], Awaitable[R]],
    ) -> list[R]:
        """Apply ``fn`` to every item, at most ``concurrency`` at a time.

        Returns:
            Results in completion order.

        Raises:
            BatchAbortedError: On the first item failure; no further items
                are started.
        """
        results: list[R] = []
        in_flight: _InFlight[T, R] = _InFlight()
        try:
            for index, item in enumerate(items):
                if len(in_flight) >= self.concurrency:
                    await in_flight.collect_next(results)
                in_flight.start(index, item, fn)
            while len(in_flight):
                await in_flight.collect_next(results)
        except BatchAbortedError as exc:
            log_warning(
                _logger,
                "batch.aborted",
                index=exc.index,
                error_type=exc.failure.__class__.__name__,
                completed=len(results),
                abandoned=len(in_flight),
                cancel_pending=self.cancel_pending,
            )
            in_flight.abandon(cancel=self.cancel_pending)
            raise
        except BaseException:
            in_flight.abandon(cancel=True)
            raise
        return results


async def batch_execute(
    items: Iterable[T],
    fn: Callable[[T], Awaitable[R]],
    concurrency: int = 5,
) -> list[R]:
    """Run ``fn`` over ``items`` with at most ``concurrency`` in flight."""
    return await BoundedBatchExecutor(concurrency).execute(items, fn)
