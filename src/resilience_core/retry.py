from __future__ import annotations

import asyncio
import functools
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import ParamSpec, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random_exponential,
)
from tenacity.wait import wait_base

from resilience_core.errors import is_transient
from resilience_core.logging import build_retry_logger, get_logger

T = TypeVar("T")
P = ParamSpec("P")

Operation = Callable[[], Awaitable[T]]
RetryPredicate = Callable[[BaseException], bool]
RetryObserver = Callable[[int, BaseException, float], None]

_logger = get_logger(__name__)
_log_retry = build_retry_logger(_logger)


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for retry attempt count and backoff boundaries.

    Attributes:
        max_attempts: Total attempts including the first one.
        initial_delay: Seconds to wait before the first retry.
        max_delay: Upper bound for any single wait, in seconds.
        backoff_multiplier: Growth factor applied after each retry.
        retry_predicate: Decides whether a failure may be retried.
        on_retry: Observer called as ``(attempt, failure, delay)`` before
            each backoff sleep.
        jitter: Draw each wait uniformly from ``[0, delay]`` instead of
            sleeping exactly ``delay``.
    """

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    retry_predicate: RetryPredicate = is_transient
    on_retry: RetryObserver | None = None
    jitter: bool = False

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_delay < 0:
            raise ValueError("initial_delay must be >= 0")
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        if self.backoff_multiplier <= 1:
            raise ValueError("backoff_multiplier must be > 1")

    def delay_for_retry(self, retry_number: int) -> float:
        """Return the unjittered wait before retry ``retry_number`` (1-based)."""
        if retry_number < 1:
            raise ValueError("retry_number must be >= 1")
        try:
            delay = self.initial_delay * self.backoff_multiplier ** (retry_number - 1)
        except OverflowError:
            return self.max_delay
        return min(delay, self.max_delay)


def build_wait(policy: RetryPolicy) -> wait_base:
    """Build the tenacity wait strategy described by ``policy``."""
    if policy.jitter:
        return wait_random_exponential(
            multiplier=policy.initial_delay,
            max=policy.max_delay,
            exp_base=policy.backoff_multiplier,
        )
    return wait_exponential(
        multiplier=policy.initial_delay,
        max=policy.max_delay,
        exp_base=policy.backoff_multiplier,
    )


def _build_before_sleep(policy: RetryPolicy) -> Callable[[RetryCallState], None]:
    def _before_sleep(state: RetryCallState) -> None:
        outcome = state.outcome
        next_action = state.next_action
        if outcome is None or next_action is None:
            return
        failure = outcome.exception()
        if failure is None:
            return
        delay = next_action.sleep
        _log_retry(state.attempt_number, failure, delay)
        if policy.on_retry is not None:
            policy.on_retry(state.attempt_number, failure, delay)

    return _before_sleep


def build_retrying(
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> AsyncRetrying:
    """Build an ``AsyncRetrying`` that enforces ``policy``."""
    return AsyncRetrying(
        retry=retry_if_exception(policy.retry_predicate),
        wait=build_wait(policy),
        stop=stop_after_attempt(policy.max_attempts),
        sleep=sleep,
        before_sleep=_build_before_sleep(policy),
        reraise=True,
    )


class RetryExecutor:
    """Run operations, retrying classified-transient failures with backoff."""

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Create an executor.

        Args:
            policy: Default policy for ``execute`` calls that pass none.
            sleep: Awaitable sleep used between attempts.
        """
        self.policy = RetryPolicy() if policy is None else policy
        self._sleep = sleep

    async def execute(
        self,
        operation: Operation[T],
        policy: RetryPolicy | None = None,
    ) -> T:
        """Run ``operation`` until it succeeds or the policy gives up.

        Args:
            operation: Zero-argument async callable to run.
            policy: Policy overriding the executor default for this call.

        Returns:
            The operation result from the first successful attempt.

        Raises:
            Exception: The last failure, unchanged, once attempts are
                exhausted or a failure is not retryable.
        """
        retrying = build_retrying(
            self.policy if policy is None else policy,
            sleep=self._sleep,
        )
        async for attempt in retrying:
            with attempt:
                return await operation()

        raise RuntimeError("retry loop exited unexpectedly.")


def retryable(
    policy: RetryPolicy | None = None,
    *,
    executor: RetryExecutor | None = None,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorate an async function so every call runs through a retry executor."""
    resolved_executor = RetryExecutor() if executor is None else executor

    def _decorate(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @functools.wraps(func)
        async def _wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return await resolved_executor.execute(
                lambda: func(*args, **kwargs),
                policy,
            )

        return _wrapper

    return _decorate
