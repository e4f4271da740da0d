from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from typing import Any, TypeVar

import httpx

from resilience_core.circuit_breaker import (
    BreakerListener,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
)
from resilience_core.errors import (
    DependencyFailure,
    ServiceUnavailableError,
    classify_failure,
)
from resilience_core.rate_limiter import RateLimiter
from resilience_core.retry import RetryExecutor, RetryPolicy
from resilience_core.settings import ResilienceSettings
from resilience_core.timeout import TimeoutGuard

T = TypeVar("T")


class GuardedDependency:
    """Resilience pipeline for one logical external dependency.

    Each call passes through the circuit breaker, which retries the
    operation. Every attempt is admitted by the rate limiter and then
    bounded by the timeout guard, so retries count against the rate budget
    and a rejected call never waits for a slot. Construct one instance per
    dependency and share it.
    """

    def __init__(
        self,
        name: str,
        *,
        retry_policy: RetryPolicy | None = None,
        breaker_config: CircuitBreakerConfig | None = None,
        rate_limiter: RateLimiter | None = None,
        timeout: float | None = None,
        listeners: Sequence[BreakerListener] | None = None,
        retry_executor: RetryExecutor | None = None,
    ) -> None:
        """Create the pipeline.

        Args:
            name: Dependency name used by the breaker and boundary errors.
            retry_policy: Retry policy for every call. Defaults to
                ``RetryPolicy()``.
            breaker_config: Circuit breaker configuration.
            rate_limiter: Optional limiter shared by all callers.
            timeout: Optional per-attempt deadline in seconds.
            listeners: Optional circuit breaker listeners.
            retry_executor: Executor used by the breaker, mainly for tests.
        """
        self.name = name
        self.retry_policy = RetryPolicy() if retry_policy is None else retry_policy
        self.breaker = CircuitBreaker(
            name,
            config=breaker_config,
            retry_policy=self.retry_policy,
            retry_executor=retry_executor,
            listeners=listeners,
        )
        self.rate_limiter = rate_limiter
        self.timeout_guard = (
            None
            if timeout is None
            else TimeoutGuard(timeout, message=f"{name} call timed out")
        )

    @classmethod
    def from_settings(
        cls,
        name: str,
        settings: ResilienceSettings,
        *,
        listeners: Sequence[BreakerListener] | None = None,
    ) -> GuardedDependency:
        """Build a pipeline from environment-driven settings."""
        rate_limiter_config = settings.rate_limiter_config()
        return cls(
            name,
            retry_policy=settings.retry_policy(),
            breaker_config=settings.breaker_config(),
            rate_limiter=(
                None
                if rate_limiter_config is None
                else RateLimiter(rate_limiter_config)
            ),
            timeout=settings.timeout_seconds,
            listeners=listeners,
        )

    def _attempt(
        self, operation: Callable[[], Awaitable[T]]
    ) -> Callable[[], Awaitable[T]]:
        guard = self.timeout_guard
        limiter = self.rate_limiter
        bounded = operation if guard is None else (lambda: guard.execute(operation))
        if limiter is None:
            return bounded
        return lambda: limiter.execute(bounded)

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` through the full pipeline.

        Raises:
            ServiceUnavailableError: When the circuit is open or retries of a
                transient failure are exhausted.
            Exception: Non-retryable failures, unchanged.
        """
        try:
            return await self.breaker.execute(
                self._attempt(operation), self.retry_policy
            )
        except CircuitOpenError as exc:
            raise ServiceUnavailableError(
                self.name, retry_after=exc.retry_after
            ) from exc
        except Exception as exc:
            if self.retry_policy.retry_predicate(exc):
                raise ServiceUnavailableError(self.name) from exc
            raise


class HttpDependency:
    """``httpx`` client whose requests run through a ``GuardedDependency``."""

    def __init__(self, client: httpx.AsyncClient, guard: GuardedDependency) -> None:
        """Bind a shared HTTP client to a dependency pipeline.

        Args:
            client: Shared async HTTP client.
            guard: Pipeline guarding the remote service.
        """
        self._client = client
        self.guard = guard

    async def request(
        self, method: str, url: str, **kwargs: Any
    ) -> httpx.Response:
        """Send one request; non-2xx statuses become ``DependencyFailure``."""

        async def _send() -> httpx.Response:
            try:
                response = await self._client.request(method, url, **kwargs)
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise DependencyFailure.from_status(
                    exc.response.status_code,
                    str(exc),
                    response_body=exc.response.text,
                ) from exc
            except httpx.RequestError as exc:
                raise DependencyFailure(str(exc), kind=classify_failure(exc)) from exc
            return response

        return await self.guard.call(_send)

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)
