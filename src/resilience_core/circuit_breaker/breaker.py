"""Core circuit breaker implementation."""

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TypeVar

from resilience_core.circuit_breaker.exceptions import CircuitOpenError
from resilience_core.circuit_breaker.metrics import BreakerListener
from resilience_core.circuit_breaker.state import BreakerSnapshot, CircuitState
from resilience_core.logging import get_logger, log_warning
from resilience_core.retry import RetryExecutor, RetryPolicy

T = TypeVar("T")

_Transition = tuple[CircuitState, CircuitState]

_logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True)
class CircuitBreakerConfig:
    """Circuit breaker configuration values.

    Attributes:
        failure_threshold: Failures required while ``CLOSED`` before opening.
        reset_timeout: Seconds to wait while ``OPEN`` before allowing a probe.
        expected_exceptions: Exceptions that count as failures.
        excluded_exceptions: Exceptions that must not count as failures.
    """

    failure_threshold: int = 5
    reset_timeout: float = 30.0
    expected_exceptions: tuple[type[BaseException], ...] = (Exception,)
    excluded_exceptions: tuple[type[BaseException], ...] = ()

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.reset_timeout < 0:
            raise ValueError("reset_timeout must be >= 0")


class CircuitBreaker:
    """Stateful guard around one unreliable async dependency.

    Every admitted call runs through a ``RetryExecutor``; only failures that
    escape the retries are counted. State lives on the instance, so hold one
    breaker per logical dependency and share it between callers.
    """

    def __init__(
        self,
        name: str,
        *,
        config: CircuitBreakerConfig | None = None,
        retry_policy: RetryPolicy | None = None,
        retry_executor: RetryExecutor | None = None,
        listeners: Sequence[BreakerListener] | None = None,
    ) -> None:
        """Build a circuit breaker with optional custom dependencies.

        Args:
            name: Breaker name used in errors, logs and listener events.
            config: Breaker behavior configuration. Defaults to
                ``CircuitBreakerConfig()``.
            retry_policy: Default retry policy for calls. Ignored when
                ``retry_executor`` is given.
            retry_executor: Executor running each admitted call.
            listeners: Optional listener hooks for breaker events.
        """
        self.name = name
        self.config = CircuitBreakerConfig() if config is None else config
        self._retry_executor = (
            RetryExecutor(retry_policy) if retry_executor is None else retry_executor
        )
        self._listeners = tuple(listeners) if listeners is not None else ()
        self._lock = asyncio.Lock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_at: datetime | None = None
        self._probe_in_flight = False

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def last_failure_at(self) -> datetime | None:
        return self._last_failure_at

    def get_state(self) -> CircuitState:
        """Return the current state without triggering any transition."""
        return self._state

    def snapshot(self) -> BreakerSnapshot:
        """Return a point-in-time view of the breaker."""
        return BreakerSnapshot(
            name=self.name,
            state=self._state,
            failure_count=self._failure_count,
            last_failure_at=self._last_failure_at,
            probe_in_flight=self._probe_in_flight,
        )

    def reset(self) -> None:
        """Force the breaker ``CLOSED`` with a zero failure count."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_at = None
        self._probe_in_flight = False

    async def _emit(self, hook: str, *args: object) -> None:
        for listener in self._listeners:
            try:
                await getattr(listener, hook)(self.name, *args)
            except Exception as exc:
                log_warning(
                    _logger,
                    "circuit_breaker.listener_failed",
                    breaker=self.name,
                    hook=hook,
                    error_type=exc.__class__.__name__,
                )

    async def _emit_transitions(self, transitions: Sequence[_Transition]) -> None:
        for old, new in transitions:
            await self._emit("on_state_change", old, new)

    def _retry_after(self, now: datetime) -> float:
        if self._last_failure_at is None:
            return 0.0
        elapsed = (now - self._last_failure_at).total_seconds()
        return max(self.config.reset_timeout - elapsed, 0.0)

    async def _admit(self) -> bool:
        """Decide whether a call may run; return whether it is the probe."""
        transitions: list[_Transition] = []
        retry_after: float | None = None
        is_probe = False
        async with self._lock:
            if self._state == CircuitState.OPEN:
                retry_after = self._retry_after(_utcnow())
                if retry_after <= 0:
                    self._state = CircuitState.HALF_OPEN
                    transitions.append((CircuitState.OPEN, CircuitState.HALF_OPEN))
                    retry_after = None

            if retry_after is None and self._state == CircuitState.HALF_OPEN:
                if self._probe_in_flight:
                    retry_after = 0.0
                else:
                    self._probe_in_flight = True
                    is_probe = True

        await self._emit_transitions(transitions)
        if retry_after is not None:
            await self._emit("on_call_rejected", retry_after)
            raise CircuitOpenError(self.name, retry_after=retry_after)
        return is_probe

    async def _record_success(self, is_probe: bool) -> list[_Transition]:
        async with self._lock:
            if not (is_probe and self._state == CircuitState.HALF_OPEN):
                return []
            self._probe_in_flight = False
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            return [(CircuitState.HALF_OPEN, CircuitState.CLOSED)]

    async def _record_failure(self, is_probe: bool) -> list[_Transition]:
        async with self._lock:
            self._failure_count += 1
            self._last_failure_at = _utcnow()
            if is_probe and self._state == CircuitState.HALF_OPEN:
                self._probe_in_flight = False
                self._state = CircuitState.OPEN
                return [(CircuitState.HALF_OPEN, CircuitState.OPEN)]
            if (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self.config.failure_threshold
            ):
                self._state = CircuitState.OPEN
                return [(CircuitState.CLOSED, CircuitState.OPEN)]
            return []

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy | None = None,
    ) -> T:
        """Invoke an async operation under circuit breaker protection.

        Args:
            operation: Zero-argument async callable talking to the dependency.
            policy: Retry policy overriding the executor default.

        Returns:
            The result of ``operation`` when allowed and successful.

        Raises:
            CircuitOpenError: When the circuit is open and the call is rejected.
            Exception: The last failure from ``operation`` after retries.
        """
        is_probe = await self._admit()
        settled = False
        start = time.monotonic()
        try:
            result = await self._retry_executor.execute(operation, policy)
        except self.config.excluded_exceptions:
            raise
        except self.config.expected_exceptions as exc:
            settled = True
            elapsed = max(time.monotonic() - start, 0.0)
            await self._emit("on_call_failed", exc, elapsed)
            await self._emit_transitions(await self._record_failure(is_probe))
            raise
        else:
            settled = True
            elapsed = max(time.monotonic() - start, 0.0)
            await self._emit_transitions(await self._record_success(is_probe))
            await self._emit("on_call_succeeded", elapsed)
            return result
        finally:
            if is_probe and not settled:
                self._probe_in_flight = False
