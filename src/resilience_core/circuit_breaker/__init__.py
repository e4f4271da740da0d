"""Async circuit breaker layered over ``RetryExecutor``.

This package implements the circuit breaker pattern from *Release It!*.

Key behavior notes:
  - Only failures that escape the retry executor are counted. A call that
    retried its way into success counts as a success.
  - ``failure_count`` is cleared by a successful half-open probe or by
    ``reset()``; successes while ``CLOSED`` leave it untouched.
  - Half-open probing is conservative: at most one in-flight probe call is
    permitted per ``CircuitBreaker`` instance; concurrent callers are
    rejected with ``retry_after=0``.
  - If an excluded exception (or cancellation) ends a probe, the probe is
    treated as if it never happened: the breaker stays ``HALF_OPEN`` and the
    next call probes again.
"""

from resilience_core.circuit_breaker.breaker import CircuitBreaker, CircuitBreakerConfig
from resilience_core.circuit_breaker.exceptions import (
    CircuitBreakerError,
    CircuitOpenError,
)
from resilience_core.circuit_breaker.metrics import (
    BreakerListener,
    LoggingBreakerListener,
)
from resilience_core.circuit_breaker.state import BreakerSnapshot, CircuitState

__all__ = [
    "BreakerListener",
    "BreakerSnapshot",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerError",
    "CircuitOpenError",
    "CircuitState",
    "LoggingBreakerListener",
]
