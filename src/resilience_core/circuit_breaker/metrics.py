"""Observability hooks for circuit breakers."""

from typing import Protocol

from resilience_core.circuit_breaker.state import CircuitState
from resilience_core.errors import classify_failure
from resilience_core.logging import AnyLogger, get_logger, log_info, log_warning


class BreakerListener(Protocol):
    """Listener protocol for circuit breaker events.

    Notes:
        ``on_state_change(OPEN -> HALF_OPEN)`` is emitted once per probe
        window, before the probe call starts.
    """

    async def on_state_change(
        self, name: str, old: CircuitState, new: CircuitState
    ) -> None:
        """Handle circuit state transitions."""

    async def on_call_rejected(self, name: str, retry_after: float) -> None:
        """Handle call rejection while the circuit is open."""

    async def on_call_succeeded(self, name: str, elapsed: float) -> None:
        """Handle successful protected call completion."""

    async def on_call_failed(
        self, name: str, exc: BaseException, elapsed: float
    ) -> None:
        """Handle failed protected call completion."""


class LoggingBreakerListener:
    """Listener that writes breaker transitions and rejections to a logger."""

    def __init__(self, logger: AnyLogger | None = None) -> None:
        self._logger = get_logger(__name__) if logger is None else logger

    async def on_state_change(
        self, name: str, old: CircuitState, new: CircuitState
    ) -> None:
        """Log one transition; opening is a warning, recovery is info."""
        if new == CircuitState.OPEN:
            log_warning(
                self._logger,
                "circuit_breaker.opened",
                breaker=name,
                previous_state=str(old),
            )
            return
        event = (
            "circuit_breaker.half_open"
            if new == CircuitState.HALF_OPEN
            else "circuit_breaker.closed"
        )
        log_info(self._logger, event, breaker=name, previous_state=str(old))

    async def on_call_rejected(self, name: str, retry_after: float) -> None:
        log_info(
            self._logger,
            "circuit_breaker.rejected",
            breaker=name,
            retry_after_seconds=retry_after,
        )

    async def on_call_succeeded(self, name: str, elapsed: float) -> None:
        _ = (name, elapsed)

    async def on_call_failed(
        self, name: str, exc: BaseException, elapsed: float
    ) -> None:
        log_warning(
            self._logger,
            "circuit_breaker.call_failed",
            breaker=name,
            failure_kind=str(classify_failure(exc)),
            error_type=exc.__class__.__name__,
            elapsed_seconds=elapsed,
        )
