"""Circuit breaker state primitives."""

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum


class CircuitState(StrEnum):
    """Circuit breaker state values."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class BreakerSnapshot:
    """Point-in-time view of breaker internals useful for diagnostics.

    Attributes:
        name: Breaker name.
        state: Current breaker state.
        failure_count: Failures counted since the breaker last closed.
        last_failure_at: Timestamp of the last counted failure, if any.
        probe_in_flight: Whether a half-open probe call is running.
    """

    name: str
    state: CircuitState
    failure_count: int
    last_failure_at: datetime | None
    probe_in_flight: bool = False
