"""Sliding-window admission control for outbound calls."""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from resilience_core.logging import get_logger, log_debug

T = TypeVar("T")

_logger = get_logger(__name__)


def _monotonic() -> float:
    return time.monotonic()


@dataclass(frozen=True, slots=True)
class RateLimiterConfig:
    """Rate limiter configuration values.

    Attributes:
        max_requests: Admissions allowed within any rolling ``window``.
        window: Window length in seconds.
    """

    max_requests: int
    window: float

    def __post_init__(self) -> None:
        if self.max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if self.window <= 0:
            raise ValueError("window must be > 0")


class RateLimiter:
    """Admit at most ``max_requests`` calls per rolling time window.

    Bursts up to ``max_requests`` are admitted immediately; the limiter does
    not smooth them. Waiting callers are admitted in ``acquire()`` order.
    """

    def __init__(
        self,
        config: RateLimiterConfig,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Create a limiter.

        Args:
            config: Window size and admission budget.
            sleep: Awaitable sleep used while waiting for a free slot.
        """
        self.config = config
        self._sleep = sleep
        self._admitted: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        window = self.config.window
        while self._admitted and now - self._admitted[0] >= window:
            self._admitted.popleft()

    def _wait_time(self, now: float) -> float:
        if len(self._admitted) < self.config.max_requests:
            return 0.0
        return max(self.config.window - (now - self._admitted[0]), 0.0)

    @property
    def in_window(self) -> int:
        """Number of admissions currently held in the window."""
        self._prune(_monotonic())
        return len(self._admitted)

    def wait_time(self) -> float:
        """Estimate seconds until the next admission would succeed."""
        now = _monotonic()
        self._prune(now)
        return self._wait_time(now)

    def try_acquire(self) -> bool:
        """Admit immediately if the window has room, without waiting."""
        if self._lock.locked():
            return False
        now = _monotonic()
        self._prune(now)
        if len(self._admitted) >= self.config.max_requests:
            return False
        self._admitted.append(now)
        return True

    async def acquire(self) -> None:
        """Wait until the window has room, then record one admission."""
        async with self._lock:
            while True:
                now = _monotonic()
                self._prune(now)
                if len(self._admitted) < self.config.max_requests:
                    self._admitted.append(now)
                    return

                wait_time = self._wait_time(now)
                log_debug(
                    _logger,
                    "rate_limiter.waiting",
                    wait_seconds=wait_time,
                    max_requests=self.config.max_requests,
                    window_seconds=self.config.window,
                )
                await self._sleep(wait_time)

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Acquire an admission slot, then run ``operation``."""
        await self.acquire()
        return await operation()
