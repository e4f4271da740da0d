from __future__ import annotations

import asyncio

import pytest

import resilience_core.rate_limiter as rate_limiter_mod
from resilience_core.rate_limiter import RateLimiter, RateLimiterConfig
from tests.resilience_core.support.fakes import FakeClock, RecordingSleep

pytestmark = pytest.mark.asyncio


@pytest.fixture
def clock(monkeypatch: pytest.MonkeyPatch, fake_clock: FakeClock) -> FakeClock:
    monkeypatch.setattr(rate_limiter_mod, "_monotonic", fake_clock.monotonic)
    return fake_clock


@pytest.mark.parametrize(
    ("max_requests", "window", "message"),
    [
        (0, 1.0, "max_requests must be >= 1"),
        (-1, 1.0, "max_requests must be >= 1"),
        (1, 0.0, "window must be > 0"),
    ],
)
async def test_config_validation(
    max_requests: int,
    window: float,
    message: str,
) -> None:
    with pytest.raises(ValueError, match=message):
        RateLimiterConfig(max_requests=max_requests, window=window)


async def test_requests_within_budget_are_admitted_immediately(
    clock: FakeClock,
    recording_sleep: RecordingSleep,
) -> None:
    limiter = RateLimiter(
        RateLimiterConfig(max_requests=3, window=1.0), sleep=recording_sleep
    )

    for _ in range(3):
        await limiter.acquire()

    assert recording_sleep.delays == []
    assert limiter.in_window == 3


async def test_request_over_budget_waits_for_oldest_to_leave_window(
    clock: FakeClock,
    recording_sleep: RecordingSleep,
) -> None:
    limiter = RateLimiter(
        RateLimiterConfig(max_requests=3, window=1.0), sleep=recording_sleep
    )
    start = clock.monotonic()

    await limiter.acquire()
    clock.advance(0.25)
    await limiter.acquire()
    await limiter.acquire()
    await limiter.acquire()

    assert recording_sleep.delays == pytest.approx([0.75])
    assert clock.monotonic() - start == pytest.approx(1.0)
    assert limiter.in_window == 3


async def test_window_never_holds_more_than_max_requests(
    clock: FakeClock,
    recording_sleep: RecordingSleep,
) -> None:
    limiter = RateLimiter(
        RateLimiterConfig(max_requests=2, window=0.5), sleep=recording_sleep
    )

    for _ in range(7):
        await limiter.acquire()
        assert limiter.in_window <= 2
        clock.advance(0.1)

    assert len(recording_sleep.delays) > 0


async def test_waiting_callers_are_admitted_in_acquire_order(
    clock: FakeClock,
    recording_sleep: RecordingSleep,
) -> None:
    limiter = RateLimiter(
        RateLimiterConfig(max_requests=1, window=1.0), sleep=recording_sleep
    )
    admitted: list[int] = []

    async def _caller(number: int) -> None:
        await limiter.acquire()
        admitted.append(number)

    await asyncio.gather(*[_caller(number) for number in range(4)])

    assert admitted == [0, 1, 2, 3]
    assert recording_sleep.delays == pytest.approx([1.0, 1.0, 1.0])


async def test_execute_runs_operation_after_admission(
    clock: FakeClock,
    recording_sleep: RecordingSleep,
) -> None:
    limiter = RateLimiter(
        RateLimiterConfig(max_requests=1, window=2.0), sleep=recording_sleep
    )

    async def _call() -> str:
        return "event-list"

    assert await limiter.execute(_call) == "event-list"
    assert await limiter.execute(_call) == "event-list"
    assert recording_sleep.delays == pytest.approx([2.0])


async def test_operation_failure_still_consumes_admission(
    clock: FakeClock,
    recording_sleep: RecordingSleep,
) -> None:
    limiter = RateLimiter(
        RateLimiterConfig(max_requests=1, window=1.0), sleep=recording_sleep
    )

    async def _fails() -> None:
        raise RuntimeError("upstream error")

    with pytest.raises(RuntimeError):
        await limiter.execute(_fails)

    assert limiter.in_window == 1


async def test_try_acquire_and_wait_time(clock: FakeClock) -> None:
    limiter = RateLimiter(RateLimiterConfig(max_requests=2, window=1.0))

    assert limiter.wait_time() == 0.0
    assert limiter.try_acquire() is True
    clock.advance(0.25)
    assert limiter.try_acquire() is True
    assert limiter.try_acquire() is False
    assert limiter.wait_time() == pytest.approx(0.75)

    clock.advance(0.75)
    assert limiter.try_acquire() is True
    assert limiter.in_window == 2


async def test_limiter_with_real_clock_delays_extra_call() -> None:
    limiter = RateLimiter(RateLimiterConfig(max_requests=2, window=0.1))
    loop = asyncio.get_running_loop()

    start = loop.time()
    await limiter.acquire()
    await limiter.acquire()
    await limiter.acquire()
    elapsed = loop.time() - start

    assert elapsed >= 0.08
