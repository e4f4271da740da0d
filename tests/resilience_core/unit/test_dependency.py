from __future__ import annotations

import asyncio

import httpx
import pytest
from pytest_httpx import HTTPXMock

import resilience_core.rate_limiter as rate_limiter_mod
from resilience_core.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitOpenError,
    CircuitState,
)
from resilience_core.dependency import GuardedDependency, HttpDependency
from resilience_core.errors import (
    DependencyFailure,
    FailureKind,
    ServiceUnavailableError,
    TerminalError,
    TransientError,
)
from resilience_core.rate_limiter import RateLimiter, RateLimiterConfig
from resilience_core.retry import RetryExecutor, RetryPolicy
from resilience_core.settings import ResilienceSettings
from tests.resilience_core.support.fakes import FakeClock, RecordingSleep

pytestmark = pytest.mark.asyncio

_EVENTS_URL = "https://calendar.example.com/v3/events"


def _guard(
    *,
    max_attempts: int = 3,
    failure_threshold: int = 5,
    timeout: float | None = None,
    rate_limiter: RateLimiter | None = None,
    sleep: RecordingSleep | None = None,
) -> GuardedDependency:
    return GuardedDependency(
        "calendar",
        retry_policy=RetryPolicy(max_attempts=max_attempts, initial_delay=0.1),
        breaker_config=CircuitBreakerConfig(
            failure_threshold=failure_threshold, reset_timeout=30.0
        ),
        rate_limiter=rate_limiter,
        timeout=timeout,
        retry_executor=RetryExecutor(sleep=sleep or RecordingSleep()),
    )


async def test_successful_call_returns_result() -> None:
    guard = _guard()

    async def _list_events() -> list[str]:
        return ["standup", "retro"]

    assert await guard.call(_list_events) == ["standup", "retro"]
    assert guard.breaker.get_state() == CircuitState.CLOSED


async def test_transient_failure_is_retried_into_success() -> None:
    sleep = RecordingSleep()
    guard = _guard(sleep=sleep)
    calls = 0

    async def _flaky() -> str:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise TransientError("Too Many Requests", kind=FailureKind.RATE_LIMITED)
        return "ok"

    assert await guard.call(_flaky) == "ok"
    assert calls == 2
    assert sleep.delays == pytest.approx([0.1])


async def test_exhausted_transient_failure_becomes_service_unavailable() -> None:
    guard = _guard(max_attempts=2)
    calls = 0

    async def _down() -> None:
        nonlocal calls
        calls += 1
        raise TransientError("HTTP 503", status_code=503)

    with pytest.raises(ServiceUnavailableError) as excinfo:
        await guard.call(_down)

    assert calls == 2
    assert excinfo.value.dependency == "calendar"
    assert excinfo.value.retry_after is None
    assert isinstance(excinfo.value.__cause__, TransientError)
    assert guard.breaker.failure_count == 1


async def test_terminal_failure_propagates_unchanged() -> None:
    guard = _guard()
    failure = TerminalError("invalid calendar id", status_code=404)

    async def _missing() -> None:
        raise failure

    with pytest.raises(TerminalError) as excinfo:
        await guard.call(_missing)

    assert excinfo.value is failure


async def test_open_circuit_becomes_service_unavailable_with_retry_after() -> None:
    guard = _guard(max_attempts=1, failure_threshold=1)
    calls = 0

    async def _down() -> None:
        nonlocal calls
        calls += 1
        raise TransientError("HTTP 502", status_code=502)

    with pytest.raises(ServiceUnavailableError):
        await guard.call(_down)
    with pytest.raises(ServiceUnavailableError) as excinfo:
        await guard.call(_down)

    assert calls == 1
    assert isinstance(excinfo.value.__cause__, CircuitOpenError)
    assert excinfo.value.retry_after is not None
    assert 0.0 < excinfo.value.retry_after <= 30.0


async def test_each_attempt_is_bounded_by_timeout() -> None:
    guard = _guard(timeout=0.05)
    calls = 0

    async def _slow_then_fast() -> str:
        nonlocal calls
        calls += 1
        if calls == 1:
            await asyncio.sleep(0.2)
        return "ok"

    assert await guard.call(_slow_then_fast) == "ok"
    assert calls == 2


async def test_rate_limiter_gates_calls(
    monkeypatch: pytest.MonkeyPatch,
    fake_clock: FakeClock,
) -> None:
    monkeypatch.setattr(rate_limiter_mod, "_monotonic", fake_clock.monotonic)
    limiter_sleep = RecordingSleep(fake_clock)
    limiter = RateLimiter(
        RateLimiterConfig(max_requests=2, window=1.0), sleep=limiter_sleep
    )
    guard = _guard(rate_limiter=limiter)

    async def _ok() -> str:
        return "ok"

    for _ in range(3):
        assert await guard.call(_ok) == "ok"

    assert limiter_sleep.delays == pytest.approx([1.0])


async def test_every_retry_attempt_takes_a_rate_limit_slot(
    monkeypatch: pytest.MonkeyPatch,
    fake_clock: FakeClock,
) -> None:
    monkeypatch.setattr(rate_limiter_mod, "_monotonic", fake_clock.monotonic)
    limiter_sleep = RecordingSleep(fake_clock)
    limiter = RateLimiter(
        RateLimiterConfig(max_requests=1, window=60.0), sleep=limiter_sleep
    )
    guard = _guard(max_attempts=3, rate_limiter=limiter)
    sent_at: list[float] = []

    async def _down() -> None:
        sent_at.append(fake_clock.monotonic())
        raise TransientError("HTTP 503", status_code=503)

    with pytest.raises(ServiceUnavailableError):
        await guard.call(_down)

    assert limiter_sleep.delays == pytest.approx([60.0, 60.0])
    assert [later - earlier for earlier, later in zip(sent_at, sent_at[1:])] == (
        pytest.approx([60.0, 60.0])
    )


async def test_open_circuit_rejects_without_waiting_for_rate_limit_slot(
    monkeypatch: pytest.MonkeyPatch,
    fake_clock: FakeClock,
) -> None:
    monkeypatch.setattr(rate_limiter_mod, "_monotonic", fake_clock.monotonic)
    limiter_sleep = RecordingSleep(fake_clock)
    limiter = RateLimiter(
        RateLimiterConfig(max_requests=1, window=10.0), sleep=limiter_sleep
    )
    guard = _guard(max_attempts=1, failure_threshold=1, rate_limiter=limiter)

    async def _down() -> None:
        raise TransientError("HTTP 502", status_code=502)

    with pytest.raises(ServiceUnavailableError):
        await guard.call(_down)
    with pytest.raises(ServiceUnavailableError) as excinfo:
        await guard.call(_down)

    assert isinstance(excinfo.value.__cause__, CircuitOpenError)
    assert limiter_sleep.delays == []
    assert limiter.in_window == 1


async def test_from_settings_builds_configured_pipeline() -> None:
    settings = ResilienceSettings(
        retry_max_attempts=4,
        breaker_failure_threshold=2,
        breaker_reset_timeout_seconds=5.0,
        rate_limit_max_requests=10,
        rate_limit_window_seconds=60.0,
        timeout_seconds=2.5,
    )

    guard = GuardedDependency.from_settings("gemini", settings)

    assert guard.name == "gemini"
    assert guard.retry_policy.max_attempts == 4
    assert guard.breaker.config.failure_threshold == 2
    assert guard.breaker.config.reset_timeout == 5.0
    assert guard.rate_limiter is not None
    assert guard.rate_limiter.config == RateLimiterConfig(
        max_requests=10, window=60.0
    )
    assert guard.timeout_guard is not None
    assert guard.timeout_guard.timeout == 2.5


async def test_from_settings_without_limiter_or_timeout() -> None:
    guard = GuardedDependency.from_settings("gemini", ResilienceSettings())

    assert guard.rate_limiter is None
    assert guard.timeout_guard is None


async def test_http_dependency_retries_server_error(httpx_mock: HTTPXMock) -> None:
    httpx_mock.add_response(url=_EVENTS_URL, status_code=503, text="busy")
    httpx_mock.add_response(url=_EVENTS_URL, json={"items": ["standup"]})

    async with httpx.AsyncClient() as client:
        dependency = HttpDependency(client, _guard())
        response = await dependency.get(_EVENTS_URL)

    assert response.json() == {"items": ["standup"]}
    assert len(httpx_mock.get_requests()) == 2


async def test_http_dependency_does_not_retry_client_error(
    httpx_mock: HTTPXMock,
) -> None:
    httpx_mock.add_response(url=_EVENTS_URL, status_code=404, text="not found")

    async with httpx.AsyncClient() as client:
        dependency = HttpDependency(client, _guard())
        with pytest.raises(TerminalError) as excinfo:
            await dependency.get(_EVENTS_URL)

    assert excinfo.value.status_code == 404
    assert excinfo.value.response_body == "not found"
    assert len(httpx_mock.get_requests()) == 1


async def test_http_dependency_connection_errors_exhaust_to_unavailable(
    httpx_mock: HTTPXMock,
) -> None:
    for _ in range(3):
        httpx_mock.add_exception(httpx.ConnectError("connection refused"))

    async with httpx.AsyncClient() as client:
        dependency = HttpDependency(client, _guard())
        with pytest.raises(ServiceUnavailableError) as excinfo:
            await dependency.post(_EVENTS_URL, json={"summary": "standup"})

    cause = excinfo.value.__cause__
    assert isinstance(cause, DependencyFailure)
    assert cause.kind == FailureKind.CONNECTION_RESET
    assert len(httpx_mock.get_requests()) == 3
