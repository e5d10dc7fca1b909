import asyncio
import random
from typing import List

import pytest

from papertrader.core.errors import CircuitOpenError, ExternalServiceError, QuotaExceededError
from papertrader.core.rate_limiter import RateLimiterRegistry
from papertrader.core.resilience import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
    RetryPolicy,
    with_resilience,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class FakeSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _policy(max_retries: int = 3) -> RetryPolicy:
    return RetryPolicy(max_retries=max_retries, jitter_factor=0.0, sleep=FakeSleep())


def test_breaker_opens_after_threshold_and_admits_one_trial() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker("svc", failure_threshold=3, reset_timeout=60.0, clock=clock)

    for _ in range(2):
        breaker.record_failure()
    assert breaker.state is CircuitState.CLOSED
    assert breaker.can_attempt()

    breaker.record_failure()
    assert breaker.state is CircuitState.OPEN
    assert not breaker.can_attempt()

    clock.now = 59.0
    assert not breaker.can_attempt()

    clock.now = 60.0
    assert breaker.can_attempt()
    assert breaker.state is CircuitState.HALF_OPEN
    assert not breaker.can_attempt()

    breaker.record_success()
    assert breaker.state is CircuitState.CLOSED
    assert breaker.can_attempt()


def test_breaker_reopens_on_half_open_failure() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker("svc", failure_threshold=1, reset_timeout=10.0, clock=clock)

    breaker.record_failure()
    clock.now = 10.0
    assert breaker.can_attempt()

    breaker.record_failure()
    assert breaker.state is CircuitState.OPEN
    assert breaker.next_attempt_time == 20.0
    assert not breaker.can_attempt()


def test_success_resets_failure_count() -> None:
    breaker = CircuitBreaker("svc", failure_threshold=3)
    breaker.record_failure()
    breaker.record_failure()
    breaker.record_success()
    breaker.record_failure()
    assert breaker.state is CircuitState.CLOSED
    assert breaker.failure_count == 1


def test_registry_reset() -> None:
    registry = CircuitBreakerRegistry(failure_threshold=1)
    registry.get("gemini").record_failure()
    assert registry.snapshot()[0]["state"] == "OPEN"

    registry.reset("gemini")
    assert registry.get("gemini").state is CircuitState.CLOSED


def test_retry_delays_grow_exponentially_and_cap() -> None:
    policy = RetryPolicy(initial_delay=1.0, max_delay=30.0, jitter_factor=0.0)
    assert [policy.calculate_delay(a) for a in range(4)] == [1.0, 2.0, 4.0, 8.0]
    assert policy.calculate_delay(10) == 30.0

    jittered = RetryPolicy(jitter_factor=0.1, rng=random.Random(7))
    assert 1.0 <= jittered.calculate_delay(0) <= 1.1


def test_retry_succeeds_after_transient_failures() -> None:
    policy = _policy()
    calls = []

    async def _op() -> str:
        calls.append(1)
        if len(calls) < 3:
            raise ExternalServiceError("boom")
        return "ok"

    assert asyncio.run(policy.execute(_op)) == "ok"
    assert len(calls) == 3
    assert policy.sleep.delays == [1.0, 2.0]


def test_retry_gives_up_after_max_retries() -> None:
    policy = _policy(max_retries=2)
    calls = []

    async def _op() -> str:
        calls.append(1)
        raise ExternalServiceError("boom")

    with pytest.raises(ExternalServiceError):
        asyncio.run(policy.execute(_op))
    assert len(calls) == 3


def test_quota_errors_are_not_retried() -> None:
    policy = _policy()
    calls = []

    async def _op() -> str:
        calls.append(1)
        raise QuotaExceededError("quota", status_code=429)

    with pytest.raises(QuotaExceededError):
        asyncio.run(policy.execute(_op))
    assert len(calls) == 1


def test_with_resilience_quota_trips_breaker() -> None:
    clock = FakeClock()
    breakers = CircuitBreakerRegistry(clock=clock)
    calls = []

    async def _quota() -> str:
        calls.append(1)
        raise QuotaExceededError("quota", status_code=429)

    async def _ok() -> str:
        calls.append(1)
        return "ok"

    async def _run() -> None:
        with pytest.raises(QuotaExceededError):
            await with_resilience("twelve_data", _quota, breakers=breakers, policy=_policy(), quota_cooldown=600.0)
        assert breakers.get("twelve_data").state is CircuitState.OPEN

        with pytest.raises(CircuitOpenError) as exc:
            await with_resilience("twelve_data", _ok, breakers=breakers, policy=_policy())
        assert exc.value.code == "CIRCUIT_BREAKER_OPEN"
        assert len(calls) == 1

        clock.now = 600.0
        assert await with_resilience("twelve_data", _ok, breakers=breakers, policy=_policy()) == "ok"
        assert breakers.get("twelve_data").state is CircuitState.CLOSED

    asyncio.run(_run())


def test_with_resilience_failures_open_breaker() -> None:
    breakers = CircuitBreakerRegistry(failure_threshold=2)

    async def _fail() -> str:
        raise ExternalServiceError("down")

    async def _run() -> None:
        for _ in range(2):
            with pytest.raises(ExternalServiceError):
                await with_resilience("gemini", _fail, breakers=breakers, policy=_policy(max_retries=0))
        with pytest.raises(CircuitOpenError):
            await with_resilience("gemini", _fail, breakers=breakers, policy=_policy(max_retries=0))

    asyncio.run(_run())


def test_with_resilience_consumes_rate_limiter_tokens() -> None:
    breakers = CircuitBreakerRegistry()
    limiters = RateLimiterRegistry()
    limiter = limiters.get("twelve_data", max_tokens=5, window_seconds=3600.0)

    async def _ok() -> int:
        return 1

    async def _run() -> None:
        for _ in range(3):
            await with_resilience("twelve_data", _ok, breakers=breakers, limiters=limiters, policy=_policy())
        await limiters.aclose()

    asyncio.run(_run())
    assert limiter.tokens < 3
    assert limiter.total_requests == 3
