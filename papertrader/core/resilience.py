from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, TypeVar

from papertrader.core.errors import CircuitOpenError, QuotaExceededError
from papertrader.core.rate_limiter import RateLimiterRegistry


T = TypeVar("T")


class Logger(Protocol):
    def log_debug(self, message: str) -> None: ...

    def log_info(self, message: str) -> None: ...

    def log_warning(self, message: str) -> None: ...

    def log_error(self, message: str) -> None: ...


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class CircuitBreaker:
    """Three-state failure isolator for one external service.

    CLOSED -> OPEN after failure_threshold consecutive failures.
    OPEN -> HALF_OPEN once reset_timeout seconds have passed; the call that
    observes this is admitted as the first trial request.
    HALF_OPEN -> CLOSED after half_open_requests successes, back to OPEN on
    any failure.
    """

    name: str
    failure_threshold: int = 5
    reset_timeout: float = 60.0
    half_open_requests: int = 1
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    logger: Optional[Logger] = field(default=None, repr=False)

    state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    failure_count: int = field(default=0, init=False)
    success_count: int = field(default=0, init=False)
    trial_count: int = field(default=0, init=False)
    last_failure_time: Optional[float] = field(default=None, init=False)
    next_attempt_time: Optional[float] = field(default=None, init=False)

    def can_attempt(self) -> bool:
        if self.state is CircuitState.CLOSED:
            return True

        if self.state is CircuitState.OPEN:
            if self.next_attempt_time is not None and self.clock() >= self.next_attempt_time:
                self.state = CircuitState.HALF_OPEN
                self.success_count = 0
                self.trial_count = 1
                if self.logger:
                    self.logger.log_info(f"Circuit breaker {self.name} entering HALF_OPEN state")
                return True
            return False

        if self.trial_count < self.half_open_requests:
            self.trial_count += 1
            return True
        return False

    def record_success(self) -> None:
        self.failure_count = 0

        if self.state is CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.half_open_requests:
                self._close()
                if self.logger:
                    self.logger.log_info(f"Circuit breaker {self.name} closed after successful recovery")

    def record_failure(self) -> None:
        now = self.clock()
        self.failure_count += 1
        self.last_failure_time = now

        if self.state is CircuitState.HALF_OPEN:
            self._open(self.reset_timeout)
            if self.logger:
                self.logger.log_warning(f"Circuit breaker {self.name} reopened after failure in HALF_OPEN state")
            return

        if self.failure_count >= self.failure_threshold:
            self._open(self.reset_timeout)
            if self.logger:
                self.logger.log_warning(
                    f"Circuit breaker {self.name} opened after {self.failure_count} failures "
                    f"(retry in {self.reset_timeout:.0f}s)"
                )

    def trip(self, cooldown: float) -> None:
        """Force the breaker open for cooldown seconds regardless of the failure count."""
        self.failure_count += 1
        self.last_failure_time = self.clock()
        self._open(cooldown)
        if self.logger:
            self.logger.log_warning(f"Circuit breaker {self.name} tripped for {cooldown:.0f}s")

    def reset(self) -> None:
        self._close()
        self.failure_count = 0
        self.last_failure_time = None

    def snapshot(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure_time": self.last_failure_time,
            "next_attempt_time": self.next_attempt_time,
        }

    def _open(self, cooldown: float) -> None:
        self.state = CircuitState.OPEN
        self.next_attempt_time = self.clock() + cooldown
        self.success_count = 0
        self.trial_count = 0

    def _close(self) -> None:
        self.state = CircuitState.CLOSED
        self.next_attempt_time = None
        self.success_count = 0
        self.trial_count = 0


@dataclass
class CircuitBreakerRegistry:
    failure_threshold: int = 5
    reset_timeout: float = 60.0
    half_open_requests: int = 1
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    logger: Optional[Logger] = field(default=None, repr=False)

    _breakers: Dict[str, CircuitBreaker] = field(default_factory=dict, init=False)

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name=name,
                failure_threshold=self.failure_threshold,
                reset_timeout=self.reset_timeout,
                half_open_requests=self.half_open_requests,
                clock=self.clock,
                logger=self.logger,
            )
            self._breakers[name] = breaker
        return breaker

    def reset(self, name: str) -> None:
        breaker = self._breakers.get(name)
        if breaker is not None:
            breaker.reset()
            if self.logger:
                self.logger.log_info(f"Circuit breaker {name} manually reset")

    def snapshot(self) -> List[Dict[str, Any]]:
        return [b.snapshot() for b in self._breakers.values()]


def _is_retryable(error: BaseException) -> bool:
    return not isinstance(error, (QuotaExceededError, CircuitOpenError))


@dataclass
class RetryPolicy:
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.1

    is_retryable: Callable[[BaseException], bool] = field(default=_is_retryable, repr=False)
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)
    rng: random.Random = field(default_factory=random.Random, repr=False)
    logger: Optional[Logger] = field(default=None, repr=False)

    def calculate_delay(self, attempt: int) -> float:
        delay = min(self.initial_delay * (self.backoff_multiplier ** attempt), self.max_delay)
        return delay + delay * self.jitter_factor * self.rng.random()

    async def execute(self, operation: Callable[[], Awaitable[T]], context: str = "operation") -> T:
        attempt = 0
        while True:
            try:
                return await operation()
            except Exception as e:
                if not self.is_retryable(e):
                    raise

                if attempt >= self.max_retries:
                    if self.logger:
                        self.logger.log_error(f"Max retries exceeded for {context}: {e}")
                    raise

                delay = self.calculate_delay(attempt)
                attempt += 1
                if self.logger:
                    self.logger.log_debug(
                        f"Retry {context} attempt={attempt}/{self.max_retries} delay={delay:.2f}s error={e}"
                    )
                await self.sleep(delay)


async def with_resilience(
    service_name: str,
    operation: Callable[[], Awaitable[T]],
    *,
    breakers: CircuitBreakerRegistry,
    limiters: Optional[RateLimiterRegistry] = None,
    policy: Optional[RetryPolicy] = None,
    quota_cooldown: float = 600.0,
    logger: Optional[Logger] = None,
) -> T:
    """Run operation behind the service's circuit breaker, rate limiter and retry policy.

    Raises CircuitOpenError without calling operation while the breaker is open.
    QuotaExceededError is not retried: it trips the breaker for quota_cooldown
    seconds and propagates.
    """

    breaker = breakers.get(service_name)
    if not breaker.can_attempt():
        if logger:
            logger.log_warning(f"Circuit breaker open for {service_name}, skipping call")
        raise CircuitOpenError(service_name)

    limiter = limiters.find(service_name) if limiters is not None else None

    async def _attempt() -> T:
        if limiter is not None:
            await limiter.acquire()
        return await operation()

    policy = policy or RetryPolicy()
    try:
        result = await policy.execute(_attempt, context=service_name)
    except QuotaExceededError as e:
        if logger:
            logger.log_warning(f"{service_name} quota exceeded: {e}")
        breaker.trip(quota_cooldown)
        raise
    except Exception:
        breaker.record_failure()
        raise

    breaker.record_success()
    return result
