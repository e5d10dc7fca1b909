from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol


class Logger(Protocol):
    def log_debug(self, message: str) -> None: ...

    def log_info(self, message: str) -> None: ...


@dataclass
class TokenBucketRateLimiter:
    """Async token-bucket rate limiter.

    Tokens refill continuously at max_tokens per window_seconds. Callers that
    find the bucket empty wait in FIFO order; a single drain task owned by the
    limiter hands out tokens to them as they regenerate.
    """

    name: str
    max_tokens: int = 8
    window_seconds: float = 60.0
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    logger: Optional[Logger] = field(default=None, repr=False)

    tokens: float = field(init=False)
    last_refill: float = field(init=False)
    total_requests: int = field(default=0, init=False)
    queued_requests: int = field(default=0, init=False)

    _queue: Deque["asyncio.Future[None]"] = field(default_factory=deque, init=False, repr=False)
    _drainer: Optional["asyncio.Task[None]"] = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.tokens = float(self.max_tokens)
        self.last_refill = self.clock()

    @property
    def refill_interval(self) -> float:
        """Time for one token to regenerate."""
        return self.window_seconds / self.max_tokens

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    def refill(self) -> None:
        now = self.clock()
        elapsed = now - self.last_refill

        if elapsed >= self.window_seconds:
            self.tokens = float(self.max_tokens)
        elif elapsed > 0:
            added = (elapsed / self.window_seconds) * self.max_tokens
            self.tokens = min(float(self.max_tokens), self.tokens + added)

        self.last_refill = now

    def try_acquire(self) -> bool:
        self.refill()
        if self.tokens >= 1:
            self.tokens -= 1
            return True
        return False

    async def acquire(self) -> None:
        self.total_requests += 1

        # Only jump straight in when nobody is already waiting.
        if not self._queue and self.try_acquire():
            return

        loop = asyncio.get_running_loop()
        waiter: "asyncio.Future[None]" = loop.create_future()
        self._queue.append(waiter)
        self.queued_requests += 1

        if self.logger:
            self.logger.log_debug(
                f"Rate limiter [{self.name}]: request queued "
                f"(queue={len(self._queue)} tokens={self.tokens:.2f})"
            )

        self._ensure_drainer()
        await waiter

    def _ensure_drainer(self) -> None:
        if self._drainer is None or self._drainer.done():
            self._drainer = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        while self._queue:
            self.refill()

            while self._queue and self.tokens >= 1:
                waiter = self._queue.popleft()
                if waiter.done():
                    # Caller gave up (e.g. wrapped in wait_for); token stays in the bucket.
                    continue
                self.tokens -= 1
                waiter.set_result(None)

            if self._queue:
                await asyncio.sleep(self.refill_interval)

    def status(self) -> Dict[str, Any]:
        self.refill()
        return {
            "name": self.name,
            "tokens_available": int(self.tokens),
            "max_tokens": self.max_tokens,
            "queue_length": len(self._queue),
            "window_seconds": self.window_seconds,
            "stats": {
                "total_requests": self.total_requests,
                "queued_requests": self.queued_requests,
            },
        }

    def reset(self) -> None:
        self.tokens = float(self.max_tokens)
        self.last_refill = self.clock()
        self.total_requests = 0
        self.queued_requests = 0
        if self.logger:
            self.logger.log_info(f"Rate limiter [{self.name}] reset")

    async def aclose(self) -> None:
        """Stop the drain task and cancel anyone still waiting."""
        task, self._drainer = self._drainer, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        while self._queue:
            waiter = self._queue.popleft()
            if not waiter.done():
                waiter.cancel()


@dataclass
class RateLimiterRegistry:
    logger: Optional[Logger] = None

    _limiters: Dict[str, TokenBucketRateLimiter] = field(default_factory=dict, init=False)

    def get(self, name: str, max_tokens: int = 8, window_seconds: float = 60.0) -> TokenBucketRateLimiter:
        limiter = self._limiters.get(name)
        if limiter is None:
            limiter = TokenBucketRateLimiter(
                name=name,
                max_tokens=max_tokens,
                window_seconds=window_seconds,
                logger=self.logger,
            )
            self._limiters[name] = limiter
            if self.logger:
                self.logger.log_info(
                    f"Created rate limiter [{name}] max_tokens={max_tokens} window={window_seconds}s"
                )
        return limiter

    def find(self, name: str) -> Optional[TokenBucketRateLimiter]:
        return self._limiters.get(name)

    def status(self) -> List[Dict[str, Any]]:
        return [limiter.status() for limiter in self._limiters.values()]

    async def aclose(self) -> None:
        for limiter in self._limiters.values():
            await limiter.aclose()
