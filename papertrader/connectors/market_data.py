from __future__ import annotations

import asyncio
import random
import time
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import requests

from papertrader.core.errors import ExternalServiceError, QuotaExceededError
from papertrader.core.rate_limiter import RateLimiterRegistry
from papertrader.core.resilience import CircuitBreakerRegistry, Logger, RetryPolicy, with_resilience
from papertrader.models.market import Candle, MarketSnapshot, Quote


SERVICE_NAME = "twelve_data"

# market_type -> (interval, outputsize)
_SERIES_PARAMS: Dict[str, Tuple[str, int]] = {
    "stock": ("1day", 200),
    "forex": ("1h", 720),
    "crypto": ("1h", 720),
}


@dataclass
class MarketDataClient:
    """Quotes and candle history from TwelveData.

    Every HTTP call goes through the shared circuit breaker, the
    twelve_data rate limiter and the retry policy. Results are cached
    (quotes 60s, candles 300s) and identical in-flight requests share one
    call.
    """

    api_key: str = ""
    host: str = "https://api.twelvedata.com"
    mock_mode: bool = True

    breakers: CircuitBreakerRegistry = field(default_factory=CircuitBreakerRegistry)
    limiters: RateLimiterRegistry = field(default_factory=RateLimiterRegistry)
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    quota_cooldown: float = 600.0

    quote_ttl: float = 60.0
    candle_ttl: float = 300.0
    request_timeout: float = 15.0
    logger: Optional[Logger] = field(default=None, repr=False)

    _cache: Dict[str, Tuple[float, Any]] = field(default_factory=dict, init=False, repr=False)
    _pending: Dict[str, "asyncio.Future[Any]"] = field(default_factory=dict, init=False, repr=False)
    _mock_ticks: Dict[str, int] = field(default_factory=dict, init=False, repr=False)

    async def get_market_data(self, symbol: str, market_type: str) -> MarketSnapshot:
        if market_type not in _SERIES_PARAMS:
            raise ValueError(f"Unknown market type: {market_type!r}")

        # Sequential: a half-open breaker admits one trial call at a time.
        quote = await self.get_quote(symbol)
        candles = await self.get_candles(symbol, market_type)
        return MarketSnapshot(quote=quote, candles=candles)

    async def get_quote(self, symbol: str) -> Quote:
        if self.mock_mode:
            return _mock_quote(symbol, self._next_mock_tick(symbol))
        return await self._cached(f"quote:{symbol}", self.quote_ttl, lambda: self._fetch_quote(symbol))

    async def get_candles(self, symbol: str, market_type: str) -> List[Candle]:
        interval, size = _SERIES_PARAMS[market_type]
        if self.mock_mode:
            return _mock_candles(symbol, size=min(size, 120), interval=interval)
        return await self._cached(
            f"candles:{symbol}:{interval}:{size}",
            self.candle_ttl,
            lambda: self._fetch_candles(symbol, interval, size),
        )

    def clear_cache(self) -> None:
        self._cache.clear()

    async def _cached(self, key: str, ttl: float, fetch: Callable[[], Awaitable[Any]]) -> Any:
        hit = self._cache.get(key)
        if hit is not None and time.monotonic() - hit[0] < ttl:
            return hit[1]

        pending = self._pending.get(key)
        if pending is not None:
            return await pending

        task = asyncio.ensure_future(fetch())
        self._pending[key] = task
        try:
            value = await task
        finally:
            self._pending.pop(key, None)

        self._cache[key] = (time.monotonic(), value)
        return value

    async def _fetch_quote(self, symbol: str) -> Quote:
        data = await self._get_json("/quote", {"symbol": symbol})
        return _parse_quote(symbol, data)

    async def _fetch_candles(self, symbol: str, interval: str, size: int) -> List[Candle]:
        data = await self._get_json("/time_series", {"symbol": symbol, "interval": interval, "outputsize": size})
        return _parse_candles(data)

    async def _get_json(self, path: str, params: Dict[str, Any]) -> Any:
        query = dict(params, apikey=self.api_key)

        def _do() -> Any:
            try:
                resp = requests.get(f"{self.host}{path}", params=query, timeout=self.request_timeout)
            except requests.RequestException as e:
                raise ExternalServiceError(f"TwelveData request failed: {e}") from e

            if resp.status_code == 429:
                raise QuotaExceededError("TwelveData quota exceeded", status_code=429)
            if resp.status_code >= 400:
                raise ExternalServiceError(f"TwelveData HTTP {resp.status_code}", status_code=resp.status_code)

            payload = resp.json()
            if isinstance(payload, dict) and payload.get("status") == "error":
                code = payload.get("code")
                message = str(payload.get("message") or "unknown error")
                if code == 429:
                    raise QuotaExceededError(message, status_code=429)
                raise ExternalServiceError(message, status_code=code if isinstance(code, int) else None)
            return payload

        async def _call() -> Any:
            return await asyncio.to_thread(_do)

        return await with_resilience(
            SERVICE_NAME,
            _call,
            breakers=self.breakers,
            limiters=self.limiters,
            policy=self.retry_policy,
            quota_cooldown=self.quota_cooldown,
            logger=self.logger,
        )

    def _next_mock_tick(self, symbol: str) -> int:
        tick = self._mock_ticks.get(symbol, 0)
        self._mock_ticks[symbol] = tick + 1
        return tick


def _to_float(x: Any, default: float = 0.0) -> float:
    try:
        return float(x)
    except (TypeError, ValueError):
        return default


def _parse_quote(symbol: str, data: Any) -> Quote:
    if not isinstance(data, dict):
        raise ExternalServiceError(f"Unexpected quote payload for {symbol}")

    price = _to_float(data.get("close"))
    if price <= 0:
        raise ExternalServiceError(f"No price in quote for {symbol}")

    ts = data.get("timestamp")
    timestamp = (
        datetime.fromtimestamp(int(ts), tz=timezone.utc) if ts is not None else datetime.now(timezone.utc)
    )

    return Quote(
        symbol=symbol,
        price=price,
        timestamp=timestamp,
        open=_to_float(data.get("open")),
        high=_to_float(data.get("high")),
        low=_to_float(data.get("low")),
        previous_close=_to_float(data.get("previous_close")),
        change=_to_float(data.get("change")),
        change_percent=_to_float(data.get("percent_change")),
    )


def _parse_candles(data: Any) -> List[Candle]:
    values = data.get("values") if isinstance(data, dict) else None
    if not isinstance(values, list):
        raise ExternalServiceError("Unexpected time_series payload")

    candles: List[Candle] = []
    # TwelveData returns newest first.
    for v in reversed(values):
        if not isinstance(v, dict):
            continue
        raw_dt = str(v.get("datetime") or "")
        try:
            ts = datetime.fromisoformat(raw_dt)
        except ValueError:
            continue
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        candles.append(
            Candle(
                timestamp=ts,
                open=_to_float(v.get("open")),
                high=_to_float(v.get("high")),
                low=_to_float(v.get("low")),
                close=_to_float(v.get("close")),
                volume=_to_float(v.get("volume")),
            )
        )
    return candles


def _mock_base_price(symbol: str) -> float:
    seed = zlib.crc32(symbol.encode("utf-8"))
    if "/" in symbol:
        base, _, quote = symbol.partition("/")
        if quote == "JPY":
            return 140.0 + seed % 20
        if base in {"BTC", "ETH", "SOL"}:
            return 1_000.0 + seed % 50_000
        return 0.6 + (seed % 900) / 1000.0
    return 50.0 + seed % 450


def _mock_candles(symbol: str, size: int, interval: str) -> List[Candle]:
    rng = random.Random(zlib.crc32(f"{symbol}:{interval}".encode("utf-8")))
    step = timedelta(days=1) if interval == "1day" else timedelta(hours=1)
    end = datetime(2024, 1, 1, tzinfo=timezone.utc)

    price = _mock_base_price(symbol)
    out: List[Candle] = []
    for i in range(size):
        open_ = price
        price = max(price * (1.0 + rng.uniform(-0.015, 0.016)), 1e-6)
        high = max(open_, price) * (1.0 + rng.uniform(0.0, 0.005))
        low = min(open_, price) * (1.0 - rng.uniform(0.0, 0.005))
        out.append(
            Candle(
                timestamp=end - step * (size - 1 - i),
                open=open_,
                high=high,
                low=low,
                close=price,
                volume=float(rng.randint(1_000, 1_000_000)),
            )
        )
    return out


def _mock_quote(symbol: str, tick: int) -> Quote:
    candles = _mock_candles(symbol, size=120, interval="1day")
    last = candles[-1].close
    rng = random.Random(zlib.crc32(f"{symbol}:{tick}".encode("utf-8")))
    price = last * (1.0 + rng.uniform(-0.01, 0.01))
    return Quote(
        symbol=symbol,
        price=price,
        timestamp=datetime.now(timezone.utc),
        open=candles[-1].open,
        high=max(candles[-1].high, price),
        low=min(candles[-1].low, price),
        previous_close=last,
        change=price - last,
        change_percent=(price - last) / last * 100.0,
    )
