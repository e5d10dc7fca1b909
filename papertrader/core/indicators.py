from __future__ import annotations

from typing import List, Optional, Sequence

from papertrader.core.config import IndicatorSettings
from papertrader.models.market import Candle, IndicatorAnalysis, Indicators, Macd


def calculate_ema(prices: Sequence[float], period: int) -> List[float]:
    """EMA series seeded with the SMA of the first `period` prices."""
    if period <= 0:
        raise ValueError("period must be > 0")
    if len(prices) < period:
        raise ValueError(f"Need at least {period} prices to calculate EMA{period}")

    multiplier = 2.0 / (period + 1)
    ema = [sum(prices[:period]) / period]
    for price in prices[period:]:
        ema.append((price - ema[-1]) * multiplier + ema[-1])
    return ema


def _rsi_value(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))


def calculate_rsi(prices: Sequence[float], period: int = 14) -> List[float]:
    """Wilder-smoothed RSI series."""
    if len(prices) < period + 1:
        raise ValueError(f"Need at least {period + 1} prices to calculate RSI")

    changes = [b - a for a, b in zip(prices, prices[1:])]
    gains = [c if c > 0 else 0.0 for c in changes]
    losses = [-c if c < 0 else 0.0 for c in changes]

    avg_gain = sum(gains[:period]) / period
    avg_loss = sum(losses[:period]) / period
    rsi = [_rsi_value(avg_gain, avg_loss)]

    for gain, loss in zip(gains[period:], losses[period:]):
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period
        rsi.append(_rsi_value(avg_gain, avg_loss))

    return rsi


def calculate_macd(
    prices: Sequence[float],
    fast_period: int = 12,
    slow_period: int = 26,
    signal_period: int = 9,
) -> Macd:
    if len(prices) < slow_period + signal_period:
        raise ValueError(f"Need at least {slow_period + signal_period} prices for MACD")

    fast = calculate_ema(prices, fast_period)
    slow = calculate_ema(prices, slow_period)

    # The slow EMA starts later; line up on the slow series.
    offset = slow_period - fast_period
    macd_line = [fast[i + offset] - s for i, s in enumerate(slow)]
    signal_line = calculate_ema(macd_line, signal_period)

    return Macd(
        line=macd_line[-1],
        signal=signal_line[-1],
        histogram=macd_line[-1] - signal_line[-1],
    )


def detect_ema_crossover(short_ema: Sequence[float], long_ema: Sequence[float]) -> str:
    if len(short_ema) < 2 or len(long_ema) < 2:
        return "NO_CROSSOVER"

    current = short_ema[-1] - long_ema[-1]
    previous = short_ema[-2] - long_ema[-2]

    if previous < 0 < current:
        return "BULLISH_CROSSOVER"
    if previous > 0 > current:
        return "BEARISH_CROSSOVER"
    return "NO_CROSSOVER"


def interpret_rsi(rsi: float) -> str:
    if rsi >= 70:
        return "OVERBOUGHT"
    if rsi <= 30:
        return "OVERSOLD"
    if rsi >= 55:
        return "BULLISH_MOMENTUM"
    if rsi <= 45:
        return "BEARISH_MOMENTUM"
    return "NEUTRAL"


def generate_summary(trend: str, crossover: str, rsi_condition: str, rsi: float) -> str:
    parts = [f"The market is in a {trend.lower()}."]
    if crossover == "BULLISH_CROSSOVER":
        parts.append("A bullish EMA crossover just occurred, indicating potential upward momentum.")
    elif crossover == "BEARISH_CROSSOVER":
        parts.append("A bearish EMA crossover just occurred, indicating potential downward momentum.")
    parts.append(f"RSI is at {rsi:.1f}, which is {rsi_condition.lower().replace('_', ' ')}.")
    return " ".join(parts)


def calculate_all(candles: Sequence[Candle], settings: Optional[IndicatorSettings] = None) -> Indicators:
    settings = settings or IndicatorSettings()
    prices = [c.close for c in candles]
    if not prices:
        raise ValueError("No candles to calculate indicators from")

    ema_short = calculate_ema(prices, settings.ema_short)
    ema_long = calculate_ema(prices, settings.ema_long)
    rsi = calculate_rsi(prices, settings.rsi_period)[-1]

    trend = "UPTREND" if ema_short[-1] > ema_long[-1] else "DOWNTREND"
    crossover = detect_ema_crossover(ema_short, ema_long)
    rsi_condition = interpret_rsi(rsi)

    macd: Optional[Macd]
    try:
        macd = calculate_macd(prices)
    except ValueError:
        macd = None

    return Indicators(
        current_price=prices[-1],
        ema_short=ema_short[-1],
        ema_long=ema_long[-1],
        rsi=rsi,
        macd=macd,
        analysis=IndicatorAnalysis(
            trend_direction=trend,
            ema_crossover=crossover,
            rsi_condition=rsi_condition,
            summary=generate_summary(trend, crossover, rsi_condition, rsi),
        ),
    )
