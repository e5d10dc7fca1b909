from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Literal, Optional


Recommendation = Literal["BUY", "SELL", "HOLD"]
Confidence = Literal["high", "medium", "low"]


@dataclass(frozen=True)
class Quote:
    symbol: str
    price: float
    timestamp: datetime
    open: float = 0.0
    high: float = 0.0
    low: float = 0.0
    previous_close: float = 0.0
    change: float = 0.0
    change_percent: float = 0.0


@dataclass(frozen=True)
class Candle:
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


@dataclass(frozen=True)
class MarketSnapshot:
    quote: Quote
    candles: List[Candle]


@dataclass(frozen=True)
class Macd:
    line: float
    signal: float
    histogram: float


@dataclass(frozen=True)
class IndicatorAnalysis:
    trend_direction: str  # "UPTREND" | "DOWNTREND"
    ema_crossover: str
    rsi_condition: str
    summary: str


@dataclass(frozen=True)
class Indicators:
    current_price: float
    ema_short: float
    ema_long: float
    rsi: float
    analysis: IndicatorAnalysis
    macd: Optional[Macd] = None


@dataclass(frozen=True)
class AIDecision:
    recommendation: Recommendation
    confidence: Confidence
    reasoning: str
    ai_model: str = "gemini"
    error: bool = False
    raw_response: str = field(default="", repr=False)
