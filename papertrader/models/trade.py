from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Literal, Optional


MarketType = Literal["stock", "forex", "crypto"]
Side = Literal["long", "short"]

MARKET_TYPES = frozenset({"stock", "forex", "crypto"})
SIDES = frozenset({"long", "short"})

# Exit reasons. Callers may also pass their own tag (e.g. "manual").
AI_SELL_SIGNAL = "AI_SELL_SIGNAL"
STOP_LOSS_HIT = "STOP_LOSS_HIT"
TAKE_PROFIT_HIT = "TAKE_PROFIT_HIT"
MANUAL = "manual"


@dataclass(frozen=True)
class Position:
    position_id: int
    user_id: int
    symbol: str
    market_type: MarketType
    side: Side
    entry_price: float
    quantity: float
    stop_loss: float
    take_profit: float
    opened_at: datetime
    entry_reason: str = ""

    @property
    def notional(self) -> float:
        return self.entry_price * self.quantity


@dataclass(frozen=True)
class Trade:
    trade_id: int
    user_id: int
    symbol: str
    market_type: MarketType
    side: Side
    entry_price: float
    exit_price: float
    quantity: float
    profit_loss: float
    profit_loss_percent: float
    entry_reason: str
    exit_reason: str
    opened_at: datetime
    closed_at: datetime

    @property
    def is_win(self) -> bool:
        return self.profit_loss > 0


@dataclass(frozen=True)
class Account:
    user_id: int
    balance: float


@dataclass(frozen=True)
class BotStatus:
    is_running: bool = False
    trades_today: int = 0
    trades_date: Optional[str] = None  # ISO date the counter belongs to
    last_trade_at: Optional[datetime] = None
    last_check_at: Optional[datetime] = None


@dataclass(frozen=True)
class TradeStats:
    total_trades: int = 0
    winning_trades: int = 0
    total_profit_loss: float = 0.0
    avg_profit_loss_percent: float = 0.0


@dataclass(frozen=True)
class DecisionRecord:
    symbol: str
    market_type: MarketType
    current_price: Optional[float]
    ema_short: Optional[float]
    ema_long: Optional[float]
    rsi: Optional[float]
    recommendation: str
    confidence: str
    reasoning: str
    action_taken: str
    ai_model: str
    created_at: datetime
    user_id: int = 1


@dataclass(frozen=True)
class OpenResult:
    success: bool
    position: Optional[Position] = None
    position_value: float = 0.0
    risk_amount: float = 0.0
    risk_reward_ratio: float = 0.0
    message: str = ""
    reasoning: str = ""
    error: Optional[str] = None


@dataclass(frozen=True)
class CloseResult:
    success: bool
    trade: Optional[Trade] = None
    new_balance: Optional[float] = None
    message: str = ""
    error: Optional[str] = None


@dataclass(frozen=True)
class ResetResult:
    success: bool
    balance: float
    cleared_history: bool
    message: str


@dataclass(frozen=True)
class Portfolio:
    balance: float
    initial_balance: float
    total_profit_loss: float
    total_profit_loss_percent: float
    open_positions: List[Position]
    open_positions_value: float
    total_trades: int
    winning_trades: int
    win_rate: float
    average_profit_loss_percent: float
    recent_trades: List[Trade] = field(default_factory=list)

    @property
    def open_positions_count(self) -> int:
        return len(self.open_positions)


@dataclass(frozen=True)
class DailyStats:
    """Closed-trade totals for one UTC day."""

    date: str
    total_trades: int = 0
    winning_trades: int = 0
    profit_loss: float = 0.0

    @property
    def win_rate(self) -> float:
        return (self.winning_trades / self.total_trades) * 100 if self.total_trades else 0.0


@dataclass(frozen=True)
class PerformanceSummary:
    days: int
    trading_days: int
    total_trades: int
    winning_trades: int
    total_profit_loss: float
    average_daily_profit_loss: float
    best_day: float
    worst_day: float
    win_rate: float
    daily: List[DailyStats] = field(default_factory=list)
