from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from papertrader.core.config import RiskConfig
from papertrader.models.trade import (
    MARKET_TYPES,
    SIDES,
    STOP_LOSS_HIT,
    TAKE_PROFIT_HIT,
    Position,
    Trade,
)


MAX_TRADES_PER_DAY = "MAX_TRADES_PER_DAY"
NO_DUPLICATE_POSITION = "NO_DUPLICATE_POSITION"
MINIMUM_BALANCE = "MINIMUM_BALANCE"
LOSS_COOLDOWN = "LOSS_COOLDOWN"


@dataclass(frozen=True)
class RiskCheck:
    rule: str
    passed: bool
    message: str


@dataclass(frozen=True)
class TradeGate:
    allowed: bool
    checks: List[RiskCheck]
    summary: str

    def failures(self) -> List[RiskCheck]:
        return [c for c in self.checks if not c.passed]


@dataclass(frozen=True)
class StopLevels:
    stop_loss: float
    take_profit: float
    risk_reward_ratio: float


@dataclass(frozen=True)
class PositionSize:
    quantity: float
    risk_amount: float
    position_value: float = 0.0
    risk_percent: float = 0.0
    error: Optional[str] = None


@dataclass(frozen=True)
class CloseSignal:
    should_close: bool
    reason: Optional[str] = None
    exit_price: Optional[float] = None


@dataclass(frozen=True)
class ProfitLoss:
    profit_loss: float
    profit_loss_percent: float


def _require_price(name: str, value: Any) -> float:
    if value is None or isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{name} must be a number, got {value!r}")
    if not math.isfinite(value) or value <= 0:
        raise ValueError(f"{name} must be > 0")
    return float(value)


def _require_side(side: str) -> str:
    if side not in SIDES:
        raise ValueError(f"side must be 'long' or 'short', got {side!r}")
    return side


def _require_market(market_type: str) -> str:
    if market_type not in MARKET_TYPES:
        raise ValueError(f"Unknown market type: {market_type!r}")
    return market_type


def _floor_to(value: float, decimals: int) -> float:
    factor = 10 ** decimals
    # round() first so 0.29 * 100 = 28.999999999999996 floors to 29.
    return math.floor(round(value * factor, 6)) / factor


def _as_utc(ts: datetime) -> datetime:
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)


@dataclass
class RiskManager:
    """Risk rules and sizing. Stateless apart from its configuration."""

    config: RiskConfig = field(default_factory=RiskConfig)

    def can_open_trade(
        self,
        symbol: str,
        market_type: str,
        balance: float,
        *,
        trades_today: int,
        open_position: Optional[Position] = None,
        last_trade: Optional[Trade] = None,
        now: Optional[datetime] = None,
    ) -> TradeGate:
        """Evaluate every gating rule and report all of them."""
        _require_market(market_type)
        now = now or datetime.now(timezone.utc)
        max_trades = self.config.max_trades_per_day
        checks: List[RiskCheck] = []

        if trades_today >= max_trades:
            checks.append(RiskCheck(MAX_TRADES_PER_DAY, False, f"Maximum {max_trades} trades per day reached"))
        else:
            checks.append(RiskCheck(MAX_TRADES_PER_DAY, True, f"{trades_today}/{max_trades} trades used today"))

        if open_position is not None:
            checks.append(RiskCheck(NO_DUPLICATE_POSITION, False, f"Already have an open position for {symbol}"))
        else:
            checks.append(RiskCheck(NO_DUPLICATE_POSITION, True, f"No existing position for {symbol}"))

        if balance < self.config.min_balance:
            checks.append(RiskCheck(MINIMUM_BALANCE, False, f"Balance (${balance:,.2f}) too low for trading"))
        else:
            checks.append(RiskCheck(MINIMUM_BALANCE, True, f"Balance (${balance:,.2f}) sufficient for trading"))

        if last_trade is not None and last_trade.profit_loss < 0:
            cooldown = timedelta(minutes=self.config.loss_cooldown_minutes)
            if _as_utc(now) - _as_utc(last_trade.closed_at) < cooldown:
                checks.append(
                    RiskCheck(
                        LOSS_COOLDOWN,
                        False,
                        f"Cooldown period after loss - waiting {self.config.loss_cooldown_minutes:g} minutes",
                    )
                )

        allowed = all(c.passed for c in checks)
        return TradeGate(
            allowed=allowed,
            checks=checks,
            summary="All risk checks passed" if allowed else "Risk checks failed",
        )

    def calculate_stop_levels(self, entry_price: float, side: str, market_type: str) -> StopLevels:
        entry_price = _require_price("entry_price", entry_price)
        _require_side(side)
        settings = self.config.for_market(_require_market(market_type))

        if settings.mode == "pips":
            stop_distance = settings.stop_loss_pips * settings.pip_value
            take_distance = settings.take_profit_pips * settings.pip_value
            ratio = settings.take_profit_pips / settings.stop_loss_pips
        else:
            stop_distance = entry_price * settings.stop_loss_percent
            take_distance = entry_price * settings.take_profit_percent
            ratio = settings.take_profit_percent / settings.stop_loss_percent

        if side == "long":
            sl = entry_price - stop_distance
            tp = entry_price + take_distance
        else:
            sl = entry_price + stop_distance
            tp = entry_price - take_distance

        return StopLevels(stop_loss=round(sl, 5), take_profit=round(tp, 5), risk_reward_ratio=ratio)

    def calculate_position_size(
        self,
        balance: float,
        entry_price: float,
        stop_loss_price: float,
        market_type: str,
    ) -> PositionSize:
        entry_price = _require_price("entry_price", entry_price)
        stop_loss_price = _require_price("stop_loss_price", stop_loss_price)
        settings = self.config.for_market(_require_market(market_type))

        if balance <= 0:
            return PositionSize(quantity=0.0, risk_amount=0.0, error="Insufficient balance")

        risk_amount = balance * self.config.max_risk_per_trade
        risk_per_unit = abs(entry_price - stop_loss_price)
        if risk_per_unit == 0:
            return PositionSize(quantity=0.0, risk_amount=0.0, error="Invalid stop loss")

        decimals = settings.quantity_decimals
        quantity = risk_amount / risk_per_unit
        if decimals == 0:
            quantity = float(math.floor(quantity))
        else:
            quantity = round(quantity, decimals)

        cap = balance * self.config.max_position_fraction
        if quantity * entry_price > cap:
            quantity = _floor_to(cap / entry_price, decimals)

        return PositionSize(
            quantity=quantity,
            risk_amount=risk_amount,
            position_value=quantity * entry_price,
            risk_percent=(risk_amount / balance) * 100,
        )

    def should_close_position(self, position: Position, current_price: float) -> CloseSignal:
        current_price = _require_price("current_price", current_price)

        if position.side == "long":
            if current_price <= position.stop_loss:
                return CloseSignal(True, STOP_LOSS_HIT, position.stop_loss)
            if current_price >= position.take_profit:
                return CloseSignal(True, TAKE_PROFIT_HIT, position.take_profit)
        else:
            if current_price >= position.stop_loss:
                return CloseSignal(True, STOP_LOSS_HIT, position.stop_loss)
            if current_price <= position.take_profit:
                return CloseSignal(True, TAKE_PROFIT_HIT, position.take_profit)

        return CloseSignal(False)

    def calculate_profit_loss(self, entry_price: float, exit_price: float, quantity: float, side: str) -> ProfitLoss:
        entry_price = _require_price("entry_price", entry_price)
        exit_price = _require_price("exit_price", exit_price)
        _require_side(side)
        if quantity < 0:
            raise ValueError("quantity must be >= 0")

        if side == "long":
            pnl = (exit_price - entry_price) * quantity
        else:
            pnl = (entry_price - exit_price) * quantity

        direction = 1 if side == "long" else -1
        pct = ((exit_price - entry_price) / entry_price) * 100 * direction

        return ProfitLoss(profit_loss=round(pnl, 2), profit_loss_percent=round(pct, 2))

    def risk_summary(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "max_risk_per_trade": f"{self.config.max_risk_per_trade * 100:g}%",
            "max_trades_per_day": self.config.max_trades_per_day,
            "min_balance": self.config.min_balance,
            "loss_cooldown_minutes": self.config.loss_cooldown_minutes,
        }
        for market, s in self.config.markets.items():
            if s.mode == "pips":
                out[market] = {"stop_loss": f"{s.stop_loss_pips:g} pips", "take_profit": f"{s.take_profit_pips:g} pips"}
            else:
                out[market] = {
                    "stop_loss": f"{s.stop_loss_percent * 100:g}%",
                    "take_profit": f"{s.take_profit_percent * 100:g}%",
                }
        return out
