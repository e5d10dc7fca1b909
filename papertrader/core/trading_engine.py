from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Dict, List, Mapping, Optional

from papertrader.core.risk_manager import RiskManager, TradeGate
from papertrader.models.trade import (
    MANUAL,
    MARKET_TYPES,
    SIDES,
    CloseResult,
    DailyStats,
    OpenResult,
    PerformanceSummary,
    Portfolio,
    Position,
    ResetResult,
    Trade,
)
from papertrader.storage.store import NewPosition, NewTrade, Store


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TradingEngine:
    """Paper trading against a virtual balance.

    The balance only moves when a position is closed: opening a position
    records it but does not debit its notional value. Portfolio figures are
    therefore realized P&L plus the entry notional of what is still open.
    """

    store: Store
    risk: RiskManager
    initial_balance: float = 10_000.0
    reset_clears_history: bool = False
    clock: Callable[[], datetime] = field(default=_utcnow, repr=False)

    def can_open_trade(self, symbol: str, market_type: str, balance: Optional[float] = None, user_id: int = 1) -> TradeGate:
        if balance is None:
            balance = self.store.get_account(user_id).balance
        recent = self.store.get_trades(user_id, limit=1)
        return self.risk.can_open_trade(
            symbol,
            market_type,
            balance,
            trades_today=self.store.get_bot_status().trades_today,
            open_position=self.store.get_position_by_symbol(symbol, user_id),
            last_trade=recent[0] if recent else None,
            now=self.clock(),
        )

    def open_position(
        self,
        symbol: str,
        market_type: str,
        side: str,
        entry_price: float,
        reasoning: str = "",
        user_id: int = 1,
    ) -> OpenResult:
        if not symbol:
            raise ValueError("symbol is required")
        if market_type not in MARKET_TYPES:
            raise ValueError(f"Unknown market type: {market_type!r}")
        if side not in SIDES:
            raise ValueError(f"side must be 'long' or 'short', got {side!r}")

        account = self.store.get_account(user_id)

        levels = self.risk.calculate_stop_levels(entry_price, side, market_type)
        if levels.stop_loss <= 0 or levels.take_profit <= 0:
            # Pip distances can exceed a very small entry price.
            return OpenResult(success=False, error="Invalid stop loss")

        size = self.risk.calculate_position_size(account.balance, entry_price, levels.stop_loss, market_type)

        if size.quantity <= 0:
            return OpenResult(success=False, error="Position size too small or insufficient balance")

        now = self.clock()
        with self.store.transaction():
            position = self.store.insert_position(
                NewPosition(
                    user_id=user_id,
                    symbol=symbol,
                    market_type=market_type,
                    side=side,
                    entry_price=float(entry_price),
                    quantity=size.quantity,
                    stop_loss=levels.stop_loss,
                    take_profit=levels.take_profit,
                    entry_reason=reasoning,
                    opened_at=now,
                )
            )
            self.store.increment_trades_today(now)

        return OpenResult(
            success=True,
            position=position,
            position_value=size.position_value,
            risk_amount=size.risk_amount,
            risk_reward_ratio=levels.risk_reward_ratio,
            message=f"Opened {side.upper()} position for {symbol} at ${float(entry_price):.4f}",
            reasoning=reasoning,
        )

    def close_position(self, position_id: int, exit_price: float, reason: str) -> CloseResult:
        position = self.store.get_position(position_id)
        if position is None:
            return CloseResult(success=False, error="Position not found")

        pl = self.risk.calculate_profit_loss(position.entry_price, exit_price, position.quantity, position.side)

        with self.store.transaction():
            account = self.store.get_account(position.user_id)
            new_balance = account.balance + pl.profit_loss
            self.store.set_balance(position.user_id, new_balance)
            trade = self.store.insert_trade(
                NewTrade(
                    user_id=position.user_id,
                    symbol=position.symbol,
                    market_type=position.market_type,
                    side=position.side,
                    entry_price=position.entry_price,
                    exit_price=float(exit_price),
                    quantity=position.quantity,
                    profit_loss=pl.profit_loss,
                    profit_loss_percent=pl.profit_loss_percent,
                    entry_reason=position.entry_reason or "AI recommendation",
                    exit_reason=reason,
                    opened_at=position.opened_at,
                    closed_at=self.clock(),
                )
            )
            self.store.delete_position(position.position_id)

        outcome = "profit" if pl.profit_loss >= 0 else "loss"
        return CloseResult(
            success=True,
            trade=trade,
            new_balance=new_balance,
            message=(
                f"Closed {position.symbol} position with {outcome} of "
                f"${abs(pl.profit_loss):.2f} ({pl.profit_loss_percent:.2f}%)"
            ),
        )

    def check_positions(self, prices: Mapping[str, float], user_id: int = 1) -> List[CloseResult]:
        results: List[CloseResult] = []
        for position in self.store.get_positions(user_id):
            current_price = prices.get(position.symbol)
            if not current_price:
                continue

            signal = self.risk.should_close_position(position, current_price)
            if signal.should_close:
                exit_price = signal.exit_price if signal.exit_price is not None else current_price
                results.append(self.close_position(position.position_id, exit_price, signal.reason or MANUAL))

        return results

    def get_position_by_symbol(self, symbol: str, user_id: int = 1) -> Optional[Position]:
        return self.store.get_position_by_symbol(symbol, user_id)

    def get_portfolio(self, user_id: int = 1, recent_limit: int = 20) -> Portfolio:
        balance = self.store.get_account(user_id).balance
        positions = self.store.get_positions(user_id)
        stats = self.store.get_trade_stats(user_id)

        total_pl = balance - self.initial_balance
        win_rate = (stats.winning_trades / stats.total_trades) * 100 if stats.total_trades else 0.0

        return Portfolio(
            balance=balance,
            initial_balance=self.initial_balance,
            total_profit_loss=round(total_pl, 2),
            total_profit_loss_percent=round((total_pl / self.initial_balance) * 100, 2),
            open_positions=positions,
            open_positions_value=sum(p.notional for p in positions),
            total_trades=stats.total_trades,
            winning_trades=stats.winning_trades,
            win_rate=round(win_rate, 1),
            average_profit_loss_percent=round(stats.avg_profit_loss_percent, 2),
            recent_trades=self.store.get_trades(user_id, limit=recent_limit),
        )

    def get_daily_stats(self, day: Optional[date] = None, user_id: int = 1) -> DailyStats:
        day = day or self.clock().astimezone(timezone.utc).date()
        start = datetime.combine(day, time.min, tzinfo=timezone.utc)
        return _summarize_day(day, self.store.get_trades_between(start, start + timedelta(days=1), user_id))

    def get_stats_range(self, days: int = 30, user_id: int = 1) -> List[DailyStats]:
        """Per-day stats for the last `days` UTC days that had closed trades, newest first."""
        if days <= 0:
            raise ValueError("days must be > 0")

        today = self.clock().astimezone(timezone.utc).date()
        first = today - timedelta(days=days - 1)
        start = datetime.combine(first, time.min, tzinfo=timezone.utc)
        end = datetime.combine(today + timedelta(days=1), time.min, tzinfo=timezone.utc)

        by_day: Dict[date, List[Trade]] = {}
        for trade in self.store.get_trades_between(start, end, user_id):
            by_day.setdefault(trade.closed_at.astimezone(timezone.utc).date(), []).append(trade)

        return [_summarize_day(d, by_day[d]) for d in sorted(by_day, reverse=True)]

    def get_performance_summary(self, days: int = 30, user_id: int = 1) -> PerformanceSummary:
        daily = self.get_stats_range(days, user_id)
        total_trades = sum(d.total_trades for d in daily)
        winning = sum(d.winning_trades for d in daily)
        total_pl = sum(d.profit_loss for d in daily)
        day_pls = [d.profit_loss for d in daily]

        return PerformanceSummary(
            days=days,
            trading_days=len(daily),
            total_trades=total_trades,
            winning_trades=winning,
            total_profit_loss=round(total_pl, 2),
            average_daily_profit_loss=round(total_pl / len(daily), 2) if daily else 0.0,
            best_day=max(day_pls, default=0.0),
            worst_day=min(day_pls, default=0.0),
            win_rate=round((winning / total_trades) * 100, 1) if total_trades else 0.0,
            daily=daily,
        )

    def reset_account(self, user_id: int = 1, clear_history: Optional[bool] = None) -> ResetResult:
        """Reset the balance; optionally also wipe positions, trades and the daily counter."""
        if clear_history is None:
            clear_history = self.reset_clears_history

        with self.store.transaction():
            self.store.set_balance(user_id, self.initial_balance)
            if clear_history:
                self.store.clear_positions(user_id)
                self.store.clear_trades(user_id)
                self.store.reset_daily_trades(self.clock().date())

        scope = "balance, positions and history" if clear_history else "balance"
        return ResetResult(
            success=True,
            balance=self.initial_balance,
            cleared_history=clear_history,
            message=f"Account reset to ${self.initial_balance:,.2f} ({scope})",
        )



def _summarize_day(day: date, trades: List[Trade]) -> DailyStats:
    return DailyStats(
        date=day.isoformat(),
        total_trades=len(trades),
        winning_trades=sum(1 for t in trades if t.is_win),
        profit_loss=round(sum(t.profit_loss for t in trades), 2),
    )
