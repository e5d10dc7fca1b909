from __future__ import annotations

import copy
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from typing import ContextManager, Dict, Iterator, List, Optional, Protocol

from papertrader.models.trade import (
    Account,
    BotStatus,
    DecisionRecord,
    MarketType,
    Position,
    Side,
    Trade,
    TradeStats,
)


@dataclass(frozen=True)
class NewPosition:
    user_id: int
    symbol: str
    market_type: MarketType
    side: Side
    entry_price: float
    quantity: float
    stop_loss: float
    take_profit: float
    entry_reason: str = ""
    opened_at: Optional[datetime] = None


@dataclass(frozen=True)
class NewTrade:
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
    closed_at: Optional[datetime] = None


class Store(Protocol):
    """Persistence operations the trading core depends on."""

    def transaction(self) -> ContextManager[None]: ...

    def get_account(self, user_id: int = 1) -> Account: ...

    def set_balance(self, user_id: int, balance: float) -> None: ...

    def get_positions(self, user_id: int = 1) -> List[Position]: ...

    def get_position(self, position_id: int) -> Optional[Position]: ...

    def get_position_by_symbol(self, symbol: str, user_id: int = 1) -> Optional[Position]: ...

    def insert_position(self, position: NewPosition) -> Position: ...

    def delete_position(self, position_id: int) -> None: ...

    def clear_positions(self, user_id: int = 1) -> None: ...

    def insert_trade(self, trade: NewTrade) -> Trade: ...

    def get_trades(self, user_id: int = 1, limit: int = 50) -> List[Trade]: ...

    def get_trades_between(self, start: datetime, end: datetime, user_id: int = 1) -> List[Trade]:
        """Trades closed in [start, end), oldest first."""
        ...

    def get_trade_stats(self, user_id: int = 1) -> TradeStats: ...

    def clear_trades(self, user_id: int = 1) -> None: ...

    def get_bot_status(self) -> BotStatus: ...

    def set_running(self, is_running: bool) -> None: ...

    def increment_trades_today(self, now: datetime) -> None: ...

    def reset_daily_trades(self, today: date) -> None: ...

    def update_last_check(self, now: datetime) -> None: ...

    def insert_decision(self, decision: DecisionRecord) -> None: ...

    def get_decisions(self, limit: int = 50) -> List[DecisionRecord]: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _MemoryState:
    accounts: Dict[int, float] = field(default_factory=dict)
    positions: Dict[int, Position] = field(default_factory=dict)
    trades: List[Trade] = field(default_factory=list)
    decisions: List[DecisionRecord] = field(default_factory=list)
    status: BotStatus = field(default_factory=BotStatus)
    next_position_id: int = 1
    next_trade_id: int = 1


@dataclass
class MemoryStore:
    """In-process store. transaction() snapshots state and restores it on error."""

    initial_balance: float = 10_000.0

    _state: _MemoryState = field(default_factory=_MemoryState, init=False, repr=False)
    _in_transaction: bool = field(default=False, init=False, repr=False)

    def __post_init__(self) -> None:
        self._state.accounts[1] = float(self.initial_balance)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if self._in_transaction:
            raise RuntimeError("Transaction already in progress")

        snapshot = copy.deepcopy(self._state)
        self._in_transaction = True
        try:
            yield
        except BaseException:
            self._state = snapshot
            raise
        finally:
            self._in_transaction = False

    def get_account(self, user_id: int = 1) -> Account:
        if user_id not in self._state.accounts:
            raise LookupError(f"Unknown user {user_id}")
        return Account(user_id=user_id, balance=self._state.accounts[user_id])

    def set_balance(self, user_id: int, balance: float) -> None:
        self._state.accounts[user_id] = float(balance)

    def get_positions(self, user_id: int = 1) -> List[Position]:
        positions = [p for p in self._state.positions.values() if p.user_id == user_id]
        return sorted(positions, key=lambda p: (p.opened_at, p.position_id), reverse=True)

    def get_position(self, position_id: int) -> Optional[Position]:
        return self._state.positions.get(position_id)

    def get_position_by_symbol(self, symbol: str, user_id: int = 1) -> Optional[Position]:
        for p in self._state.positions.values():
            if p.user_id == user_id and p.symbol == symbol:
                return p
        return None

    def insert_position(self, position: NewPosition) -> Position:
        created = Position(
            position_id=self._state.next_position_id,
            user_id=position.user_id,
            symbol=position.symbol,
            market_type=position.market_type,
            side=position.side,
            entry_price=position.entry_price,
            quantity=position.quantity,
            stop_loss=position.stop_loss,
            take_profit=position.take_profit,
            opened_at=position.opened_at or _utcnow(),
            entry_reason=position.entry_reason,
        )
        self._state.positions[created.position_id] = created
        self._state.next_position_id += 1
        return created

    def delete_position(self, position_id: int) -> None:
        self._state.positions.pop(position_id, None)

    def clear_positions(self, user_id: int = 1) -> None:
        for pid in [pid for pid, p in self._state.positions.items() if p.user_id == user_id]:
            del self._state.positions[pid]

    def insert_trade(self, trade: NewTrade) -> Trade:
        created = Trade(
            trade_id=self._state.next_trade_id,
            user_id=trade.user_id,
            symbol=trade.symbol,
            market_type=trade.market_type,
            side=trade.side,
            entry_price=trade.entry_price,
            exit_price=trade.exit_price,
            quantity=trade.quantity,
            profit_loss=trade.profit_loss,
            profit_loss_percent=trade.profit_loss_percent,
            entry_reason=trade.entry_reason,
            exit_reason=trade.exit_reason,
            opened_at=trade.opened_at,
            closed_at=trade.closed_at or _utcnow(),
        )
        self._state.trades.append(created)
        self._state.next_trade_id += 1
        return created

    def get_trades(self, user_id: int = 1, limit: int = 50) -> List[Trade]:
        trades = [t for t in self._state.trades if t.user_id == user_id]
        trades.sort(key=lambda t: (t.closed_at, t.trade_id), reverse=True)
        return trades[:limit]

    def get_trades_between(self, start: datetime, end: datetime, user_id: int = 1) -> List[Trade]:
        trades = [t for t in self._state.trades if t.user_id == user_id and start <= t.closed_at < end]
        return sorted(trades, key=lambda t: (t.closed_at, t.trade_id))

    def get_trade_stats(self, user_id: int = 1) -> TradeStats:
        trades = [t for t in self._state.trades if t.user_id == user_id]
        if not trades:
            return TradeStats()
        return TradeStats(
            total_trades=len(trades),
            winning_trades=sum(1 for t in trades if t.is_win),
            total_profit_loss=sum(t.profit_loss for t in trades),
            avg_profit_loss_percent=sum(t.profit_loss_percent for t in trades) / len(trades),
        )

    def clear_trades(self, user_id: int = 1) -> None:
        self._state.trades = [t for t in self._state.trades if t.user_id != user_id]

    def get_bot_status(self) -> BotStatus:
        return self._state.status

    def set_running(self, is_running: bool) -> None:
        self._state.status = replace(self._state.status, is_running=is_running)

    def increment_trades_today(self, now: datetime) -> None:
        s = self._state.status
        self._state.status = replace(
            s,
            trades_today=s.trades_today + 1,
            trades_date=s.trades_date or now.date().isoformat(),
            last_trade_at=now,
        )

    def reset_daily_trades(self, today: date) -> None:
        self._state.status = replace(self._state.status, trades_today=0, trades_date=today.isoformat())

    def update_last_check(self, now: datetime) -> None:
        self._state.status = replace(self._state.status, last_check_at=now)

    def insert_decision(self, decision: DecisionRecord) -> None:
        self._state.decisions.append(decision)

    def get_decisions(self, limit: int = 50) -> List[DecisionRecord]:
        return list(reversed(self._state.decisions))[:limit]
