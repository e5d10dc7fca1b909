"""
SQL-backed store built on SQLAlchemy Core.

Tables mirror the trading data model: users (balance), positions (open
paper trades), trades (closed, immutable history), decisions (the AI
decision log) and a single-row bot_status table. Any SQLAlchemy URL works;
the default is a local SQLite file. Every write runs inside
``engine.begin()``, and ``transaction()`` groups several writes into one
commit so a close (balance + trade + delete) is all-or-nothing.
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Iterator, List, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    case,
    create_engine,
    delete,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.pool import StaticPool

from papertrader.models.trade import Account, BotStatus, DecisionRecord, Position, Trade, TradeStats
from papertrader.storage.store import NewPosition, NewTrade


metadata = MetaData()

users_table = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(64), unique=True, default="default"),
    Column("balance", Float, nullable=False),
    Column("updated_at", DateTime(timezone=True)),
)

positions_table = Table(
    "positions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("symbol", String(32), nullable=False, index=True),
    Column("market_type", String(16), nullable=False),
    Column("side", String(8), nullable=False),
    Column("entry_price", Float, nullable=False),
    Column("quantity", Float, nullable=False),
    Column("stop_loss", Float, nullable=False),
    Column("take_profit", Float, nullable=False),
    Column("entry_reason", Text, nullable=False, default=""),
    Column("opened_at", DateTime(timezone=True), nullable=False),
)

trades_table = Table(
    "trades",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("symbol", String(32), nullable=False, index=True),
    Column("market_type", String(16), nullable=False),
    Column("side", String(8), nullable=False),
    Column("entry_price", Float, nullable=False),
    Column("exit_price", Float, nullable=False),
    Column("quantity", Float, nullable=False),
    Column("profit_loss", Float, nullable=False),
    Column("profit_loss_percent", Float, nullable=False),
    Column("entry_reason", Text),
    Column("exit_reason", Text),
    Column("opened_at", DateTime(timezone=True), nullable=False),
    Column("closed_at", DateTime(timezone=True), nullable=False, index=True),
)

decisions_table = Table(
    "decisions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, default=1),
    Column("symbol", String(32), nullable=False, index=True),
    Column("market_type", String(16), nullable=False),
    Column("current_price", Float),
    Column("ema_short", Float),
    Column("ema_long", Float),
    Column("rsi", Float),
    Column("recommendation", String(8), nullable=False),
    Column("confidence", String(8)),
    Column("reasoning", Text, nullable=False),
    Column("action_taken", String(32)),
    Column("ai_model", String(32)),
    Column("created_at", DateTime(timezone=True), nullable=False, index=True),
)

bot_status_table = Table(
    "bot_status",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("is_running", Boolean, nullable=False, default=False),
    Column("trades_today", Integer, nullable=False, default=0),
    Column("trades_date", String(10)),
    Column("last_trade_at", DateTime(timezone=True)),
    Column("last_check_at", DateTime(timezone=True)),
)


def _utc(ts: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything we write is UTC.
    if ts is None:
        return None
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _row_to_position(row: Any) -> Position:
    return Position(
        position_id=row.id,
        user_id=row.user_id,
        symbol=row.symbol,
        market_type=row.market_type,
        side=row.side,
        entry_price=row.entry_price,
        quantity=row.quantity,
        stop_loss=row.stop_loss,
        take_profit=row.take_profit,
        opened_at=_utc(row.opened_at),
        entry_reason=row.entry_reason or "",
    )


def _row_to_trade(row: Any) -> Trade:
    return Trade(
        trade_id=row.id,
        user_id=row.user_id,
        symbol=row.symbol,
        market_type=row.market_type,
        side=row.side,
        entry_price=row.entry_price,
        exit_price=row.exit_price,
        quantity=row.quantity,
        profit_loss=row.profit_loss,
        profit_loss_percent=row.profit_loss_percent,
        entry_reason=row.entry_reason or "",
        exit_reason=row.exit_reason or "",
        opened_at=_utc(row.opened_at),
        closed_at=_utc(row.closed_at),
    )


@dataclass
class SqlStore:
    engine: Engine
    initial_balance: float = 10_000.0

    _tx: Optional[Connection] = field(default=None, init=False, repr=False)

    @classmethod
    def from_url(cls, url: str, initial_balance: float = 10_000.0) -> "SqlStore":
        if url in {"sqlite://", "sqlite:///:memory:"}:
            # One shared connection, otherwise every checkout sees an empty database.
            engine = create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
        else:
            if url.startswith("sqlite:///"):
                db_dir = os.path.dirname(url[len("sqlite:///"):])
                if db_dir:
                    os.makedirs(db_dir, exist_ok=True)
            engine = create_engine(url)
        return cls(engine=engine, initial_balance=initial_balance)

    def initialize(self) -> None:
        """Create tables and seed the default user and status row."""
        metadata.create_all(self.engine)
        with self.engine.begin() as conn:
            if conn.execute(select(users_table.c.id).where(users_table.c.id == 1)).first() is None:
                conn.execute(
                    insert(users_table).values(
                        id=1, username="default", balance=self.initial_balance, updated_at=_utcnow()
                    )
                )
            if conn.execute(select(bot_status_table.c.id).where(bot_status_table.c.id == 1)).first() is None:
                conn.execute(insert(bot_status_table).values(id=1, is_running=False, trades_today=0))

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if self._tx is not None:
            raise RuntimeError("Transaction already in progress")
        with self.engine.begin() as conn:
            self._tx = conn
            try:
                yield
            finally:
                self._tx = None

    @contextmanager
    def _connect(self) -> Iterator[Connection]:
        if self._tx is not None:
            yield self._tx
            return
        with self.engine.begin() as conn:
            yield conn

    # -- accounts -----------------------------------------------------------

    def get_account(self, user_id: int = 1) -> Account:
        with self._connect() as conn:
            row = conn.execute(select(users_table).where(users_table.c.id == user_id)).first()
        if row is None:
            raise LookupError(f"Unknown user {user_id}")
        return Account(user_id=row.id, balance=row.balance)

    def set_balance(self, user_id: int, balance: float) -> None:
        with self._connect() as conn:
            conn.execute(
                update(users_table)
                .where(users_table.c.id == user_id)
                .values(balance=float(balance), updated_at=_utcnow())
            )

    # -- positions ----------------------------------------------------------

    def get_positions(self, user_id: int = 1) -> List[Position]:
        stmt = (
            select(positions_table)
            .where(positions_table.c.user_id == user_id)
            .order_by(positions_table.c.opened_at.desc(), positions_table.c.id.desc())
        )
        with self._connect() as conn:
            return [_row_to_position(r) for r in conn.execute(stmt)]

    def get_position(self, position_id: int) -> Optional[Position]:
        with self._connect() as conn:
            row = conn.execute(select(positions_table).where(positions_table.c.id == position_id)).first()
        return _row_to_position(row) if row is not None else None

    def get_position_by_symbol(self, symbol: str, user_id: int = 1) -> Optional[Position]:
        stmt = select(positions_table).where(
            positions_table.c.user_id == user_id,
            positions_table.c.symbol == symbol,
        )
        with self._connect() as conn:
            row = conn.execute(stmt).first()
        return _row_to_position(row) if row is not None else None

    def insert_position(self, position: NewPosition) -> Position:
        opened_at = position.opened_at or _utcnow()
        with self._connect() as conn:
            result = conn.execute(
                insert(positions_table).values(
                    user_id=position.user_id,
                    symbol=position.symbol,
                    market_type=position.market_type,
                    side=position.side,
                    entry_price=position.entry_price,
                    quantity=position.quantity,
                    stop_loss=position.stop_loss,
                    take_profit=position.take_profit,
                    entry_reason=position.entry_reason,
                    opened_at=opened_at,
                )
            )
            position_id = result.inserted_primary_key[0]

        return Position(
            position_id=position_id,
            user_id=position.user_id,
            symbol=position.symbol,
            market_type=position.market_type,
            side=position.side,
            entry_price=position.entry_price,
            quantity=position.quantity,
            stop_loss=position.stop_loss,
            take_profit=position.take_profit,
            opened_at=opened_at,
            entry_reason=position.entry_reason,
        )

    def delete_position(self, position_id: int) -> None:
        with self._connect() as conn:
            conn.execute(delete(positions_table).where(positions_table.c.id == position_id))

    def clear_positions(self, user_id: int = 1) -> None:
        with self._connect() as conn:
            conn.execute(delete(positions_table).where(positions_table.c.user_id == user_id))

    # -- trades -------------------------------------------------------------

    def insert_trade(self, trade: NewTrade) -> Trade:
        closed_at = trade.closed_at or _utcnow()
        with self._connect() as conn:
            result = conn.execute(
                insert(trades_table).values(
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
                    closed_at=closed_at,
                )
            )
            trade_id = result.inserted_primary_key[0]

        return Trade(
            trade_id=trade_id,
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
            closed_at=closed_at,
        )

    def get_trades(self, user_id: int = 1, limit: int = 50) -> List[Trade]:
        stmt = (
            select(trades_table)
            .where(trades_table.c.user_id == user_id)
            .order_by(trades_table.c.closed_at.desc(), trades_table.c.id.desc())
            .limit(limit)
        )
        with self._connect() as conn:
            return [_row_to_trade(r) for r in conn.execute(stmt)]

    def get_trades_between(self, start: datetime, end: datetime, user_id: int = 1) -> List[Trade]:
        stmt = (
            select(trades_table)
            .where(
                trades_table.c.user_id == user_id,
                trades_table.c.closed_at >= start.astimezone(timezone.utc),
                trades_table.c.closed_at < end.astimezone(timezone.utc),
            )
            .order_by(trades_table.c.closed_at, trades_table.c.id)
        )
        with self._connect() as conn:
            return [_row_to_trade(r) for r in conn.execute(stmt)]

    def get_trade_stats(self, user_id: int = 1) -> TradeStats:
        t = trades_table.c
        stmt = select(
            func.count(t.id),
            func.sum(case((t.profit_loss > 0, 1), else_=0)),
            func.sum(t.profit_loss),
            func.avg(t.profit_loss_percent),
        ).where(t.user_id == user_id)
        with self._connect() as conn:
            total, wins, pnl, avg_pct = conn.execute(stmt).one()
        return TradeStats(
            total_trades=int(total or 0),
            winning_trades=int(wins or 0),
            total_profit_loss=float(pnl or 0.0),
            avg_profit_loss_percent=float(avg_pct or 0.0),
        )

    def clear_trades(self, user_id: int = 1) -> None:
        with self._connect() as conn:
            conn.execute(delete(trades_table).where(trades_table.c.user_id == user_id))

    # -- bot status ---------------------------------------------------------

    def get_bot_status(self) -> BotStatus:
        with self._connect() as conn:
            row = conn.execute(select(bot_status_table).where(bot_status_table.c.id == 1)).first()
        if row is None:
            return BotStatus()
        return BotStatus(
            is_running=bool(row.is_running),
            trades_today=row.trades_today or 0,
            trades_date=row.trades_date,
            last_trade_at=_utc(row.last_trade_at),
            last_check_at=_utc(row.last_check_at),
        )

    def set_running(self, is_running: bool) -> None:
        self._update_status(is_running=is_running)

    def increment_trades_today(self, now: datetime) -> None:
        c = bot_status_table.c
        with self._connect() as conn:
            conn.execute(
                update(bot_status_table)
                .where(c.id == 1)
                .values(
                    trades_today=c.trades_today + 1,
                    trades_date=func.coalesce(c.trades_date, now.date().isoformat()),
                    last_trade_at=now,
                )
            )

    def reset_daily_trades(self, today: date) -> None:
        self._update_status(trades_today=0, trades_date=today.isoformat())

    def update_last_check(self, now: datetime) -> None:
        self._update_status(last_check_at=now)

    def _update_status(self, **values: Any) -> None:
        with self._connect() as conn:
            conn.execute(update(bot_status_table).where(bot_status_table.c.id == 1).values(**values))

    # -- decisions ----------------------------------------------------------

    def insert_decision(self, decision: DecisionRecord) -> None:
        with self._connect() as conn:
            conn.execute(
                insert(decisions_table).values(
                    user_id=decision.user_id,
                    symbol=decision.symbol,
                    market_type=decision.market_type,
                    current_price=decision.current_price,
                    ema_short=decision.ema_short,
                    ema_long=decision.ema_long,
                    rsi=decision.rsi,
                    recommendation=decision.recommendation,
                    confidence=decision.confidence,
                    reasoning=decision.reasoning,
                    action_taken=decision.action_taken,
                    ai_model=decision.ai_model,
                    created_at=decision.created_at,
                )
            )

    def get_decisions(self, limit: int = 50) -> List[DecisionRecord]:
        stmt = (
            select(decisions_table)
            .order_by(decisions_table.c.created_at.desc(), decisions_table.c.id.desc())
            .limit(limit)
        )
        with self._connect() as conn:
            rows = conn.execute(stmt).all()
        return [
            DecisionRecord(
                symbol=r.symbol,
                market_type=r.market_type,
                current_price=r.current_price,
                ema_short=r.ema_short,
                ema_long=r.ema_long,
                rsi=r.rsi,
                recommendation=r.recommendation,
                confidence=r.confidence or "",
                reasoning=r.reasoning,
                action_taken=r.action_taken or "",
                ai_model=r.ai_model or "",
                created_at=_utc(r.created_at),
                user_id=r.user_id,
            )
            for r in rows
        ]
