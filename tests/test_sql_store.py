from datetime import date, datetime, timedelta, timezone

import pytest

from papertrader.core.risk_manager import RiskManager
from papertrader.core.trading_engine import TradingEngine
from papertrader.models.trade import DecisionRecord
from papertrader.storage.sql_store import SqlStore
from papertrader.storage.store import NewTrade


def _store() -> SqlStore:
    store = SqlStore.from_url("sqlite://")
    store.initialize()
    return store


def test_initialize_seeds_account_and_status() -> None:
    store = _store()
    # Idempotent.
    store.initialize()

    assert store.get_account().balance == 10_000.0
    status = store.get_bot_status()
    assert not status.is_running
    assert status.trades_today == 0

    with pytest.raises(LookupError):
        store.get_account(42)


def test_engine_round_trip_on_sqlite() -> None:
    store = _store()
    engine = TradingEngine(store=store, risk=RiskManager())

    opened = engine.open_position("TSLA", "stock", "long", 200.0, "test")
    assert opened.success and opened.position is not None
    assert store.get_position_by_symbol("TSLA") == opened.position
    assert store.get_bot_status().trades_today == 1

    closed = engine.close_position(opened.position.position_id, 220.0, "test")
    assert closed.success
    assert store.get_account().balance == 10_800.0
    assert store.get_position_by_symbol("TSLA") is None

    trades = store.get_trades()
    assert len(trades) == 1
    assert trades[0].exit_reason == "test"
    assert trades[0].closed_at.tzinfo is not None

    stats = store.get_trade_stats()
    assert stats.total_trades == 1
    assert stats.winning_trades == 1
    assert stats.total_profit_loss == 800.0


def test_transaction_rolls_back_on_error() -> None:
    store = _store()

    with pytest.raises(RuntimeError):
        with store.transaction():
            store.set_balance(1, 5.0)
            raise RuntimeError("boom")

    assert store.get_account().balance == 10_000.0

    with store.transaction():
        store.set_balance(1, 5.0)
    assert store.get_account().balance == 5.0


def test_bot_status_counters() -> None:
    store = _store()
    now = datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)

    store.increment_trades_today(now)
    store.increment_trades_today(now)
    store.update_last_check(now)
    store.set_running(True)

    status = store.get_bot_status()
    assert status.trades_today == 2
    assert status.trades_date == "2024-03-01"
    assert status.last_check_at == now
    assert status.is_running

    store.reset_daily_trades(date(2024, 3, 2))
    status = store.get_bot_status()
    assert status.trades_today == 0
    assert status.trades_date == "2024-03-02"


def test_decision_log_newest_first() -> None:
    store = _store()
    for i, symbol in enumerate(["AAPL", "MSFT"]):
        store.insert_decision(
            DecisionRecord(
                symbol=symbol,
                market_type="stock",
                current_price=100.0 + i,
                ema_short=None,
                ema_long=None,
                rsi=None,
                recommendation="HOLD",
                confidence="low",
                reasoning="Signals are mixed.",
                action_taken="HOLD",
                ai_model="rules",
                created_at=datetime(2024, 3, 1, 10, i, tzinfo=timezone.utc),
            )
        )

    decisions = store.get_decisions(limit=10)
    assert [d.symbol for d in decisions] == ["MSFT", "AAPL"]
    assert decisions[0].ema_short is None


def test_trades_between_uses_half_open_range() -> None:
    store = _store()
    day = datetime(2024, 3, 2, tzinfo=timezone.utc)
    for symbol, closed_at in [
        ("LATE", day - timedelta(seconds=1)),
        ("OPEN", day),
        ("NOON", day + timedelta(hours=12)),
        ("NEXT", day + timedelta(days=1)),
    ]:
        store.insert_trade(
            NewTrade(
                user_id=1,
                symbol=symbol,
                market_type="stock",
                side="long",
                entry_price=100.0,
                exit_price=101.0,
                quantity=1.0,
                profit_loss=1.0,
                profit_loss_percent=1.0,
                entry_reason="",
                exit_reason="manual",
                opened_at=closed_at - timedelta(hours=1),
                closed_at=closed_at,
            )
        )

    trades = store.get_trades_between(day, day + timedelta(days=1))
    assert [t.symbol for t in trades] == ["OPEN", "NOON"]
    assert trades[0].closed_at == day
