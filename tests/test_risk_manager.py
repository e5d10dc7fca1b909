from datetime import datetime, timedelta, timezone

import pytest

from papertrader.core.config import RiskConfig
from papertrader.core.risk_manager import (
    LOSS_COOLDOWN,
    MAX_TRADES_PER_DAY,
    MINIMUM_BALANCE,
    NO_DUPLICATE_POSITION,
    RiskManager,
)
from papertrader.models.trade import STOP_LOSS_HIT, TAKE_PROFIT_HIT, Position, Trade


NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _position(side: str = "long", entry: float = 100.0, sl: float = 97.5, tp: float = 110.0) -> Position:
    return Position(
        position_id=1,
        user_id=1,
        symbol="AAPL",
        market_type="stock",
        side=side,
        entry_price=entry,
        quantity=10.0,
        stop_loss=sl,
        take_profit=tp,
        opened_at=NOW,
    )


def _losing_trade(closed_at: datetime) -> Trade:
    return Trade(
        trade_id=1,
        user_id=1,
        symbol="MSFT",
        market_type="stock",
        side="long",
        entry_price=100.0,
        exit_price=97.5,
        quantity=10.0,
        profit_loss=-25.0,
        profit_loss_percent=-2.5,
        entry_reason="",
        exit_reason=STOP_LOSS_HIT,
        opened_at=closed_at - timedelta(hours=1),
        closed_at=closed_at,
    )


def test_stop_levels_stock_long_and_short() -> None:
    rm = RiskManager()

    long_levels = rm.calculate_stop_levels(100.0, "long", "stock")
    assert long_levels.stop_loss == 97.5
    assert long_levels.take_profit == 105.0
    assert long_levels.risk_reward_ratio == 2.0
    assert long_levels.stop_loss < 100.0 < long_levels.take_profit

    short_levels = rm.calculate_stop_levels(100.0, "short", "stock")
    assert short_levels.stop_loss == 102.5
    assert short_levels.take_profit == 95.0
    assert short_levels.take_profit < 100.0 < short_levels.stop_loss


def test_stop_levels_forex_use_pips() -> None:
    rm = RiskManager()
    levels = rm.calculate_stop_levels(1.1, "long", "forex")
    assert levels.stop_loss == 1.0965
    assert levels.take_profit == 1.107
    assert levels.risk_reward_ratio == 2.0


def test_stop_levels_crypto_use_percent() -> None:
    rm = RiskManager()

    long_levels = rm.calculate_stop_levels(30_000.0, "long", "crypto")
    assert long_levels.stop_loss == 28_800.0
    assert long_levels.take_profit == 32_400.0
    assert long_levels.risk_reward_ratio == 2.0

    short_levels = rm.calculate_stop_levels(30_000.0, "short", "crypto")
    assert short_levels.stop_loss == 31_200.0
    assert short_levels.take_profit == 27_600.0


def test_position_size_stock() -> None:
    rm = RiskManager()
    size = rm.calculate_position_size(10_000.0, 100.0, 97.5, "stock")

    assert size.error is None
    assert size.quantity == 80.0
    assert size.risk_amount == 200.0
    assert size.position_value == 8_000.0
    assert size.risk_percent == pytest.approx(2.0)
    assert size.quantity * (100.0 - 97.5) <= 10_000.0 * 0.02


def test_position_size_capped_by_balance_fraction() -> None:
    rm = RiskManager()

    # 20 / 0.1 = 200 shares would cost 20,000 on a 1,000 balance.
    size = rm.calculate_position_size(1_000.0, 100.0, 99.9, "stock")
    assert size.quantity == 9.0
    assert size.position_value <= 1_000.0 * 0.95


def test_position_size_forex_keeps_two_decimals_under_cap() -> None:
    rm = RiskManager()
    size = rm.calculate_position_size(10_000.0, 1.1, 1.0965, "forex")

    assert size.quantity == 8636.36
    assert size.quantity * 1.1 <= 9_500.0


def test_position_size_crypto_keeps_six_decimals() -> None:
    rm = RiskManager()

    size = rm.calculate_position_size(10_000.0, 30_000.0, 28_800.0, "crypto")
    assert size.quantity == 0.166667
    assert size.risk_amount == 200.0

    # 20 / 10 = 2 BTC would cost 60,000 on a 1,000 balance.
    capped = rm.calculate_position_size(1_000.0, 30_000.0, 29_990.0, "crypto")
    assert capped.quantity == 0.031666
    assert capped.position_value <= 1_000.0 * 0.95


def test_position_size_degenerate_inputs() -> None:
    rm = RiskManager()

    same = rm.calculate_position_size(10_000.0, 100.0, 100.0, "stock")
    assert same.quantity == 0.0
    assert same.error == "Invalid stop loss"

    broke = rm.calculate_position_size(0.0, 100.0, 97.5, "stock")
    assert broke.quantity == 0.0
    assert broke.error == "Insufficient balance"


def test_invalid_arguments_raise() -> None:
    rm = RiskManager()

    with pytest.raises(ValueError):
        rm.calculate_stop_levels(100.0, "up", "stock")
    with pytest.raises(ValueError):
        rm.calculate_stop_levels(100.0, "long", "bonds")
    with pytest.raises(ValueError):
        rm.calculate_stop_levels(0.0, "long", "stock")
    with pytest.raises(ValueError):
        rm.calculate_profit_loss(100.0, 110.0, -1.0, "long")


def test_can_open_trade_all_checks_pass_and_is_idempotent() -> None:
    rm = RiskManager()

    first = rm.can_open_trade("AAPL", "stock", 10_000.0, trades_today=0, now=NOW)
    second = rm.can_open_trade("AAPL", "stock", 10_000.0, trades_today=0, now=NOW)

    assert first.allowed
    assert first == second
    assert {c.rule for c in first.checks} == {MAX_TRADES_PER_DAY, NO_DUPLICATE_POSITION, MINIMUM_BALANCE}
    assert first.failures() == []


def test_can_open_trade_blocks_duplicate_position() -> None:
    rm = RiskManager()
    gate = rm.can_open_trade("AAPL", "stock", 10_000.0, trades_today=0, open_position=_position(), now=NOW)

    assert not gate.allowed
    assert [c.rule for c in gate.failures()] == [NO_DUPLICATE_POSITION]


def test_can_open_trade_reports_every_failed_rule() -> None:
    rm = RiskManager(RiskConfig(max_trades_per_day=3, min_balance=100.0))
    gate = rm.can_open_trade("AAPL", "stock", 50.0, trades_today=3, now=NOW)

    assert not gate.allowed
    assert {c.rule for c in gate.failures()} == {MAX_TRADES_PER_DAY, MINIMUM_BALANCE}
    assert gate.failures()[0].message == "Maximum 3 trades per day reached"


def test_loss_cooldown() -> None:
    rm = RiskManager(RiskConfig(loss_cooldown_minutes=15))

    recent = rm.can_open_trade(
        "AAPL", "stock", 10_000.0, trades_today=1, last_trade=_losing_trade(NOW - timedelta(minutes=5)), now=NOW
    )
    assert not recent.allowed
    assert [c.rule for c in recent.failures()] == [LOSS_COOLDOWN]

    old = rm.can_open_trade(
        "AAPL", "stock", 10_000.0, trades_today=1, last_trade=_losing_trade(NOW - timedelta(minutes=20)), now=NOW
    )
    assert old.allowed


def test_profit_loss_long_and_short() -> None:
    rm = RiskManager()

    long_pl = rm.calculate_profit_loss(100.0, 110.0, 10.0, "long")
    assert long_pl.profit_loss == 100.0
    assert long_pl.profit_loss_percent == 10.0

    short_pl = rm.calculate_profit_loss(100.0, 110.0, 10.0, "short")
    assert short_pl.profit_loss == -100.0
    assert short_pl.profit_loss_percent == -10.0


def test_should_close_long_position() -> None:
    rm = RiskManager()
    p = _position()

    stop = rm.should_close_position(p, 97.0)
    assert stop.should_close
    assert stop.reason == STOP_LOSS_HIT
    assert stop.exit_price == 97.5

    take = rm.should_close_position(p, 111.0)
    assert take.should_close
    assert take.reason == TAKE_PROFIT_HIT
    assert take.exit_price == 110.0

    assert not rm.should_close_position(p, 105.0).should_close


def test_should_close_short_position() -> None:
    rm = RiskManager()
    p = _position(side="short", sl=102.5, tp=95.0)

    stop = rm.should_close_position(p, 103.0)
    assert stop.reason == STOP_LOSS_HIT
    assert stop.exit_price == 102.5

    take = rm.should_close_position(p, 94.0)
    assert take.reason == TAKE_PROFIT_HIT
    assert take.exit_price == 95.0

    assert not rm.should_close_position(p, 99.0).should_close
