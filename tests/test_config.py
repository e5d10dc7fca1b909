import dataclasses

import pytest

from papertrader.core.config import DEFAULT_FOREX, DEFAULT_STOCKS, Config


_KEYS = [
    "MOCK_MODE",
    "STOCKS",
    "FOREX",
    "CRYPTO",
    "INITIAL_BALANCE",
    "MAX_RISK_PER_TRADE",
    "FOREX_STOP_LOSS_PIPS",
    "EMA_SHORT",
    "EMA_LONG",
    "TWELVEDATA_API_KEY",
    "GEMINI_API_KEY",
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in _KEYS:
        monkeypatch.delenv(key, raising=False)


def test_defaults(tmp_path) -> None:
    cfg = Config.load(dotenv_path=str(tmp_path / "missing.env"))
    cfg.validate()

    assert cfg.mock_mode
    assert cfg.initial_balance == 10_000.0
    assert cfg.stocks == DEFAULT_STOCKS
    assert cfg.forex == DEFAULT_FOREX
    assert cfg.crypto == ()
    assert cfg.risk.max_trades_per_day == 3
    assert cfg.risk.for_market("forex").stop_loss_pips == 35.0
    assert cfg.twelve_data_max_calls == 7
    assert cfg.symbols()[0] == ("AAPL", "stock")
    assert cfg.symbols()[-1] == ("NZD/USD", "forex")


def test_env_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setenv("STOCKS", "TSLA, NVDA")
    monkeypatch.setenv("FOREX", "")
    monkeypatch.setenv("CRYPTO", "BTC/USD")
    monkeypatch.setenv("MAX_RISK_PER_TRADE", "0.01")
    monkeypatch.setenv("FOREX_STOP_LOSS_PIPS", "20")

    cfg = Config.load(dotenv_path=str(tmp_path / "missing.env"))
    cfg.validate()

    assert cfg.symbols() == (("TSLA", "stock"), ("NVDA", "stock"), ("BTC/USD", "crypto"))
    assert cfg.risk.max_risk_per_trade == 0.01
    assert cfg.risk.for_market("forex").stop_loss_pips == 20.0


def test_validate_rejects_bad_values(tmp_path) -> None:
    cfg = Config.load(dotenv_path=str(tmp_path / "missing.env"))

    with pytest.raises(ValueError):
        dataclasses.replace(cfg, initial_balance=0).validate()
    with pytest.raises(ValueError):
        dataclasses.replace(cfg, stocks=(), forex=(), crypto=()).validate()
    with pytest.raises(ValueError):
        dataclasses.replace(cfg, mock_mode=False, twelve_data_api_key="").validate()

    with pytest.raises(ValueError):
        cfg.risk.for_market("bonds")
