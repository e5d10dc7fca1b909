from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv


DEFAULT_STOCKS = ("AAPL", "MSFT", "NVDA", "SPY", "TSLA", "GOOG", "AMZN", "META", "NFLX", "UBER")
DEFAULT_FOREX = ("EUR/USD", "GBP/USD", "USD/JPY", "AUD/USD", "USD/CAD", "NZD/USD")


def _getenv_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _getenv_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return float(raw)


def _getenv_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return int(raw)


def _getenv_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(s.strip() for s in raw.split(",") if s.strip())


@dataclass(frozen=True)
class MarketRisk:
    """Stop/take settings for one market type.

    mode="percent" uses the *_percent fields as fractions of entry price,
    mode="pips" uses *_pips multiplied by pip_value.
    """

    mode: str = "percent"
    stop_loss_percent: float = 0.025
    take_profit_percent: float = 0.05
    stop_loss_pips: float = 35.0
    take_profit_pips: float = 70.0
    pip_value: float = 0.0001
    quantity_decimals: int = 0


@dataclass(frozen=True)
class RiskConfig:
    max_risk_per_trade: float = 0.02
    max_trades_per_day: int = 3
    min_balance: float = 100.0
    loss_cooldown_minutes: float = 15.0
    max_position_fraction: float = 0.95
    markets: Dict[str, MarketRisk] = field(
        default_factory=lambda: {
            "stock": MarketRisk(mode="percent", stop_loss_percent=0.025, take_profit_percent=0.05),
            "forex": MarketRisk(
                mode="pips",
                stop_loss_pips=35.0,
                take_profit_pips=70.0,
                pip_value=0.0001,
                quantity_decimals=2,
            ),
            "crypto": MarketRisk(
                mode="percent",
                stop_loss_percent=0.04,
                take_profit_percent=0.08,
                quantity_decimals=6,
            ),
        }
    )

    def for_market(self, market_type: str) -> MarketRisk:
        try:
            return self.markets[market_type]
        except KeyError:
            raise ValueError(f"Unknown market type: {market_type!r}") from None


@dataclass(frozen=True)
class IndicatorSettings:
    ema_short: int = 20
    ema_long: int = 50
    rsi_period: int = 14
    rsi_buy_threshold: float = 55.0
    rsi_sell_threshold: float = 45.0


@dataclass(frozen=True)
class Config:
    gemini_api_key: str
    gemini_model: str
    twelve_data_api_key: str
    database_url: str

    initial_balance: float
    risk: RiskConfig
    indicators: IndicatorSettings

    stocks: Tuple[str, ...]
    forex: Tuple[str, ...]
    crypto: Tuple[str, ...]

    autonomy_interval_minutes: float
    symbol_delay_seconds: float

    twelve_data_max_calls: int
    twelve_data_window_seconds: float
    breaker_failure_threshold: int
    breaker_reset_seconds: float
    retry_max_retries: int
    retry_initial_delay: float
    quota_cooldown_seconds: float

    reset_clears_history: bool
    mock_mode: bool
    log_level: str
    log_dir: str

    @classmethod
    def load(cls, dotenv_path: Optional[str] = None) -> "Config":
        load_dotenv(dotenv_path=dotenv_path)

        risk = RiskConfig(
            max_risk_per_trade=_getenv_float("MAX_RISK_PER_TRADE", 0.02),
            max_trades_per_day=_getenv_int("MAX_TRADES_PER_DAY", 3),
            min_balance=_getenv_float("MIN_BALANCE", 100.0),
            loss_cooldown_minutes=_getenv_float("LOSS_COOLDOWN_MINUTES", 15.0),
            max_position_fraction=_getenv_float("MAX_POSITION_FRACTION", 0.95),
            markets={
                "stock": MarketRisk(
                    mode="percent",
                    stop_loss_percent=_getenv_float("STOCK_STOP_LOSS_PERCENT", 0.025),
                    take_profit_percent=_getenv_float("STOCK_TAKE_PROFIT_PERCENT", 0.05),
                ),
                "forex": MarketRisk(
                    mode="pips",
                    stop_loss_pips=_getenv_float("FOREX_STOP_LOSS_PIPS", 35.0),
                    take_profit_pips=_getenv_float("FOREX_TAKE_PROFIT_PIPS", 70.0),
                    pip_value=_getenv_float("FOREX_PIP_VALUE", 0.0001),
                    quantity_decimals=2,
                ),
                "crypto": MarketRisk(
                    mode="percent",
                    stop_loss_percent=_getenv_float("CRYPTO_STOP_LOSS_PERCENT", 0.04),
                    take_profit_percent=_getenv_float("CRYPTO_TAKE_PROFIT_PERCENT", 0.08),
                    quantity_decimals=6,
                ),
            },
        )

        indicators = IndicatorSettings(
            ema_short=_getenv_int("EMA_SHORT", 20),
            ema_long=_getenv_int("EMA_LONG", 50),
            rsi_period=_getenv_int("RSI_PERIOD", 14),
        )

        return cls(
            gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
            gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.0-flash"),
            twelve_data_api_key=os.getenv("TWELVEDATA_API_KEY", ""),
            database_url=os.getenv("DATABASE_URL", "sqlite:///data/trading.db"),
            initial_balance=_getenv_float("INITIAL_BALANCE", 10_000.0),
            risk=risk,
            indicators=indicators,
            stocks=_getenv_list("STOCKS", DEFAULT_STOCKS),
            forex=_getenv_list("FOREX", DEFAULT_FOREX),
            crypto=_getenv_list("CRYPTO", ()),
            autonomy_interval_minutes=_getenv_float("AUTONOMY_INTERVAL_MINUTES", 15.0),
            symbol_delay_seconds=_getenv_float("SYMBOL_DELAY_SECONDS", 5.0),
            twelve_data_max_calls=_getenv_int("TWELVEDATA_MAX_CALLS", 7),
            twelve_data_window_seconds=_getenv_float("TWELVEDATA_WINDOW_SECONDS", 60.0),
            breaker_failure_threshold=_getenv_int("BREAKER_FAILURE_THRESHOLD", 5),
            breaker_reset_seconds=_getenv_float("BREAKER_RESET_SECONDS", 60.0),
            retry_max_retries=_getenv_int("RETRY_MAX_RETRIES", 3),
            retry_initial_delay=_getenv_float("RETRY_INITIAL_DELAY", 1.0),
            quota_cooldown_seconds=_getenv_float("QUOTA_COOLDOWN_SECONDS", 600.0),
            reset_clears_history=_getenv_bool("RESET_CLEARS_HISTORY", False),
            mock_mode=_getenv_bool("MOCK_MODE", True),
            log_level=os.getenv("LOG_LEVEL", "info"),
            log_dir=os.getenv("LOG_DIR", "logs"),
        )

    def symbols(self) -> Tuple[Tuple[str, str], ...]:
        """(symbol, market_type) pairs in processing order."""
        pairs = [(s, "stock") for s in self.stocks]
        pairs += [(s, "forex") for s in self.forex]
        pairs += [(s, "crypto") for s in self.crypto]
        return tuple(pairs)

    def validate(self) -> None:
        if self.initial_balance <= 0:
            raise ValueError("INITIAL_BALANCE must be > 0")
        if not (0 < self.risk.max_risk_per_trade <= 1):
            raise ValueError("MAX_RISK_PER_TRADE must be in (0, 1].")
        if self.risk.max_trades_per_day < 0:
            raise ValueError("MAX_TRADES_PER_DAY must be >= 0")
        if not (0 < self.risk.max_position_fraction <= 1):
            raise ValueError("MAX_POSITION_FRACTION must be in (0, 1].")
        if self.autonomy_interval_minutes <= 0:
            raise ValueError("AUTONOMY_INTERVAL_MINUTES must be > 0")
        if self.symbol_delay_seconds < 0:
            raise ValueError("SYMBOL_DELAY_SECONDS must be >= 0")
        if self.twelve_data_max_calls <= 0 or self.twelve_data_window_seconds <= 0:
            raise ValueError("TWELVEDATA_MAX_CALLS and TWELVEDATA_WINDOW_SECONDS must be > 0")
        if self.breaker_failure_threshold <= 0:
            raise ValueError("BREAKER_FAILURE_THRESHOLD must be > 0")
        if self.indicators.ema_short >= self.indicators.ema_long:
            raise ValueError("EMA_SHORT must be smaller than EMA_LONG")
        if not self.symbols():
            raise ValueError("At least one symbol must be configured")
        if not self.mock_mode:
            if not self.twelve_data_api_key:
                raise ValueError("TWELVEDATA_API_KEY is required when MOCK_MODE is off")
            if not self.gemini_api_key:
                raise ValueError("GEMINI_API_KEY is required when MOCK_MODE is off")
