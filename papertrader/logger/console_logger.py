from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from papertrader.models.market import AIDecision, Indicators
from papertrader.models.trade import Portfolio, Position, Trade


_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

_RECOMMENDATION_STYLES = {"BUY": "bold green", "SELL": "bold red", "HOLD": "yellow"}


def _ts() -> str:
    return datetime.now().strftime("%H:%M:%S")


def _usd(x: float) -> str:
    return f"${x:,.2f}"


@dataclass
class ConsoleLogger:
    log_dir: str = "logs"
    log_file: str = "bot.log"
    log_level: str = "info"

    console: Console = field(default_factory=lambda: Console(encoding="utf-8"), init=False)
    file_logger: logging.Logger = field(default_factory=lambda: logging.getLogger("papertrader"), init=False)
    level: int = field(default=logging.INFO, init=False)

    def __post_init__(self) -> None:
        self.level = _LEVELS.get(self.log_level.strip().lower(), logging.INFO)
        os.makedirs(self.log_dir, exist_ok=True)

        self.file_logger.setLevel(self.level)
        self.file_logger.propagate = False
        self.file_logger.handlers.clear()

        fh = logging.FileHandler(os.path.join(self.log_dir, self.log_file), encoding="utf-8")
        fh.setLevel(self.level)
        fh.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(message)s"))
        self.file_logger.addHandler(fh)

        self._print_header()

    def _print_header(self) -> None:
        title = Text("PAPER TRADER - AI-ASSISTED PAPER TRADING", style="bold cyan")
        self.console.print(Panel(title, expand=False, border_style="cyan"))

    def _log(self, message: str, *, level: int = logging.INFO, style: Optional[str] = None) -> None:
        if level < self.level:
            return
        prefix = f"[{_ts()}] "
        if style:
            self.console.print(prefix + message, style=style)
        else:
            self.console.print(prefix + message)
        self.file_logger.log(level, message)

    def log_cycle_start(self, symbol_count: int) -> None:
        self._log(f"=== Starting analysis cycle | {symbol_count} symbols ===", style="bold cyan")

    def log_cycle_complete(self, processed: int, actions: Dict[str, int], elapsed: float) -> None:
        summary = " ".join(f"{k}={v}" for k, v in sorted(actions.items())) or "none"
        self._log(
            f"=== Cycle complete | {processed} symbols in {elapsed:.1f}s | {summary} ===",
            style="bold cyan",
        )

    def log_analysis(self, symbol: str, market_type: str, price: float, indicators: Indicators) -> None:
        self._log(
            f"📈 {symbol} ({market_type.upper()}) price={price:.4f} "
            f"EMA short={indicators.ema_short:.4f} long={indicators.ema_long:.4f} "
            f"RSI={indicators.rsi:.1f} trend={indicators.analysis.trend_direction}",
        )

    def log_decision(self, symbol: str, decision: AIDecision) -> None:
        style = _RECOMMENDATION_STYLES.get(decision.recommendation)
        self._log(
            f"🤖 {symbol} {decision.recommendation} ({decision.confidence}) via {decision.ai_model}",
            style=style,
        )
        self._log(f"   Reasoning: {decision.reasoning}", level=logging.DEBUG)

    def log_action(self, symbol: str, action: str, message: str) -> None:
        self._log(f"➡️  {symbol} action={action} {message}".rstrip(), style="cyan")

    def log_trade_opened(self, position: Position) -> None:
        self._log(
            f"✅ TRADE OPENED | #{position.position_id} {position.symbol} {position.side} "
            f"qty={position.quantity:g} @ {position.entry_price:.4f} "
            f"SL={position.stop_loss:.4f} TP={position.take_profit:.4f}",
            style="bold green",
        )

    def log_trade_closed(self, trade: Trade, balance: float) -> None:
        style = "bold green" if trade.profit_loss >= 0 else "bold red"
        self._log(
            f"🏁 TRADE CLOSED | {trade.symbol} reason={trade.exit_reason} "
            f"pnl={_usd(trade.profit_loss)} ({trade.profit_loss_percent:+.2f}%) balance={_usd(balance)}",
            style=style,
        )

    def log_portfolio(self, portfolio: Portfolio) -> None:
        self._log(
            f"💰 Balance: {_usd(portfolio.balance)} | P&L: {_usd(portfolio.total_profit_loss)} "
            f"({portfolio.total_profit_loss_percent:+.2f}%) | Open: {portfolio.open_positions_count} "
            f"| Trades: {portfolio.total_trades} | Win rate: {portfolio.win_rate:.1f}%",
            style="green",
        )

    def log_debug(self, message: str) -> None:
        self._log(message, level=logging.DEBUG, style="dim")

    def log_info(self, message: str) -> None:
        self._log(message)

    def log_warning(self, message: str) -> None:
        self._log(f"⚠️  {message}", level=logging.WARNING, style="yellow")

    def log_error(self, message: str) -> None:
        self._log(f"❌ {message}", level=logging.ERROR, style="bold red")
