from __future__ import annotations

import asyncio
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from papertrader.core.config import Config
from papertrader.core.indicators import calculate_all
from papertrader.core.risk_manager import RiskManager
from papertrader.core.trading_engine import TradingEngine
from papertrader.models.market import AIDecision, Indicators, MarketSnapshot
from papertrader.models.trade import AI_SELL_SIGNAL, DecisionRecord, Portfolio, Position, Trade
from papertrader.storage.store import Store


OPENED_LONG = "OPENED_LONG"
CLOSED_POSITION = "CLOSED_POSITION"
BLOCKED = "BLOCKED"
FAILED = "FAILED"
HOLD = "HOLD"
ERROR = "ERROR"


class Logger(Protocol):
    def log_debug(self, message: str) -> None: ...

    def log_info(self, message: str) -> None: ...

    def log_warning(self, message: str) -> None: ...

    def log_error(self, message: str) -> None: ...

    def log_cycle_start(self, symbol_count: int) -> None: ...

    def log_cycle_complete(self, processed: int, actions: Dict[str, int], elapsed: float) -> None: ...

    def log_analysis(self, symbol: str, market_type: str, price: float, indicators: Indicators) -> None: ...

    def log_decision(self, symbol: str, decision: AIDecision) -> None: ...

    def log_action(self, symbol: str, action: str, message: str) -> None: ...

    def log_trade_opened(self, position: Position) -> None: ...

    def log_trade_closed(self, trade: Trade, balance: float) -> None: ...

    def log_portfolio(self, portfolio: Portfolio) -> None: ...


class MarketDataSource(Protocol):
    async def get_market_data(self, symbol: str, market_type: str) -> MarketSnapshot: ...


class Advisor(Protocol):
    async def get_recommendation(
        self,
        symbol: str,
        market_type: str,
        indicators: Indicators,
        position: Optional[Position] = None,
    ) -> AIDecision: ...


@dataclass(frozen=True)
class ActionResult:
    action: str
    message: str = ""


@dataclass(frozen=True)
class DecisionOutcome:
    symbol: str
    market_type: str
    recommendation: str
    confidence: str
    reasoning: str
    action: str
    message: str = ""
    current_price: Optional[float] = None
    error: bool = False


@dataclass(frozen=True)
class CycleReport:
    started_at: datetime
    finished_at: datetime
    outcomes: List[DecisionOutcome]

    @property
    def actions(self) -> Dict[str, int]:
        return dict(Counter(o.action for o in self.outcomes))

    @property
    def errors(self) -> List[DecisionOutcome]:
        return [o for o in self.outcomes if o.action == ERROR]


@dataclass(frozen=True)
class ControlResult:
    success: bool
    message: str
    report: Optional[CycleReport] = None


@dataclass(frozen=True)
class PipelineStatus:
    is_running: bool
    cycle_in_progress: bool
    trades_today: int
    max_trades_per_day: int
    last_check_at: Optional[datetime]
    interval_minutes: float
    services: List[Dict[str, Any]] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class DecisionPipeline:
    """The autonomy cycle: one decision per configured symbol per cycle.

    For every symbol: market data -> indicators -> AI recommendation ->
    risk gate -> paper execution -> decision log. A failure on one symbol
    is logged and reported as ERROR; the cycle moves on to the next symbol.
    """

    config: Config
    store: Store
    market_data: MarketDataSource
    advisor: Advisor
    risk: RiskManager
    engine: TradingEngine
    logger: Logger

    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)
    clock: Callable[[], datetime] = field(default=_utcnow, repr=False)
    service_status: Optional[Callable[[], List[Dict[str, Any]]]] = field(default=None, repr=False)

    _running: bool = field(default=False, init=False)
    _cycle_lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)
    _stop_event: asyncio.Event | None = field(default=None, init=False, repr=False)

    async def start(self) -> ControlResult:
        """Run cycles every autonomy_interval_minutes until stop() is called."""
        if self._running:
            return ControlResult(False, "Bot is already running")

        self._running = True
        self._stop_event = asyncio.Event()
        self.store.set_running(True)

        interval = self.config.autonomy_interval_minutes * 60.0
        self.logger.log_info(
            f"Autonomy loop started | every {self.config.autonomy_interval_minutes:g} min "
            f"| {len(self.config.symbols())} symbols | mock={self.config.mock_mode}"
        )

        try:
            while self._running:
                started = time.monotonic()
                try:
                    await self.run_cycle()
                except Exception as e:
                    self.logger.log_error(f"run_cycle error: {e}")
                elapsed = time.monotonic() - started

                sleep_for = max(0.0, interval - elapsed)

                # Allow stop() to interrupt the sleep.
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=sleep_for)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False
            self.store.set_running(False)

        return ControlResult(True, "Bot stopped")

    def stop(self) -> ControlResult:
        if not self._running:
            return ControlResult(False, "Bot is not running")

        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        self.logger.log_info("Stopping autonomy loop...")
        return ControlResult(True, "Bot stopped")

    async def trigger_cycle(self) -> ControlResult:
        if not self._running:
            return ControlResult(False, "Bot is not running")

        report = await self.run_cycle()
        if report is None:
            return ControlResult(False, "A cycle is already in progress")
        return ControlResult(True, "Cycle triggered", report)

    def status(self) -> PipelineStatus:
        s = self.store.get_bot_status()
        return PipelineStatus(
            is_running=self._running,
            cycle_in_progress=self._cycle_lock.locked(),
            trades_today=s.trades_today,
            max_trades_per_day=self.config.risk.max_trades_per_day,
            last_check_at=s.last_check_at,
            interval_minutes=self.config.autonomy_interval_minutes,
            services=self.service_status() if self.service_status else [],
        )

    async def run_cycle(self) -> Optional[CycleReport]:
        """Process every configured symbol once. Returns None if a cycle is already running."""
        if self._cycle_lock.locked():
            self.logger.log_warning("Cycle already in progress, skipping")
            return None

        async with self._cycle_lock:
            started_at = self.clock()
            t0 = time.monotonic()

            self._roll_daily_counter(started_at)
            self.store.update_last_check(started_at)

            symbols = self.config.symbols()
            self.logger.log_cycle_start(len(symbols))

            outcomes: List[DecisionOutcome] = []
            for i, (symbol, market_type) in enumerate(symbols):
                if i > 0:
                    await self.sleep(self.config.symbol_delay_seconds)
                try:
                    outcomes.append(await self.process_symbol(symbol, market_type))
                except Exception as e:
                    self.logger.log_error(f"Error analyzing {symbol}: {e}")
                    outcomes.append(
                        DecisionOutcome(
                            symbol=symbol,
                            market_type=market_type,
                            recommendation=HOLD,
                            confidence="low",
                            reasoning=str(e),
                            action=ERROR,
                            message=str(e),
                            error=True,
                        )
                    )

            report = CycleReport(started_at=started_at, finished_at=self.clock(), outcomes=outcomes)
            self.logger.log_cycle_complete(len(outcomes), report.actions, time.monotonic() - t0)
            self.logger.log_portfolio(self.engine.get_portfolio())
            return report

    async def process_symbol(self, symbol: str, market_type: str) -> DecisionOutcome:
        try:
            snapshot = await self.market_data.get_market_data(symbol, market_type)
            indicators = calculate_all(snapshot.candles, self.config.indicators)
        except Exception as e:
            self.logger.log_warning(f"Market data unavailable for {symbol}: {e}")
            decision = AIDecision(
                recommendation="HOLD",
                confidence="low",
                reasoning=f"Market data unavailable: {e}. Defaulting to HOLD.",
                ai_model="none",
                error=True,
            )
            self._record(symbol, market_type, None, None, decision, HOLD)
            return DecisionOutcome(
                symbol=symbol,
                market_type=market_type,
                recommendation=decision.recommendation,
                confidence=decision.confidence,
                reasoning=decision.reasoning,
                action=HOLD,
                message="No market data",
                error=True,
            )

        price = snapshot.quote.price if snapshot.quote.price > 0 else indicators.current_price
        self.logger.log_analysis(symbol, market_type, price, indicators)

        position = self.engine.get_position_by_symbol(symbol)
        decision = await self.advisor.get_recommendation(symbol, market_type, indicators, position)
        self.logger.log_decision(symbol, decision)

        result = self.execute_decision(symbol, market_type, decision, price, position)
        self.logger.log_action(symbol, result.action, result.message)

        self._record(symbol, market_type, price, indicators, decision, result.action)
        return DecisionOutcome(
            symbol=symbol,
            market_type=market_type,
            recommendation=decision.recommendation,
            confidence=decision.confidence,
            reasoning=decision.reasoning,
            action=result.action,
            message=result.message,
            current_price=price,
            error=decision.error,
        )

    def execute_decision(
        self,
        symbol: str,
        market_type: str,
        decision: AIDecision,
        current_price: float,
        position: Optional[Position],
    ) -> ActionResult:
        if decision.recommendation == "BUY" and position is None:
            gate = self.engine.can_open_trade(symbol, market_type)
            if not gate.allowed:
                return ActionResult(BLOCKED, "; ".join(c.message for c in gate.failures()))

            opened = self.engine.open_position(symbol, market_type, "long", current_price, decision.reasoning)
            if not opened.success or opened.position is None:
                return ActionResult(FAILED, opened.error or "")
            self.logger.log_trade_opened(opened.position)
            return ActionResult(OPENED_LONG, opened.message)

        if decision.recommendation == "SELL" and position is not None:
            closed = self.engine.close_position(position.position_id, current_price, AI_SELL_SIGNAL)
            if not closed.success or closed.trade is None:
                return ActionResult(FAILED, closed.error or "")
            self.logger.log_trade_closed(closed.trade, closed.new_balance or 0.0)
            return ActionResult(CLOSED_POSITION, closed.message)

        if position is not None:
            signal = self.risk.should_close_position(position, current_price)
            if signal.should_close and signal.reason:
                exit_price = signal.exit_price if signal.exit_price is not None else current_price
                closed = self.engine.close_position(position.position_id, exit_price, signal.reason)
                if closed.success and closed.trade is not None:
                    self.logger.log_trade_closed(closed.trade, closed.new_balance or 0.0)
                    return ActionResult(signal.reason, closed.message)

        return ActionResult(HOLD, "No action taken")

    def _roll_daily_counter(self, now: datetime) -> None:
        today = now.date()
        s = self.store.get_bot_status()
        if s.trades_date != today.isoformat():
            self.store.reset_daily_trades(today)
            if s.trades_date is not None:
                self.logger.log_info(f"New trading day {today.isoformat()}, daily trade count reset")

    def _record(
        self,
        symbol: str,
        market_type: str,
        price: Optional[float],
        indicators: Optional[Indicators],
        decision: AIDecision,
        action: str,
    ) -> None:
        self.store.insert_decision(
            DecisionRecord(
                symbol=symbol,
                market_type=market_type,  # type: ignore[arg-type]
                current_price=price,
                ema_short=indicators.ema_short if indicators else None,
                ema_long=indicators.ema_long if indicators else None,
                rsi=indicators.rsi if indicators else None,
                recommendation=decision.recommendation,
                confidence=decision.confidence,
                reasoning=decision.reasoning,
                action_taken=action,
                ai_model=decision.ai_model,
                created_at=self.clock(),
            )
        )
