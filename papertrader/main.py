from __future__ import annotations

import asyncio
import os
import signal
import sys
from dataclasses import dataclass
from typing import Optional


if __package__ is None or __package__ == "":
    # Allow running via: python papertrader/main.py
    sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from papertrader.connectors.gemini_advisor import GeminiAdvisor
from papertrader.connectors.market_data import SERVICE_NAME as MARKET_DATA_SERVICE
from papertrader.connectors.market_data import MarketDataClient
from papertrader.core.config import Config
from papertrader.core.rate_limiter import RateLimiterRegistry
from papertrader.core.resilience import CircuitBreakerRegistry, RetryPolicy
from papertrader.core.risk_manager import RiskManager
from papertrader.core.trading_engine import TradingEngine
from papertrader.logger.console_logger import ConsoleLogger
from papertrader.services.decision_pipeline import DecisionPipeline
from papertrader.storage.sql_store import SqlStore


@dataclass
class App:
    config: Config
    logger: ConsoleLogger
    store: SqlStore
    breakers: CircuitBreakerRegistry
    limiters: RateLimiterRegistry
    pipeline: DecisionPipeline

    async def aclose(self) -> None:
        await self.limiters.aclose()
        self.store.dispose()


def build_app(cfg: Config, logger: Optional[ConsoleLogger] = None) -> App:
    """Wire every component. A store that cannot initialize stops startup here."""
    logger = logger or ConsoleLogger(log_dir=cfg.log_dir, log_level=cfg.log_level)

    store = SqlStore.from_url(cfg.database_url, initial_balance=cfg.initial_balance)
    store.initialize()

    breakers = CircuitBreakerRegistry(
        failure_threshold=cfg.breaker_failure_threshold,
        reset_timeout=cfg.breaker_reset_seconds,
        logger=logger,
    )
    limiters = RateLimiterRegistry(logger=logger)
    limiters.get(MARKET_DATA_SERVICE, max_tokens=cfg.twelve_data_max_calls, window_seconds=cfg.twelve_data_window_seconds)

    policy = RetryPolicy(
        max_retries=cfg.retry_max_retries,
        initial_delay=cfg.retry_initial_delay,
        logger=logger,
    )

    market_data = MarketDataClient(
        api_key=cfg.twelve_data_api_key,
        mock_mode=cfg.mock_mode,
        breakers=breakers,
        limiters=limiters,
        retry_policy=policy,
        quota_cooldown=cfg.quota_cooldown_seconds,
        logger=logger,
    )
    advisor = GeminiAdvisor(
        api_key=cfg.gemini_api_key,
        model=cfg.gemini_model,
        mock_mode=cfg.mock_mode,
        settings=cfg.indicators,
        breakers=breakers,
        limiters=limiters,
        retry_policy=policy,
        quota_cooldown=cfg.quota_cooldown_seconds,
        logger=logger,
    )

    risk = RiskManager(cfg.risk)
    engine = TradingEngine(
        store=store,
        risk=risk,
        initial_balance=cfg.initial_balance,
        reset_clears_history=cfg.reset_clears_history,
    )

    pipeline = DecisionPipeline(
        config=cfg,
        store=store,
        market_data=market_data,
        advisor=advisor,
        risk=risk,
        engine=engine,
        logger=logger,
        service_status=lambda: breakers.snapshot() + limiters.status(),
    )

    return App(config=cfg, logger=logger, store=store, breakers=breakers, limiters=limiters, pipeline=pipeline)


async def run_once(app: App) -> None:
    try:
        await app.pipeline.run_cycle()
    finally:
        await app.aclose()


async def run_forever(app: App) -> None:
    pipeline = app.pipeline
    stop_event = asyncio.Event()

    def _request_stop() -> None:
        pipeline.stop()
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop)
        except NotImplementedError:
            # add_signal_handler is not available on some platforms.
            pass

    task = asyncio.create_task(pipeline.start())
    stop_waiter = asyncio.create_task(stop_event.wait())

    try:
        await asyncio.wait({task, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
        if not task.done():
            # Let the current cycle finish; wait_for cancels it on timeout.
            try:
                await asyncio.wait_for(task, timeout=30)
            except asyncio.TimeoutError:
                app.logger.log_warning("Cycle did not finish within 30s of shutdown, cancelled")
        elif not task.cancelled():
            task.result()
    finally:
        stop_waiter.cancel()
        await app.aclose()


def main() -> None:
    cfg = Config.load()
    cfg.validate()

    app = build_app(cfg)
    app.logger.log_info(f"Risk settings: {app.pipeline.risk.risk_summary()}")
    summary = app.pipeline.engine.get_performance_summary(days=30)
    app.logger.log_info(
        f"Last {summary.days} days: {summary.total_trades} trades on {summary.trading_days} days, "
        f"P&L ${summary.total_profit_loss:,.2f}, win rate {summary.win_rate:.1f}%"
    )

    mode = os.getenv("BOT_MODE", "LOOP").strip().upper()
    if mode == "ONCE":
        asyncio.run(run_once(app))
        return

    asyncio.run(run_forever(app))


if __name__ == "__main__":
    main()
