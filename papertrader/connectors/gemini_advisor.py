from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests

from papertrader.core.config import IndicatorSettings
from papertrader.core.errors import ExternalServiceError, QuotaExceededError
from papertrader.core.rate_limiter import RateLimiterRegistry
from papertrader.core.resilience import CircuitBreakerRegistry, Logger, RetryPolicy, with_resilience
from papertrader.models.market import AIDecision, Indicators
from papertrader.models.trade import Position


SERVICE_NAME = "gemini"

_RECOMMENDATIONS = ("BUY", "SELL", "HOLD")
_CONFIDENCES = ("high", "medium", "low")


def build_prompt(
    symbol: str,
    market_type: str,
    indicators: Indicators,
    position: Optional[Position],
    settings: Optional[IndicatorSettings] = None,
) -> str:
    s = settings or IndicatorSettings()

    if position is not None:
        position_status = f"Currently HOLDING a {position.side} position at ${position.entry_price}"
    else:
        position_status = "No open position"

    if indicators.ema_short > indicators.ema_long:
        trend = f"BULLISH (EMA{s.ema_short} > EMA{s.ema_long})"
    else:
        trend = f"BEARISH (EMA{s.ema_short} < EMA{s.ema_long})"

    macd = ""
    if indicators.macd is not None:
        macd = (
            f"- MACD Line: {indicators.macd.line:.4f}\n"
            f"- MACD Signal: {indicators.macd.signal:.4f}\n"
            f"- MACD Histogram: {indicators.macd.histogram:.4f}\n"
        )

    return (
        "You are a conservative trading assistant for an educational paper trading platform.\n"
        "Your role is to analyze market data and provide clear, explainable trading recommendations.\n"
        "\n"
        f"## Current Market Analysis for {symbol} ({market_type.upper()})\n"
        "\n"
        "### Price Data\n"
        f"- Current Price: ${indicators.current_price:.4f}\n"
        "\n"
        "### Technical Indicators\n"
        f"- EMA {s.ema_short} (Short-term): ${indicators.ema_short:.4f}\n"
        f"- EMA {s.ema_long} (Long-term): ${indicators.ema_long:.4f}\n"
        f"- EMA Trend: {trend}\n"
        f"- RSI ({s.rsi_period}): {indicators.rsi:.1f}\n"
        f"{macd}"
        "\n"
        "### Indicator Analysis\n"
        f"{indicators.analysis.summary}\n"
        "\n"
        "### Position Status\n"
        f"{position_status}\n"
        "\n"
        "## Trading Rules (MUST Follow)\n"
        "BUY Conditions (ALL must be true):\n"
        f"1. EMA {s.ema_short} > EMA {s.ema_long} (uptrend confirmed)\n"
        f"2. RSI > {s.rsi_buy_threshold:g} (bullish momentum)\n"
        "3. No existing position\n"
        "\n"
        "SELL/EXIT Conditions (ANY can trigger):\n"
        f"1. EMA {s.ema_short} < EMA {s.ema_long} (trend reversal)\n"
        f"2. RSI < {s.rsi_sell_threshold:g} (momentum weakening)\n"
        "\n"
        "HOLD: When conditions are unclear or mixed\n"
        "\n"
        "Format your response EXACTLY like this:\n"
        "RECOMMENDATION: [BUY/SELL/HOLD]\n"
        "CONFIDENCE: [high/medium/low]\n"
        "REASONING: [Your clear explanation here]\n"
        "\n"
        "Be conservative. If in doubt, recommend HOLD. Never recommend against the trading rules."
    )


def parse_response(text: str, ai_model: str = "gemini") -> AIDecision:
    """Parse the three-line RECOMMENDATION/CONFIDENCE/REASONING answer.

    Unknown values fall back to HOLD / medium. A REASONING block that spans
    several lines is kept whole.
    """

    recommendation = "HOLD"
    confidence = "medium"
    reasoning = ""

    for raw in text.strip().splitlines():
        line = raw.strip()
        if line.startswith("RECOMMENDATION:"):
            rec = line[len("RECOMMENDATION:"):].strip().upper()
            if rec in _RECOMMENDATIONS:
                recommendation = rec
        elif line.startswith("CONFIDENCE:"):
            conf = line[len("CONFIDENCE:"):].strip().lower()
            if conf in _CONFIDENCES:
                confidence = conf
        elif line.startswith("REASONING:"):
            reasoning = line[len("REASONING:"):].strip()

    if not reasoning:
        idx = text.find("REASONING:")
        if idx != -1:
            reasoning = text[idx + len("REASONING:"):].strip()

    if not reasoning:
        reasoning = "Analysis completed based on technical indicators."

    return AIDecision(
        recommendation=recommendation,  # type: ignore[arg-type]
        confidence=confidence,  # type: ignore[arg-type]
        reasoning=reasoning,
        ai_model=ai_model,
        raw_response=text,
    )


def rule_based_decision(
    indicators: Indicators,
    position: Optional[Position],
    settings: Optional[IndicatorSettings] = None,
) -> AIDecision:
    """The trading rules from the prompt, applied locally."""
    s = settings or IndicatorSettings()
    uptrend = indicators.ema_short > indicators.ema_long

    if position is None and uptrend and indicators.rsi > s.rsi_buy_threshold:
        return AIDecision(
            recommendation="BUY",
            confidence="high" if indicators.rsi < 70 else "medium",
            reasoning=(
                f"EMA{s.ema_short} is above EMA{s.ema_long} and RSI {indicators.rsi:.1f} "
                f"is above {s.rsi_buy_threshold:g}, confirming an uptrend with momentum."
            ),
            ai_model="rules",
        )

    if position is not None and (not uptrend or indicators.rsi < s.rsi_sell_threshold):
        why = "trend reversed" if not uptrend else f"RSI {indicators.rsi:.1f} fell below {s.rsi_sell_threshold:g}"
        return AIDecision(
            recommendation="SELL",
            confidence="medium",
            reasoning=f"Exit signal: {why}.",
            ai_model="rules",
        )

    return AIDecision(
        recommendation="HOLD",
        confidence="low",
        reasoning="Signals are mixed; no rule is satisfied.",
        ai_model="rules",
    )


def fallback_decision(error: BaseException) -> AIDecision:
    return AIDecision(
        recommendation="HOLD",
        confidence="low",
        reasoning=f"AI analysis unavailable: {error}. Defaulting to HOLD.",
        error=True,
    )


@dataclass
class GeminiAdvisor:
    api_key: str = ""
    model: str = "gemini-2.0-flash"
    host: str = "https://generativelanguage.googleapis.com/v1beta"
    mock_mode: bool = True
    settings: IndicatorSettings = field(default_factory=IndicatorSettings)

    breakers: CircuitBreakerRegistry = field(default_factory=CircuitBreakerRegistry)
    limiters: Optional[RateLimiterRegistry] = None
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    quota_cooldown: float = 600.0
    request_timeout: float = 30.0
    logger: Optional[Logger] = field(default=None, repr=False)

    async def get_recommendation(
        self,
        symbol: str,
        market_type: str,
        indicators: Indicators,
        position: Optional[Position] = None,
    ) -> AIDecision:
        """Never raises: any failure becomes a low-confidence HOLD with error=True."""
        if self.mock_mode:
            return rule_based_decision(indicators, position, self.settings)

        prompt = build_prompt(symbol, market_type, indicators, position, self.settings)
        try:
            text = await with_resilience(
                SERVICE_NAME,
                lambda: self._generate(prompt),
                breakers=self.breakers,
                limiters=self.limiters,
                policy=self.retry_policy,
                quota_cooldown=self.quota_cooldown,
                logger=self.logger,
            )
        except Exception as e:
            if self.logger:
                self.logger.log_error(f"Gemini API error for {symbol}: {e}")
            return fallback_decision(e)

        return parse_response(text, ai_model=self.model)

    async def _generate(self, prompt: str) -> str:
        url = f"{self.host}/models/{self.model}:generateContent"
        body = {"contents": [{"parts": [{"text": prompt}]}]}

        def _do() -> Any:
            try:
                resp = requests.post(url, params={"key": self.api_key}, json=body, timeout=self.request_timeout)
            except requests.RequestException as e:
                raise ExternalServiceError(f"Gemini request failed: {e}") from e

            if resp.status_code == 429:
                raise QuotaExceededError("Gemini quota exceeded", status_code=429)
            if resp.status_code >= 400:
                raise ExternalServiceError(f"Gemini HTTP {resp.status_code}", status_code=resp.status_code)
            return resp.json()

        data = await asyncio.to_thread(_do)
        return _extract_text(data)


def _extract_text(data: Any) -> str:
    candidates = data.get("candidates") if isinstance(data, dict) else None
    if not candidates:
        raise ExternalServiceError("Gemini returned no candidates")

    content: Dict[str, Any] = candidates[0].get("content") or {}
    parts = content.get("parts") or []
    text = "".join(str(p.get("text", "")) for p in parts if isinstance(p, dict))
    if not text.strip():
        raise ExternalServiceError("Gemini returned an empty response")
    return text
