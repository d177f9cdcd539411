"""
Mean Reversion Strategy

Fades RSI extremes, confirmed by how far price has stretched from its
moving average. Works best in the ranging regime.
"""

from typing import Any, Dict, Optional
import logging

from core.indicators import rsi, sma
from strategy.base_strategy import Strategy, StrategyContext, StrategySignal

logger = logging.getLogger(__name__)


class MeanReversionStrategy(Strategy):
    """
    Buy oversold / sell overbought.

    Config params:
        rsi_period: RSI lookback (default 14)
        oversold: RSI level treated as oversold (default 30)
        overbought: RSI level treated as overbought (default 70)
        sma_period: Mean used to measure stretch (default 20)
        stretch_pct: Distance from the mean that counts as fully stretched (default 0.03)
    """

    family = "mean_reversion"

    def __init__(self, name: str, config: Dict[str, Any]):
        super().__init__(name, config)
        params = config.get("params", {}) or {}
        self.rsi_period = int(params.get("rsi_period", 14))
        self.oversold = float(params.get("oversold", 30.0))
        self.overbought = float(params.get("overbought", 70.0))
        self.sma_period = int(params.get("sma_period", 20))
        self.stretch_pct = float(params.get("stretch_pct", 0.03))

    def evaluate(self, context: StrategyContext) -> Optional[StrategySignal]:
        closes = context.closes
        if len(closes) < max(self.rsi_period + 1, self.sma_period):
            return None

        rsi_value = rsi(closes, self.rsi_period)
        mean = sma(closes, self.sma_period)
        stretch = (closes[-1] - mean) / mean if mean else 0.0
        stretch_score = min(1.0, abs(stretch) / self.stretch_pct) if self.stretch_pct > 0 else 0.0

        if rsi_value <= self.oversold:
            depth = (self.oversold - rsi_value) / self.oversold
            score = 0.4 + 0.6 * depth
            confidence = 0.55 + 0.3 * stretch_score if stretch < 0 else 0.5
            return self.signal(score, confidence, f"RSI {rsi_value:.1f} oversold, {stretch:+.2%} from SMA{self.sma_period}")

        if rsi_value >= self.overbought:
            depth = (rsi_value - self.overbought) / (100.0 - self.overbought)
            score = -(0.4 + 0.6 * depth)
            confidence = 0.55 + 0.3 * stretch_score if stretch > 0 else 0.5
            return self.signal(score, confidence, f"RSI {rsi_value:.1f} overbought, {stretch:+.2%} from SMA{self.sma_period}")

        # Inside the band: weak lean back toward 50
        score = (50.0 - rsi_value) / 100.0
        return self.signal(score, 0.3, f"RSI {rsi_value:.1f} inside band")
