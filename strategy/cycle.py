"""
Market Cycle Strategy

Wyckoff-style phase detection from the SMA50/SMA200 alignment, the slope of
the last 50 closes, and where price sits inside its 50-bar range.

Phases:
- bull_markup        -> buy
- bull_distribution  -> sell (topping)
- bear_markdown      -> sell
- bear_accumulation  -> buy (bottoming)
- sideways_range     -> no opinion
"""

from typing import Any, Dict, Optional, Sequence
import logging

from core.indicators import sma
from strategy.base_strategy import Strategy, StrategyContext, StrategySignal

logger = logging.getLogger(__name__)


def trend_strength(closes: Sequence[float], window: int = 50) -> float:
    """Change between the two halves of the window, scaled to [-1, 1]."""
    recent = list(closes[-window:])
    half = len(recent) // 2
    if half == 0:
        return 0.0
    first = sum(recent[:half]) / half
    second = sum(recent[half:]) / (len(recent) - half)
    if first == 0:
        return 0.0
    return max(-1.0, min(1.0, (second - first) / first * 10))


class CycleStrategy(Strategy):
    """
    Config params:
        fast_period: Fast SMA (default 50)
        slow_period: Slow SMA (default 200)
        range_window: Bars used for range position and trend strength (default 50)
    """

    family = "cycle"

    def __init__(self, name: str, config: Dict[str, Any]):
        super().__init__(name, config)
        params = config.get("params", {}) or {}
        self.fast_period = int(params.get("fast_period", 50))
        self.slow_period = int(params.get("slow_period", 200))
        self.range_window = int(params.get("range_window", 50))

    def detect_phase(self, context: StrategyContext) -> Optional[Dict[str, float]]:
        candles = context.candles
        if len(candles) < self.slow_period:
            return None

        closes = context.closes
        price = closes[-1]
        fast = sma(closes, self.fast_period)
        slow = sma(closes, self.slow_period)
        window = candles[-self.range_window:]
        highest = max(c.high for c in window)
        lowest = min(c.low for c in window)
        span = highest - lowest
        position = (price - lowest) / span if span > 0 else 0.5
        strength = trend_strength(closes, self.range_window)

        return {
            "price": price,
            "fast": fast,
            "slow": slow,
            "position": position,
            "strength": strength,
        }

    def evaluate(self, context: StrategyContext) -> Optional[StrategySignal]:
        phase = self.detect_phase(context)
        if phase is None:
            return None

        price, fast, slow = phase["price"], phase["fast"], phase["slow"]
        position, strength = phase["position"], phase["strength"]
        bullish = fast > slow and price > fast
        bearish = fast < slow and price < fast

        if bullish and strength > 0.6 and position > 0.4:
            return self.signal(strength, 0.75 + strength * 0.2,
                               f"bull_markup (trend {strength:+.2f}, range pos {position:.2f})")
        if bullish and strength < 0.4 and position > 0.7:
            return self.signal(-0.5, 0.7, f"bull_distribution (trend {strength:+.2f}, range pos {position:.2f})")
        if bearish and strength < -0.6 and position < 0.6:
            return self.signal(strength, 0.75 + abs(strength) * 0.2,
                               f"bear_markdown (trend {strength:+.2f}, range pos {position:.2f})")
        if bearish and strength > -0.4 and position < 0.3:
            return self.signal(0.5, 0.7, f"bear_accumulation (trend {strength:+.2f}, range pos {position:.2f})")

        return self.signal(0.0, 0.3, f"sideways_range (trend {strength:+.2f}, range pos {position:.2f})")
