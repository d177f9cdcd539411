"""
Momentum Strategy

Follows rate of change on a short and a long lookback. Both must clear the
threshold in the same direction for a confident signal.
"""

from typing import Any, Dict, Optional
import logging

from core.indicators import momentum
from strategy.base_strategy import Strategy, StrategyContext, StrategySignal

logger = logging.getLogger(__name__)


class MomentumStrategy(Strategy):
    """
    Config params:
        short_lookback: Bars for short rate of change (default 10)
        long_lookback: Bars for long rate of change (default 30)
        threshold: Minimum |rate of change| that counts as a move (default 0.02)
        full_scale: Rate of change mapped to score 1.0 (default 0.10)
    """

    family = "momentum"

    def __init__(self, name: str, config: Dict[str, Any]):
        super().__init__(name, config)
        params = config.get("params", {}) or {}
        self.short_lookback = int(params.get("short_lookback", 10))
        self.long_lookback = int(params.get("long_lookback", 30))
        self.threshold = float(params.get("threshold", 0.02))
        self.full_scale = float(params.get("full_scale", 0.10))

    def evaluate(self, context: StrategyContext) -> Optional[StrategySignal]:
        closes = context.closes
        if len(closes) <= self.long_lookback:
            return None

        short_roc = momentum(closes, self.short_lookback)
        long_roc = momentum(closes, self.long_lookback)
        blended = 0.6 * short_roc + 0.4 * long_roc
        score = blended / self.full_scale if self.full_scale > 0 else 0.0

        short_up = short_roc >= self.threshold
        long_up = long_roc >= self.threshold
        short_down = short_roc <= -self.threshold
        long_down = long_roc <= -self.threshold

        if (short_up and long_up) or (short_down and long_down):
            confidence = min(0.9, 0.6 + abs(blended) / self.full_scale * 0.3)
            label = "up" if short_up else "down"
            return self.signal(score, confidence,
                               f"momentum {label}: {short_roc:+.2%} ({self.short_lookback}) / {long_roc:+.2%} ({self.long_lookback})")

        if short_up or short_down or long_up or long_down:
            return self.signal(score, 0.4, f"mixed momentum {short_roc:+.2%} / {long_roc:+.2%}")

        return self.signal(score, 0.2, f"flat momentum {short_roc:+.2%} / {long_roc:+.2%}")
