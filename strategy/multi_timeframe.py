"""
Multi-Timeframe Strategy

Turns the tick's TimeframeAligner result into a trend vote so horizon
agreement is weighed alongside the other model families.
"""

from typing import Optional
import logging

from strategy.base_strategy import Strategy, StrategyContext, StrategySignal

logger = logging.getLogger(__name__)


class MultiTimeframeStrategy(Strategy):
    family = "trend"

    def evaluate(self, context: StrategyContext) -> Optional[StrategySignal]:
        alignment = context.alignment
        if alignment is None:
            return None
        if not alignment.aligned:
            return self.signal(0.0, 0.0, alignment.reasoning)

        # Average per-horizon confidence of the agreeing horizons
        agreeing = [s for s in alignment.signals.values() if s.direction == alignment.direction]
        strength = sum(s.confidence for s in agreeing) / len(agreeing) if agreeing else 0.0
        sign = 1.0 if alignment.direction == "bullish" else -1.0
        return self.signal(sign * max(strength, 0.5), alignment.confidence, alignment.reasoning)
