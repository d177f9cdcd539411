"""
Multi-Factor Alpha Strategy

Weighted composite of five factors, each roughly in [-1, 1]:
- momentum:       long rate of change minus a short-term reversal
- value:          distance below the 20-bar mean (fair value proxy)
- quality:        snapshot data quality discounted by return volatility
- mean_reversion: negative deviation from the 50-bar mean
- volume:         on-balance volume over total volume (accumulation)

Confidence is factor agreement: 1 - stdev of the factor scores, floored at 0.5.
"""

import statistics
from typing import Any, Dict, List, Optional, Sequence
import logging

from core.indicators import momentum, sma
from strategy.base_strategy import Strategy, StrategyContext, StrategySignal

logger = logging.getLogger(__name__)

DEFAULT_WEIGHTS: Dict[str, float] = {
    "momentum": 0.30,
    "value": 0.20,
    "quality": 0.15,
    "mean_reversion": 0.25,
    "volume": 0.10,
}


def return_volatility(closes: Sequence[float], period: int = 20) -> float:
    """Population stdev of simple returns over the last `period` bars."""
    if len(closes) < period + 1:
        return 0.02
    window = closes[-(period + 1):]
    returns = [(b - a) / a for a, b in zip(window, window[1:]) if a]
    return statistics.pstdev(returns) if len(returns) > 1 else 0.0


def volume_score(closes: Sequence[float], volumes: Sequence[float], window: int = 20) -> float:
    closes = list(closes[-window:])
    volumes = list(volumes[-window:])
    obv = 0.0
    for i in range(1, len(closes)):
        if closes[i] > closes[i - 1]:
            obv += volumes[i]
        elif closes[i] < closes[i - 1]:
            obv -= volumes[i]
    total = sum(volumes)
    return obv / total if total > 0 else 0.0


class FactorStrategy(Strategy):
    """
    Config params:
        weights: Per-factor weights (defaults above)
        long_lookback: Bars for the long momentum leg (default 100)
        short_lookback: Bars for the reversal leg (default 20)
        min_candles: Bars required before scoring (default 60)
    """

    family = "factor"

    def __init__(self, name: str, config: Dict[str, Any]):
        super().__init__(name, config)
        params = config.get("params", {}) or {}
        weights = dict(DEFAULT_WEIGHTS)
        weights.update({k: float(v) for k, v in (params.get("weights") or {}).items()})
        self.weights = weights
        self.long_lookback = int(params.get("long_lookback", 100))
        self.short_lookback = int(params.get("short_lookback", 20))
        self.min_candles = int(params.get("min_candles", 60))

    def factors(self, context: StrategyContext) -> Optional[Dict[str, float]]:
        closes = context.closes
        if len(closes) < self.min_candles:
            return None
        price = closes[-1]

        long_leg = momentum(closes, min(self.long_lookback, len(closes) - 1))
        short_leg = momentum(closes, self.short_lookback)
        fair = sma(closes, 20)
        mean50 = sma(closes, 50)
        volatility = return_volatility(closes)
        # Snapshot has no quality field; a tight spread stands in for data quality
        data_quality = max(0.0, 1.0 - context.snapshot.spread_bps / 100.0)

        return {
            "momentum": long_leg * 0.8 - short_leg * 0.2,
            "value": (fair - price) / fair if fair else 0.0,
            "quality": data_quality * (1 - min(volatility, 0.5)),
            "mean_reversion": -(price - mean50) / mean50 if mean50 else 0.0,
            "volume": volume_score(closes, [c.volume for c in context.candles]),
        }

    def evaluate(self, context: StrategyContext) -> Optional[StrategySignal]:
        factors = self.factors(context)
        if factors is None:
            return None

        raw = sum(factors[name] * self.weights.get(name, 0.0) for name in factors)
        values: List[float] = list(factors.values())
        agreement = max(0.5, 1.0 - statistics.pstdev(values))
        summary = ", ".join(f"{k}={v:+.3f}" for k, v in factors.items())
        return self.signal(raw, agreement, f"factor composite {raw:+.3f} ({summary})")
