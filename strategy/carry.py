"""
Carry Strategy (FX)

Long the higher-yielding currency of a pair: carry = base rate - quote rate.
A positive differential means a long position earns interest. Price momentum
on the same side adds confidence.
"""

import re
from typing import Any, Dict, Optional, Tuple
import logging

from core.indicators import momentum
from strategy.base_strategy import Strategy, StrategyContext, StrategySignal

logger = logging.getLogger(__name__)

DEFAULT_RATES: Dict[str, float] = {
    "USD": 5.50,
    "EUR": 4.00,
    "GBP": 5.00,
    "AUD": 4.35,
    "JPY": 0.10,
}

_PAIR_RE = re.compile(r"^([A-Z]{3})[-/_]?([A-Z]{3,4})$")


def parse_pair(symbol: str) -> Optional[Tuple[str, str]]:
    """
    Split an FX symbol into (base, quote).

    Accepts EURUSD, EUR-USD, EUR/USD and EUR_USD. A USDT quote is treated as USD.
    """
    match = _PAIR_RE.match(symbol.upper())
    if not match:
        return None
    base, quote = match.groups()
    if quote == "USDT":
        quote = "USD"
    if len(quote) != 3:
        return None
    return base, quote


class CarryStrategy(Strategy):
    """
    Config params:
        rates: Mapping of currency -> policy rate in percent
        full_scale: Differential (percentage points) mapped to score 1.0 (default 2.0)
        momentum_lookback: Bars for the confirming rate of change (default 20)
        momentum_threshold: Rate of change that counts as confirmation (default 0.02)
    """

    family = "carry"

    def __init__(self, name: str, config: Dict[str, Any]):
        super().__init__(name, config)
        params = config.get("params", {}) or {}
        self.rates = {k.upper(): float(v) for k, v in (params.get("rates") or DEFAULT_RATES).items()}
        self.full_scale = float(params.get("full_scale", 2.0))
        self.momentum_lookback = int(params.get("momentum_lookback", 20))
        self.momentum_threshold = float(params.get("momentum_threshold", 0.02))

    def carry(self, symbol: str) -> Optional[float]:
        pair = parse_pair(symbol)
        if pair is None:
            return None
        base, quote = pair
        if base not in self.rates or quote not in self.rates:
            return None
        return self.rates[base] - self.rates[quote]

    def evaluate(self, context: StrategyContext) -> Optional[StrategySignal]:
        differential = self.carry(context.symbol)
        if differential is None:
            logger.debug(f"[{self.name}] No rate data for {context.symbol}")
            return None
        if differential == 0:
            return self.signal(0.0, 0.2, "zero carry")

        score = differential / self.full_scale if self.full_scale > 0 else 0.0
        confidence = 0.55
        if abs(differential) > 1.0:
            confidence += 0.10

        rationale = f"carry {differential:+.2f}pp"
        closes = context.closes
        if len(closes) > self.momentum_lookback:
            roc = momentum(closes, self.momentum_lookback)
            if (roc >= self.momentum_threshold and differential > 0) or \
                    (roc <= -self.momentum_threshold and differential < 0):
                confidence += 0.15
                rationale += f", momentum confirms ({roc:+.2%})"
            elif abs(roc) >= self.momentum_threshold:
                confidence -= 0.15
                rationale += f", momentum against ({roc:+.2%})"

        return self.signal(score, min(confidence, 0.9), rationale)
