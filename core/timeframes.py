"""
Core: Multi-Timeframe Alignment

Computes a directional read on three horizons (higher / medium / lower) and
reports whether they agree.

Per horizon, three independent indicators vote:
- trend:     fast EMA vs slow EMA
- momentum:  RSI and MACD histogram on the same side of neutral
- strength:  ADX above threshold, direction from +DI / -DI

A horizon is bullish/bearish only when at least two indicators agree.
The analysis is aligned when at least two horizons share the same
non-neutral direction; confidence = agreeing / 3 * confidence_cap.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Literal, Mapping, Optional, Sequence
import logging

from core.exceptions import InsufficientHistory
from core.indicators import adx, ema, macd, rsi
from core.models import Candle

logger = logging.getLogger(__name__)

Horizon = Literal["higher", "medium", "lower"]
Direction = Literal["bullish", "bearish", "neutral"]

HORIZONS: tuple = ("higher", "medium", "lower")


@dataclass(frozen=True)
class TimeframeSignal:
    horizon: Horizon
    direction: Direction
    confidence: float
    indicators: Dict[str, float] = field(default_factory=dict)
    reasoning: str = ""


@dataclass(frozen=True)
class AlignmentResult:
    aligned: bool
    direction: Direction
    confidence: float
    signals: Dict[str, TimeframeSignal]
    reasoning: str

    @property
    def trade_side(self) -> Optional[str]:
        """buy/sell when aligned, else None."""
        if not self.aligned:
            return None
        return "buy" if self.direction == "bullish" else "sell"


def resample(candles: Sequence[Candle], factor: int) -> List[Candle]:
    """
    Aggregate consecutive groups of `factor` bars into one bar.

    Groups are anchored on the most recent bar so the last output bar always
    ends at the latest candle; an incomplete oldest group is dropped.
    """
    if factor <= 1:
        return list(candles)
    usable = len(candles) - (len(candles) % factor)
    start = len(candles) - usable
    out: List[Candle] = []
    for i in range(start, len(candles), factor):
        group = candles[i:i + factor]
        out.append(Candle(
            open=group[0].open,
            high=max(c.high for c in group),
            low=min(c.low for c in group),
            close=group[-1].close,
            volume=sum(c.volume for c in group),
            timestamp=group[-1].timestamp,
        ))
    return out


class TimeframeAligner:
    """Stateless evaluator of three-horizon agreement."""

    def __init__(self, config: Optional[Dict] = None):
        cfg = config or {}
        factors = cfg.get("resample_factors") or {}
        self.resample_factors: Dict[str, int] = {
            "higher": int(factors.get("higher", 16)),
            "medium": int(factors.get("medium", 4)),
            "lower": int(factors.get("lower", 1)),
        }
        self.ema_fast = int(cfg.get("ema_fast", 12))
        self.ema_slow = int(cfg.get("ema_slow", 26))
        self.rsi_period = int(cfg.get("rsi_period", 14))
        self.macd_fast = int(cfg.get("macd_fast", 12))
        self.macd_slow = int(cfg.get("macd_slow", 26))
        self.macd_signal = int(cfg.get("macd_signal", 9))
        self.adx_period = int(cfg.get("adx_period", 14))
        self.adx_threshold = float(cfg.get("adx_threshold", 20.0))
        self.rsi_bull = float(cfg.get("rsi_bull", 50.0))
        self.rsi_bear = float(cfg.get("rsi_bear", 50.0))
        self.confidence_cap = float(cfg.get("confidence_cap", 0.9))

    @property
    def min_bars(self) -> int:
        """Bars each horizon needs for its longest lookback."""
        return max(
            self.ema_slow,
            self.rsi_period + 1,
            self.macd_slow + self.macd_signal,
            2 * self.adx_period + 1,
        )

    @property
    def min_candles(self) -> int:
        """Base-resolution candles needed before any horizon can be evaluated."""
        return self.min_bars * max(self.resample_factors.values())

    def analyze(self, candles: Sequence[Candle]) -> AlignmentResult:
        """Resample one base series into the three horizons and evaluate them."""
        if len(candles) < self.min_candles:
            return self._neutral(f"insufficient history: need {self.min_candles} candles, have {len(candles)}")
        series = {h: resample(candles, self.resample_factors[h]) for h in HORIZONS}
        return self.analyze_series(series)

    def analyze_series(self, series: Mapping[str, Sequence[Candle]]) -> AlignmentResult:
        """Evaluate horizons that were sourced separately (already at their resolution)."""
        signals: Dict[str, TimeframeSignal] = {}
        try:
            for horizon in HORIZONS:
                signals[horizon] = self.evaluate_horizon(horizon, series.get(horizon) or [])
        except InsufficientHistory as exc:
            return self._neutral(f"insufficient history: {exc}")
        return self.align(signals)

    def evaluate_horizon(self, horizon: str, candles: Sequence[Candle]) -> TimeframeSignal:
        if len(candles) < self.min_bars:
            raise InsufficientHistory(required=self.min_bars, available=len(candles), what=f"{horizon} bars")

        closes = [c.close for c in candles]
        highs = [c.high for c in candles]
        lows = [c.low for c in candles]

        fast = ema(closes, self.ema_fast)
        slow = ema(closes, self.ema_slow)
        rsi_value = rsi(closes, self.rsi_period)
        _, _, histogram = macd(closes, self.macd_fast, self.macd_slow, self.macd_signal)
        adx_value, plus_di, minus_di = adx(highs, lows, closes, self.adx_period)

        votes: List[str] = []
        if fast > slow:
            votes.append("bullish")
        elif fast < slow:
            votes.append("bearish")

        if rsi_value > self.rsi_bull and histogram > 0:
            votes.append("bullish")
        elif rsi_value < self.rsi_bear and histogram < 0:
            votes.append("bearish")

        if adx_value >= self.adx_threshold:
            if plus_di > minus_di:
                votes.append("bullish")
            elif minus_di > plus_di:
                votes.append("bearish")

        bulls = votes.count("bullish")
        bears = votes.count("bearish")
        if bulls >= 2:
            direction: Direction = "bullish"
            agreeing = bulls
        elif bears >= 2:
            direction = "bearish"
            agreeing = bears
        else:
            direction = "neutral"
            agreeing = 0

        confidence = round(agreeing / 3.0, 4) if agreeing else 0.3
        indicators = {
            "ema_fast": fast,
            "ema_slow": slow,
            "rsi": rsi_value,
            "macd_hist": histogram,
            "adx": adx_value,
            "plus_di": plus_di,
            "minus_di": minus_di,
        }
        reasoning = (
            f"{horizon}: {direction} ({bulls} bull / {bears} bear votes, "
            f"RSI {rsi_value:.1f}, ADX {adx_value:.1f})"
        )
        return TimeframeSignal(horizon=horizon, direction=direction, confidence=confidence,
                               indicators=indicators, reasoning=reasoning)

    def align(self, signals: Mapping[str, TimeframeSignal]) -> AlignmentResult:
        """Apply the 2-of-3 agreement rule to per-horizon signals."""
        directions = [signals[h].direction for h in HORIZONS if h in signals]
        bulls = directions.count("bullish")
        bears = directions.count("bearish")

        if bulls >= 2:
            direction: Direction = "bullish"
            count = bulls
        elif bears >= 2:
            direction = "bearish"
            count = bears
        else:
            return AlignmentResult(
                aligned=False,
                direction="neutral",
                confidence=0.0,
                signals=dict(signals),
                reasoning=f"timeframes not aligned ({bulls} bullish / {bears} bearish)",
            )

        confidence = round((count / 3.0) * self.confidence_cap, 4)
        logger.debug(f"Timeframes aligned {direction} ({count}/3, conf={confidence:.2f})")
        return AlignmentResult(
            aligned=True,
            direction=direction,
            confidence=confidence,
            signals=dict(signals),
            reasoning=f"{count}/3 timeframes {direction}",
        )

    @staticmethod
    def _neutral(reason: str) -> AlignmentResult:
        logger.debug(f"Timeframes neutral: {reason}")
        return AlignmentResult(aligned=False, direction="neutral", confidence=0.0, signals={}, reasoning=reason)
