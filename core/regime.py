"""
Core: Regime Classification

Classifies current market conditions for one symbol into
crisis / volatile / ranging / trending / off, from a rolling OHLCV window and
the current bid/ask spread.

Rules (checked in order):
- spread >= spread_off_bps            -> off       (trading unsafe)
- volatility >= crisis_volatility     -> crisis    (never trade)
- volatility >= volatile_volatility   -> volatile  (half size, wider stops)
- volatility <  ranging_volatility    -> ranging   (full size, tighter stops)
- otherwise                           -> trending

Volatility is the normalized average true range (ATR / last close).
Pure function of its inputs; insufficient or non-finite data classifies as off.
"""

from dataclasses import dataclass
from typing import Dict, Literal, Optional, Sequence
import logging
import math

from core.exceptions import InsufficientHistory
from core.indicators import normalized_range
from core.models import Candle

logger = logging.getLogger(__name__)

RegimeType = Literal["crisis", "volatile", "ranging", "trending", "off"]

NON_TRADEABLE: frozenset = frozenset({"crisis", "off"})


@dataclass(frozen=True)
class RegimeProfile:
    """Multipliers consumed by sizing and stop placement."""
    size_multiplier: float
    stop_multiplier: float


DEFAULT_PROFILES: Dict[str, RegimeProfile] = {
    "crisis": RegimeProfile(size_multiplier=0.0, stop_multiplier=0.0),
    "off": RegimeProfile(size_multiplier=0.0, stop_multiplier=0.0),
    "volatile": RegimeProfile(size_multiplier=0.5, stop_multiplier=1.5),
    "ranging": RegimeProfile(size_multiplier=1.0, stop_multiplier=0.75),
    "trending": RegimeProfile(size_multiplier=1.0, stop_multiplier=1.0),
}


@dataclass(frozen=True)
class RegimeState:
    """Market regime for a symbol at one tick (recomputed, never persisted)."""
    state: RegimeType
    volatility: float
    confidence: float
    spread_bps: float = 0.0
    size_multiplier: float = 0.0
    stop_multiplier: float = 0.0
    reason: str = ""

    @property
    def tradeable(self) -> bool:
        return self.state not in NON_TRADEABLE and self.size_multiplier > 0


class RegimeClassifier:
    """
    Classify a symbol's regime from volatility and spread.

    Thresholds come from the `regime` section of policy.yaml.
    """

    def __init__(self, config: Optional[Dict] = None):
        cfg = config or {}
        self.atr_period = int(cfg.get("atr_period", 14))
        self.spread_off_bps = float(cfg.get("spread_off_bps", 25.0))
        self.crisis_volatility = float(cfg.get("crisis_volatility", 0.06))
        self.volatile_volatility = float(cfg.get("volatile_volatility", 0.03))
        self.ranging_volatility = float(cfg.get("ranging_volatility", 0.005))

        self.profiles = dict(DEFAULT_PROFILES)
        for name, overrides in (cfg.get("profiles") or {}).items():
            if not isinstance(name, str):
                # YAML reads a bare `off:` key as the boolean False
                raise ValueError(f"regime profile names must be strings, got {name!r}; quote the key")
            base = self.profiles.get(name, RegimeProfile(0.0, 0.0))
            self.profiles[name] = RegimeProfile(
                size_multiplier=float(overrides.get("size_multiplier", base.size_multiplier)),
                stop_multiplier=float(overrides.get("stop_multiplier", base.stop_multiplier)),
            )

        if not (self.ranging_volatility < self.volatile_volatility < self.crisis_volatility):
            raise ValueError(
                "regime thresholds must satisfy ranging < volatile < crisis, got "
                f"{self.ranging_volatility} / {self.volatile_volatility} / {self.crisis_volatility}"
            )

        logger.info(
            f"Initialized RegimeClassifier (spread_off={self.spread_off_bps}bps, "
            f"ranging<{self.ranging_volatility:.4f}, volatile>={self.volatile_volatility:.4f}, "
            f"crisis>={self.crisis_volatility:.4f})"
        )

    @property
    def min_candles(self) -> int:
        return self.atr_period + 1

    def classify(self, candles: Sequence[Candle], spread_bps: Optional[float]) -> RegimeState:
        """
        Classify the current regime.

        Args:
            candles: Recent OHLCV window, most recent last
            spread_bps: Current bid/ask spread in basis points

        Returns:
            RegimeState (off when data is missing or invalid)
        """
        if spread_bps is None or not math.isfinite(spread_bps) or spread_bps < 0:
            return self._state("off", 0.0, 1.0, 0.0, f"spread unavailable ({spread_bps})")

        try:
            highs = [c.high for c in candles]
            lows = [c.low for c in candles]
            closes = [c.close for c in candles]
            volatility = normalized_range(highs, lows, closes, self.atr_period)
        except InsufficientHistory as exc:
            logger.debug(f"Regime: insufficient history ({exc}), failing closed")
            return self._state("off", 0.0, 1.0, spread_bps, f"insufficient data: {exc}")

        if not math.isfinite(volatility) or not closes[-1] > 0:
            return self._state("off", 0.0, 1.0, spread_bps, "non-finite or non-positive prices in candle window")

        if spread_bps >= self.spread_off_bps:
            return self._state(
                "off", volatility, 1.0, spread_bps,
                f"spread {spread_bps:.1f}bps >= {self.spread_off_bps:.1f}bps",
            )

        if volatility >= self.crisis_volatility:
            confidence = min(1.0, 0.7 + (volatility - self.crisis_volatility) / self.crisis_volatility)
            return self._state("crisis", volatility, confidence, spread_bps,
                               f"volatility {volatility:.4f} >= crisis {self.crisis_volatility:.4f}")

        if volatility >= self.volatile_volatility:
            confidence = self._band_confidence(volatility, self.volatile_volatility, self.crisis_volatility)
            return self._state("volatile", volatility, confidence, spread_bps,
                               f"volatility {volatility:.4f} in volatile band")

        if volatility < self.ranging_volatility:
            confidence = self._band_confidence(volatility, 0.0, self.ranging_volatility)
            return self._state("ranging", volatility, confidence, spread_bps,
                               f"volatility {volatility:.4f} < ranging {self.ranging_volatility:.4f}")

        confidence = self._band_confidence(volatility, self.ranging_volatility, self.volatile_volatility)
        return self._state("trending", volatility, confidence, spread_bps,
                           f"volatility {volatility:.4f} in trending band")

    def profile(self, regime: str) -> RegimeProfile:
        return self.profiles.get(regime, self.profiles["off"])

    @staticmethod
    def _band_confidence(value: float, low: float, high: float) -> float:
        """Higher confidence near the middle of a band, lower near its edges."""
        width = high - low
        if width <= 0:
            return 0.5
        distance = min(value - low, high - value) / width
        return round(0.5 + min(distance, 0.5), 4)

    def _state(self, regime: RegimeType, volatility: float, confidence: float,
               spread_bps: float, reason: str) -> RegimeState:
        profile = self.profile(regime)
        state = RegimeState(
            state=regime,
            volatility=volatility,
            confidence=confidence,
            spread_bps=spread_bps,
            size_multiplier=profile.size_multiplier,
            stop_multiplier=profile.stop_multiplier,
            reason=reason,
        )
        logger.debug(f"Regime: {regime.upper()} (conf={confidence:.2f}) | {reason}")
        return state
