"""
Base Strategy Interface

Every alpha model implements one capability: given an immutable
StrategyContext, return a normalized StrategySignal (or None when it has
nothing to say). New models are added as new subclasses, never as forks of
the pipeline.

Architecture:
- Strategy: abstract base with evaluate()
- StrategyContext: immutable market view passed to strategies
- StrategySignal: normalized {direction, score, confidence, rationale}

Strategies never place orders, never touch account state and never mutate
the context.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Sequence
import logging

from core.models import Candle, MarketSnapshot
from core.regime import RegimeState
from core.timeframes import AlignmentResult

logger = logging.getLogger(__name__)

Vote = Literal["buy", "sell", "none"]


@dataclass(frozen=True)
class StrategyContext:
    """
    Immutable context passed to strategies.

    Attributes:
        symbol: Instrument being evaluated
        candles: Base-resolution OHLCV series, most recent last
        snapshot: Current market snapshot
        regime: Regime classification for this tick
        alignment: Multi-timeframe alignment for this tick (optional)
        timestamp: Tick timestamp
    """
    symbol: str
    candles: Sequence[Candle]
    snapshot: MarketSnapshot
    regime: RegimeState
    alignment: Optional[AlignmentResult] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def closes(self) -> List[float]:
        return [c.close for c in self.candles]


@dataclass(frozen=True)
class StrategySignal:
    """One model's normalized opinion. score is signed in [-1, 1]."""
    strategy: str
    family: str
    score: float
    confidence: float
    rationale: str = ""
    weight: float = 1.0

    def __post_init__(self):
        if not -1.0 <= self.score <= 1.0:
            raise ValueError(f"score must be in [-1, 1], got {self.score}")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be in [0, 1], got {self.confidence}")

    def direction(self, threshold: float) -> Vote:
        if self.score >= threshold:
            return "buy"
        if self.score <= -threshold:
            return "sell"
        return "none"


def clamp_score(value: float) -> float:
    return max(-1.0, min(1.0, value))


class Strategy(ABC):
    """
    Abstract base class for all alpha models.

    Subclasses implement evaluate(). run() wraps it with the enabled toggle,
    regime eligibility and error isolation so one broken model cannot take
    the tick down.
    """

    family: str = "generic"

    def __init__(self, name: str, config: Dict[str, Any]):
        """
        Args:
            name: Unique strategy identifier (e.g. "mean_reversion")
            config: Strategy-specific configuration from strategies.yaml
        """
        self.name = name
        self.config = config
        self._enabled = bool(config.get("enabled", False))
        self.family = config.get("family", self.family)
        self.weight = float(config.get("weight", 1.0))
        self.eligible_regimes = list(config.get("eligible_regimes") or [])

        logger.info(
            f"Initialized strategy '{name}': enabled={self._enabled}, family={self.family}, "
            f"weight={self.weight}"
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    def is_eligible(self, regime: str) -> bool:
        return not self.eligible_regimes or regime in self.eligible_regimes

    @abstractmethod
    def evaluate(self, context: StrategyContext) -> Optional[StrategySignal]:
        """
        Produce a signal for the context, or None.

        Contract:
        - MUST NOT mutate context or global state
        - MAY raise; run() logs and drops the signal
        """

    def signal(self, score: float, confidence: float, rationale: str) -> StrategySignal:
        """Build a signal tagged with this strategy's name, family and weight."""
        return StrategySignal(
            strategy=self.name,
            family=self.family,
            score=clamp_score(score),
            confidence=max(0.0, min(1.0, confidence)),
            rationale=rationale,
            weight=self.weight,
        )

    def run(self, context: StrategyContext) -> Optional[StrategySignal]:
        if not self._enabled:
            logger.debug(f"[{self.name}] Skipped (disabled)")
            return None
        if not self.is_eligible(context.regime.state):
            logger.debug(f"[{self.name}] Skipped (not eligible in {context.regime.state})")
            return None
        try:
            result = self.evaluate(context)
        except Exception as e:
            logger.error(f"[{self.name}] Error evaluating {context.symbol}: {e}", exc_info=True)
            return None
        if result is not None:
            logger.debug(
                f"[{self.name}] {context.symbol}: score={result.score:+.2f} "
                f"conf={result.confidence:.2f} ({result.rationale})"
            )
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name='{self.name}', enabled={self._enabled}, family={self.family})"
