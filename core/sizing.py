"""
Core: Position Sizing (fractional Kelly)

f* = (p*b - q) / b, with p = win probability, q = 1 - p, b = reward:risk.

The applied fraction is f* x safety fraction x regime size multiplier x
volatility tier, clamped to [0, max_position_pct / 100]. No edge (f* <= 0) always
sizes to zero.

The sizer also owns the rolling trade-outcome history. Win probability
blends realized win rate with model confidence once enough trades exist,
and the SignalEnsemble reads the same history to degrade itself after a
losing streak.
"""

from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Optional
import logging
import threading

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SizingResult:
    notional_usd: float
    quantity: float
    kelly_fraction: float
    rationale: str
    full_kelly: float = 0.0
    win_probability: float = 0.0
    reward_risk: float = 0.0

    @property
    def is_zero(self) -> bool:
        return self.notional_usd <= 0


@dataclass(frozen=True)
class TradeOutcome:
    win: bool
    profit: float
    loss: float


class PerformanceTracker:
    """
    Bounded, thread-safe history of closed-trade outcomes.

    Outcomes are appended from the monitoring thread (closes) and read from
    the decision thread (sizing, ensemble gating).
    """

    def __init__(self, max_history: int = 100):
        self.max_history = max_history
        self._history: Deque[TradeOutcome] = deque(maxlen=max_history)
        self._lock = threading.Lock()

    def record(self, pnl: float) -> TradeOutcome:
        outcome = TradeOutcome(win=pnl > 0, profit=max(pnl, 0.0), loss=min(pnl, 0.0))
        with self._lock:
            self._history.append(outcome)
        return outcome

    def __len__(self) -> int:
        with self._lock:
            return len(self._history)

    def win_rate(self, last_n: Optional[int] = None) -> Optional[float]:
        """Win rate over the most recent `last_n` outcomes, None if empty."""
        with self._lock:
            outcomes = list(self._history)
        if last_n is not None:
            outcomes = outcomes[-last_n:]
        if not outcomes:
            return None
        return sum(1 for o in outcomes if o.win) / len(outcomes)

    def stats(self) -> Dict[str, float]:
        with self._lock:
            outcomes = list(self._history)
        if not outcomes:
            return {
                "total_trades": 0,
                "win_rate": 0.0,
                "avg_profit": 0.0,
                "avg_loss": 0.0,
                "profit_factor": 0.0,
            }
        wins = [o for o in outcomes if o.win]
        losses = [o for o in outcomes if not o.win]
        total_profit = sum(o.profit for o in wins)
        total_loss = sum(abs(o.loss) for o in losses)
        return {
            "total_trades": len(outcomes),
            "win_rate": len(wins) / len(outcomes),
            "avg_profit": total_profit / len(wins) if wins else 0.0,
            "avg_loss": total_loss / len(losses) if losses else 0.0,
            "profit_factor": total_profit / total_loss if total_loss > 0 else 0.0,
        }


def volatility_adjustment(volatility: Optional[float]) -> float:
    """Size multiplier by volatility tier (fractional volatility, 0.03 == 3%)."""
    if volatility is None:
        return 1.0
    if volatility <= 0.03:
        return 1.0
    if volatility <= 0.05:
        return 0.8
    if volatility <= 0.08:
        return 0.5
    return 0.25


class PositionSizer:
    """
    Fractional-Kelly sizer.

    Config (policy.yaml `sizing`):
        kelly_fraction: Safety fraction of full Kelly (default 0.5)
        max_position_pct: Hard per-trade ceiling, percent of balance (default 15.0)
        min_trade_usd: Notional below which the trade is rejected (default 10)
        min_history: Outcomes needed before blending in realized win rate (default 10)
        blend_window: Outcomes used for the realized win rate (default 50)
        history_weight: Weight of realized win rate in the blend (default 0.7)
        max_history: Outcomes retained (default 100)
    """

    def __init__(self, config: Optional[Dict] = None, tracker: Optional[PerformanceTracker] = None):
        cfg = config or {}
        self.kelly_fraction = float(cfg.get("kelly_fraction", 0.5))
        self.max_position_pct = float(cfg.get("max_position_pct", 15.0))
        self.min_trade_usd = float(cfg.get("min_trade_usd", 10.0))
        self.min_history = int(cfg.get("min_history", 10))
        self.blend_window = int(cfg.get("blend_window", 50))
        self.history_weight = float(cfg.get("history_weight", 0.7))
        self.tracker = tracker or PerformanceTracker(int(cfg.get("max_history", 100)))

        if not 0 < self.kelly_fraction <= 1:
            raise ValueError(f"kelly_fraction must be in (0, 1], got {self.kelly_fraction}")
        if not 0 < self.max_position_pct <= 100:
            raise ValueError(f"max_position_pct must be in (0, 100], got {self.max_position_pct}")

        logger.info(
            f"Initialized PositionSizer (kelly x{self.kelly_fraction}, "
            f"cap {self.max_position_pct:.1f}%, min ${self.min_trade_usd:.2f})"
        )

    @property
    def max_fraction(self) -> float:
        """Per-trade ceiling as a fraction of balance."""
        return self.max_position_pct / 100.0

    def estimate_win_probability(self, confidence: float) -> float:
        """Blend realized win rate with model confidence; raw confidence while history is thin."""
        if len(self.tracker) < self.min_history:
            return confidence
        win_rate = self.tracker.win_rate(self.blend_window) or 0.0
        return win_rate * self.history_weight + confidence * (1 - self.history_weight)

    @staticmethod
    def reward_risk(entry: float, stop: float, target: float, side: str) -> float:
        """
        Reward:risk from stop/target distances.

        Returns 0.0 when the stop is on the wrong side of entry (no defined risk).
        """
        if side in ("buy", "long"):
            reward = target - entry
            risk = entry - stop
        else:
            reward = entry - target
            risk = stop - entry
        if risk <= 0 or reward <= 0:
            return 0.0
        return reward / risk

    @staticmethod
    def full_kelly(p: float, b: float) -> float:
        if b <= 0:
            return 0.0
        q = 1.0 - p
        return (p * b - q) / b

    def size(
        self,
        balance_usd: float,
        price: float,
        win_probability: float,
        reward_risk: float,
        regime_multiplier: float = 1.0,
        volatility: Optional[float] = None,
    ) -> SizingResult:
        """
        Compute notional and quantity for one trade.

        Args:
            balance_usd: Account balance
            price: Current price (for quantity)
            win_probability: Estimated p in [0, 1]
            reward_risk: b, profit distance / loss distance
            regime_multiplier: RegimeState.size_multiplier
            volatility: Snapshot volatility for the tier adjustment (optional)
        """
        p = max(0.0, min(1.0, win_probability))
        kelly = self.full_kelly(p, reward_risk)

        if kelly <= 0 or balance_usd <= 0 or price <= 0:
            return self._zero(kelly, p, reward_risk,
                              f"no edge: full Kelly {kelly:.4f} (p={p:.2f}, b={reward_risk:.2f})")

        vol_adj = volatility_adjustment(volatility)
        raw = kelly * self.kelly_fraction * regime_multiplier * vol_adj
        fraction = max(0.0, min(raw, self.max_fraction))
        notional = balance_usd * fraction

        rationale = (
            f"Kelly {kelly:.2%} -> x{self.kelly_fraction} safety x{regime_multiplier} regime "
            f"x{vol_adj} vol = {raw:.2%}"
        )
        if raw > self.max_fraction:
            rationale += f" (capped at {self.max_position_pct:.1f}%)"
        rationale += f" = ${notional:,.2f}"

        if notional < self.min_trade_usd:
            return self._zero(kelly, p, reward_risk,
                              f"{rationale}; below minimum trade ${self.min_trade_usd:.2f}")

        logger.info(f"Sizing: {rationale}")
        return SizingResult(
            notional_usd=notional,
            quantity=notional / price,
            kelly_fraction=fraction,
            rationale=rationale,
            full_kelly=kelly,
            win_probability=p,
            reward_risk=reward_risk,
        )

    def record_outcome(self, pnl: float) -> None:
        """Record a closed trade's realized P&L."""
        outcome = self.tracker.record(pnl)
        logger.debug(f"Recorded {'win' if outcome.win else 'loss'} ({pnl:+.2f}); {len(self.tracker)} in history")

    def stats(self) -> Dict[str, float]:
        return self.tracker.stats()

    @staticmethod
    def _zero(kelly: float, p: float, b: float, rationale: str) -> SizingResult:
        logger.debug(f"Sizing: zero ({rationale})")
        return SizingResult(
            notional_usd=0.0,
            quantity=0.0,
            kelly_fraction=0.0,
            rationale=rationale,
            full_kelly=kelly,
            win_probability=p,
            reward_risk=b,
        )
