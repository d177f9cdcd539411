"""
Signal Ensemble - Merge independent alpha models into one directional vote.

Applies deterministic voting rules to the signals of one symbol at one tick.

Voting Rules:
1. Each model votes buy/sell/none by thresholding its score
2. Models are grouped by family; a family's direction is its weighted score
3. Two or more families agree and none oppose -> CONSENSUS
   (confidence = weighted average of the contributing models)
4. Families disagree -> VETO (stand down, never averaged)
5. Fewer than two directional families -> a single strong model may
   OVERRIDE, with a capped confidence penalty
6. Otherwise -> NONE

After a losing streak (win rate below floor over the last N closed trades)
output confidence is degraded; if it drops below the minimum the ensemble
abstains with AUTO_DISABLED.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Literal, Optional, Sequence, Tuple

from core.sizing import PerformanceTracker
from strategy.base_strategy import StrategySignal

logger = logging.getLogger(__name__)

Direction = Literal["buy", "sell", "none"]
Resolution = Literal["CONSENSUS", "OVERRIDE", "VETO", "NONE", "AUTO_DISABLED"]


# ─── Ensemble Result ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class EnsembleDecision:
    """Result of combining the model signals for one symbol."""
    direction: Direction
    confidence: float
    rationale: str
    contributing_models: Tuple[str, ...] = ()
    resolution: Resolution = "NONE"
    family_votes: Dict[str, str] = field(default_factory=dict)

    @property
    def is_directional(self) -> bool:
        return self.direction != "none"

    def fingerprint(self) -> str:
        """Stable summary of what produced this decision (for idempotency keys)."""
        models = ",".join(sorted(self.contributing_models))
        return f"{self.direction}:{self.resolution}:{models}:{self.confidence:.4f}"


# ─── Signal Ensemble ───────────────────────────────────────────────────────

class SignalEnsemble:
    """
    Combines normalized model signals into an EnsembleDecision.

    Stateless between calls except for reading the shared PerformanceTracker.
    """

    def __init__(self, config: Optional[Dict] = None, tracker: Optional[PerformanceTracker] = None):
        """
        Args:
            config: `ensemble` section of policy.yaml
            tracker: Rolling trade-outcome history (owned by the PositionSizer)
        """
        cfg = config or {}
        self.vote_threshold = float(cfg.get("vote_threshold", 0.1))
        self.min_families = int(cfg.get("min_families", 2))
        self.override_score = float(cfg.get("override_score", 0.5))
        self.override_confidence = float(cfg.get("override_confidence", 0.6))
        self.override_penalty = float(cfg.get("override_penalty", 0.8))
        self.override_confidence_cap = float(cfg.get("override_confidence_cap", 0.6))
        self.min_trades_for_gate = int(cfg.get("min_trades_for_gate", 20))
        self.win_rate_window = int(cfg.get("win_rate_window", 20))
        self.win_rate_floor = float(cfg.get("win_rate_floor", 0.55))
        self.degraded_confidence_factor = float(cfg.get("degraded_confidence_factor", 0.5))
        self.min_confidence = float(cfg.get("min_confidence", 0.3))
        self.tracker = tracker

        logger.info(
            f"SignalEnsemble initialized: vote_threshold={self.vote_threshold}, "
            f"min_families={self.min_families}, override=|score|>{self.override_score} "
            f"& conf>{self.override_confidence}, win_rate_floor={self.win_rate_floor}"
        )

    def combine(self, signals: Sequence[StrategySignal]) -> EnsembleDecision:
        """
        Vote the signals into one decision.

        Args:
            signals: One signal per model that had an opinion this tick

        Returns:
            EnsembleDecision (direction "none" when standing down)
        """
        if not signals:
            return EnsembleDecision("none", 0.0, "no model signals")

        by_family: Dict[str, List[StrategySignal]] = defaultdict(list)
        for s in signals:
            by_family[s.family].append(s)

        family_votes = {family: self._family_direction(members) for family, members in by_family.items()}
        buy_families = [f for f, d in family_votes.items() if d == "buy"]
        sell_families = [f for f, d in family_votes.items() if d == "sell"]

        # Case 1: families disagree -> hard veto
        if buy_families and sell_families:
            decision = EnsembleDecision(
                direction="none",
                confidence=0.0,
                rationale=(
                    f"families disagree: buy={sorted(buy_families)} vs sell={sorted(sell_families)} "
                    f"- standing down"
                ),
                resolution="VETO",
                family_votes=family_votes,
            )
            logger.info(f"Ensemble: {decision.rationale}")
            return decision

        direction: Direction = "buy" if buy_families else ("sell" if sell_families else "none")
        agreeing = buy_families or sell_families

        # Case 2: independent families agree -> consensus
        if len(agreeing) >= self.min_families:
            decision = self._consensus(direction, agreeing, by_family, family_votes)
        else:
            # Case 3: at most one directional family -> single-model override
            decision = self._override(signals, direction, family_votes)

        if decision.is_directional:
            decision = self._apply_performance_gate(decision)

        logger.info(
            f"Ensemble: {decision.resolution} {decision.direction} "
            f"(conf={decision.confidence:.2f}) | {decision.rationale}"
        )
        return decision

    def _vote(self, signal: StrategySignal) -> Direction:
        return signal.direction(self.vote_threshold)

    def _family_direction(self, members: Sequence[StrategySignal]) -> Direction:
        total_weight = sum(m.weight for m in members)
        if total_weight <= 0:
            return "none"
        score = sum(m.score * m.weight for m in members) / total_weight
        if score >= self.vote_threshold:
            return "buy"
        if score <= -self.vote_threshold:
            return "sell"
        return "none"

    def _consensus(
        self,
        direction: Direction,
        families: Sequence[str],
        by_family: Dict[str, List[StrategySignal]],
        family_votes: Dict[str, str],
    ) -> EnsembleDecision:
        contributors = [
            s for f in families for s in by_family[f]
            if self._vote(s) == direction
        ]
        total_weight = sum(s.weight for s in contributors)
        if total_weight > 0:
            confidence = sum(s.confidence * s.weight for s in contributors) / total_weight
        else:
            confidence = 0.0
        return EnsembleDecision(
            direction=direction,
            confidence=round(confidence, 4),
            rationale=f"{len(families)} families agree {direction}: {sorted(families)}",
            contributing_models=tuple(s.strategy for s in contributors),
            resolution="CONSENSUS",
            family_votes=family_votes,
        )

    def _override(
        self,
        signals: Sequence[StrategySignal],
        family_direction: Direction,
        family_votes: Dict[str, str],
    ) -> EnsembleDecision:
        candidates = [
            s for s in signals
            if abs(s.score) > self.override_score and s.confidence > self.override_confidence
        ]
        if family_direction != "none":
            candidates = [s for s in candidates if self._vote(s) == family_direction]

        if not candidates:
            return EnsembleDecision(
                direction="none",
                confidence=0.0,
                rationale="no consensus and no model strong enough to act alone",
                resolution="NONE",
                family_votes=family_votes,
            )

        strongest = max(candidates, key=lambda s: (abs(s.score) * s.confidence, s.strategy))
        confidence = min(strongest.confidence * self.override_penalty, self.override_confidence_cap)
        return EnsembleDecision(
            direction=self._vote(strongest),
            confidence=round(confidence, 4),
            rationale=(
                f"single-model override by {strongest.strategy} "
                f"(score={strongest.score:+.2f}, conf={strongest.confidence:.2f}): {strongest.rationale}"
            ),
            contributing_models=(strongest.strategy,),
            resolution="OVERRIDE",
            family_votes=family_votes,
        )

    def _apply_performance_gate(self, decision: EnsembleDecision) -> EnsembleDecision:
        if self.tracker is None or len(self.tracker) < self.min_trades_for_gate:
            return decision

        win_rate = self.tracker.win_rate(self.win_rate_window)
        if win_rate is None or win_rate >= self.win_rate_floor:
            return decision

        degraded = round(decision.confidence * self.degraded_confidence_factor, 4)
        note = f"win rate {win_rate:.0%} < {self.win_rate_floor:.0%} over last {self.win_rate_window} trades"
        if degraded < self.min_confidence:
            logger.warning(f"Ensemble auto-disabled: {note}")
            return EnsembleDecision(
                direction="none",
                confidence=0.0,
                rationale=f"auto_disabled: {note}",
                contributing_models=decision.contributing_models,
                resolution="AUTO_DISABLED",
                family_votes=decision.family_votes,
            )

        return EnsembleDecision(
            direction=decision.direction,
            confidence=degraded,
            rationale=f"{decision.rationale}; confidence degraded ({note})",
            contributing_models=decision.contributing_models,
            resolution=decision.resolution,
            family_votes=decision.family_votes,
        )
