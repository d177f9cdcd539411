"""
Trading Cycle Pipeline - per-symbol decision flow

Implements one tick for one symbol:
1. Fetch snapshot and candles (any I/O failure -> no trade)
2. Classify regime (crisis/off -> no trade)
3. Multi-timeframe alignment (not aligned -> no trade)
4. Collect strategy signals and vote them in the ensemble
5. ATR stops/targets and fractional-Kelly size
6. Risk gate
7. Hand the decision to the lifecycle manager

Every outcome resolves to a CycleResult; nothing escapes a tick.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Dict, Optional
import hashlib
import logging
import math
import threading
import uuid

from core.circuit_breaker import CircuitBreaker
from core.exceptions import (
    DataUnavailable,
    ExecutionFailure,
    InsufficientHistory,
    PersistenceFailure,
    RiskLimitBreached,
)
from core.indicators import atr
from core.interfaces import AccountLedger, MarketDataFeed
from core.ledger import account_state
from core.models import AccountState, Decision, split_ohlc
from core.position_manager import PositionLifecycleManager
from core.position_state import Position
from core.regime import RegimeClassifier, RegimeState
from core.risk import RiskDecision, RiskGate, TradeProposal
from core.sizing import PositionSizer, SizingResult
from core.timeframes import AlignmentResult, TimeframeAligner
from strategy.base_strategy import StrategyContext
from strategy.ensemble import EnsembleDecision, SignalEnsemble
from strategy.registry import StrategyRegistry

logger = logging.getLogger(__name__)


@dataclass
class CycleResult:
    """Result of evaluating one symbol at one tick"""
    symbol: str
    tick: int
    success: bool
    no_trade_reason: Optional[str] = None
    regime: Optional[RegimeState] = None
    alignment: Optional[AlignmentResult] = None
    ensemble: Optional[EnsembleDecision] = None
    sizing: Optional[SizingResult] = None
    risk: Optional[RiskDecision] = None
    decision: Optional[Decision] = None
    position: Optional[Position] = None
    confirmation_token: Optional[str] = None
    error: Optional[str] = None


def idempotency_key(symbol: str, tick: int, fingerprint: str, run_id: str = "") -> str:
    """
    Deterministic decision key from run id + symbol + tick + signal fingerprint.

    The tick counter restarts with the process, so run_id keeps keys from
    one run from colliding with the previous run's.
    """
    digest = hashlib.sha256(f"{run_id}|{symbol}|{tick}|{fingerprint}".encode("utf-8")).hexdigest()
    return f"dec_{digest[:16]}"


class TradingCyclePipeline:
    """
    Per-symbol decision pipeline.

    Stateless between ticks; all state lives in the injected collaborators.
    Evaluations for different symbols may run in parallel up to the risk
    gate; the gate check and the commit run one symbol at a time against a
    fresh account read, so parallel approvals cannot jointly exceed the
    exposure or position-count limits.
    """

    def __init__(
        self,
        feed: MarketDataFeed,
        ledger: AccountLedger,
        regime_classifier: RegimeClassifier,
        aligner: TimeframeAligner,
        strategy_registry: StrategyRegistry,
        ensemble: SignalEnsemble,
        sizer: PositionSizer,
        risk_gate: RiskGate,
        lifecycle: PositionLifecycleManager,
        circuit_breaker: Optional[CircuitBreaker] = None,
        config: Optional[Dict] = None,
        metrics=None,
        run_id: Optional[str] = None,
    ):
        """
        Args:
            config: `stops` section of policy.yaml (atr_period, stop_atr_multiple,
                target_rr, history_candles)
            run_id: Mixed into every idempotency key (default: random per instance)
        """
        cfg = config or {}
        self.atr_period = int(cfg.get("atr_period", 14))
        self.stop_atr_multiple = float(cfg.get("stop_atr_multiple", 2.0))
        self.target_rr = float(cfg.get("target_rr", 2.5))

        self.feed = feed
        self.ledger = ledger
        self.regime_classifier = regime_classifier
        self.aligner = aligner
        self.strategy_registry = strategy_registry
        self.ensemble = ensemble
        self.sizer = sizer
        self.risk_gate = risk_gate
        self.lifecycle = lifecycle
        self.circuit_breaker = circuit_breaker
        self.metrics = metrics
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self._commit_lock = threading.Lock()

        self.history_candles = max(
            int(cfg.get("history_candles", 0)),
            self.aligner.min_candles,
            self.regime_classifier.min_candles,
            self.atr_period + 1,
        )

        logger.info(
            f"Initialized TradingCyclePipeline (history={self.history_candles} candles, "
            f"stop={self.stop_atr_multiple}xATR{self.atr_period}, target={self.target_rr}R)"
        )

    def evaluate(self, symbol: str, tick: int, now: Optional[datetime] = None) -> CycleResult:
        """Run the full pipeline for one symbol; always returns a CycleResult."""
        now = now or datetime.now(timezone.utc)
        try:
            result = self._evaluate(symbol, tick, now)
        except Exception as exc:
            logger.error(f"Pipeline failed for {symbol} at tick {tick}: {exc}", exc_info=True)
            result = CycleResult(symbol, tick, False, no_trade_reason="pipeline_error", error=str(exc))

        if self.metrics:
            self.metrics.record_tick_outcome(result.no_trade_reason)
        return result

    def _evaluate(self, symbol: str, tick: int, now: datetime) -> CycleResult:
        if self.lifecycle.has_active_position(symbol):
            logger.debug(f"{symbol}: skipping, position already active")
            return CycleResult(symbol, tick, False, no_trade_reason="position_active")

        # Step 1: market data
        try:
            snapshot, candles = self._fetch(symbol)
            if len(candles) < self.regime_classifier.min_candles:
                raise InsufficientHistory(self.regime_classifier.min_candles, len(candles))
        except DataUnavailable as exc:
            logger.debug(f"{symbol}: {exc}")
            return CycleResult(symbol, tick, False, no_trade_reason="data_unavailable", error=str(exc))
        except InsufficientHistory as exc:
            logger.debug(f"{symbol}: {exc}")
            return CycleResult(symbol, tick, False, no_trade_reason="insufficient_history")

        # Step 2: regime
        regime = self.regime_classifier.classify(candles, snapshot.spread_bps)
        if not regime.tradeable:
            logger.debug(f"{symbol}: regime {regime.state} not tradeable ({regime.reason})")
            return CycleResult(symbol, tick, False, no_trade_reason=f"regime_{regime.state}", regime=regime)

        # Step 3: timeframe alignment
        if len(candles) < self.aligner.min_candles:
            logger.debug(f"{symbol}: {len(candles)} candles < {self.aligner.min_candles} for alignment")
            return CycleResult(symbol, tick, False, no_trade_reason="insufficient_history", regime=regime)
        alignment = self.aligner.analyze(candles)
        if not alignment.aligned:
            logger.debug(f"{symbol}: {alignment.reasoning}")
            return CycleResult(symbol, tick, False, no_trade_reason="not_aligned",
                               regime=regime, alignment=alignment)

        # Step 4: signals and ensemble
        context = StrategyContext(
            symbol=symbol,
            candles=candles,
            snapshot=snapshot,
            regime=regime,
            alignment=alignment,
            timestamp=now,
        )
        signals = self.strategy_registry.collect_signals(context)
        ensemble = self.ensemble.combine(signals)
        if not ensemble.is_directional:
            logger.debug(f"{symbol}: ensemble {ensemble.resolution}: {ensemble.rationale}")
            return CycleResult(symbol, tick, False, no_trade_reason=f"ensemble_{ensemble.resolution.lower()}",
                               regime=regime, alignment=alignment, ensemble=ensemble)
        if ensemble.direction != alignment.trade_side:
            logger.info(f"{symbol}: ensemble {ensemble.direction} against timeframes {alignment.direction}")
            return CycleResult(symbol, tick, False, no_trade_reason="direction_mismatch",
                               regime=regime, alignment=alignment, ensemble=ensemble)

        # Step 5: stops, targets, size
        side = ensemble.direction
        price = snapshot.price
        stop_loss, take_profit = self._stops(candles, price, side, regime)
        if stop_loss is None:
            return CycleResult(symbol, tick, False, no_trade_reason="no_stop_distance",
                               regime=regime, alignment=alignment, ensemble=ensemble)

        balance = self.ledger.get_balance()
        win_probability = self.sizer.estimate_win_probability(ensemble.confidence)
        reward_risk = self.sizer.reward_risk(price, stop_loss, take_profit, side)
        sizing = self.sizer.size(
            balance_usd=balance,
            price=price,
            win_probability=win_probability,
            reward_risk=reward_risk,
            regime_multiplier=regime.size_multiplier,
            volatility=snapshot.volatility,
        )
        if sizing.is_zero:
            logger.info(f"{symbol}: zero size ({sizing.rationale})")
            return CycleResult(symbol, tick, False, no_trade_reason="zero_size", regime=regime,
                               alignment=alignment, ensemble=ensemble, sizing=sizing)

        # Step 6: risk gate, then commit, serialized across symbols
        proposal = TradeProposal(
            symbol=symbol,
            side=side,
            notional_usd=sizing.notional_usd,
            entry_price=price,
            stop_loss=stop_loss,
            take_profit=take_profit,
            regime=regime,
            confidence=ensemble.confidence,
        )
        with self._commit_lock:
            return self._gate_and_commit(symbol, tick, proposal, regime, alignment, ensemble, sizing)

    def _gate_and_commit(self, symbol, tick, proposal, regime, alignment, ensemble, sizing) -> CycleResult:
        side = proposal.side
        price = proposal.entry_price
        risk = self.risk_gate.check(proposal, self.account())
        if not risk.allowed:
            return CycleResult(symbol, tick, False, no_trade_reason=f"risk_{risk.check}", regime=regime,
                               alignment=alignment, ensemble=ensemble, sizing=sizing, risk=risk)

        # Step 7: commit
        decision = Decision(
            action=side,
            symbol=symbol,
            size=sizing.quantity,
            stop_loss=proposal.stop_loss,
            take_profit=proposal.take_profit,
            rationale=f"{ensemble.rationale} | {alignment.reasoning} | {sizing.rationale}",
            idempotency_key=idempotency_key(symbol, tick, ensemble.fingerprint(), self.run_id),
            reference_price=price,
        )
        base = dict(regime=regime, alignment=alignment, ensemble=ensemble, sizing=sizing, decision=decision)

        last_check = self.risk_gate.check_circuit_breaker()
        if not last_check.allowed:
            logger.warning(f"{symbol}: circuit breaker tripped before commit, dropping decision")
            return CycleResult(symbol, tick, False, no_trade_reason="risk_circuit_breaker", risk=last_check, **base)

        try:
            opened = self.lifecycle.open(decision)
        except RiskLimitBreached as exc:
            logger.warning(f"{symbol}: rejected at commit: {exc.reason}")
            return CycleResult(symbol, tick, False, no_trade_reason=f"risk_{exc.check}",
                               risk=RiskDecision.deny(exc.check, exc.reason), **base)
        except ExecutionFailure as exc:
            return CycleResult(symbol, tick, False, no_trade_reason="execution_failed", risk=risk,
                               error=str(exc), **base)
        except PersistenceFailure as exc:
            return CycleResult(symbol, tick, False, no_trade_reason="persistence_failed", risk=risk,
                               error=str(exc), **base)

        logger.info(
            f"DECISION {side.upper()} {symbol} {decision.size:.6f} @ {price:.4f} "
            f"(${sizing.notional_usd:,.2f}, conf={ensemble.confidence:.2f}, {ensemble.resolution}) "
            f"-> {opened.position.state.value}"
        )
        return CycleResult(symbol, tick, True, risk=risk, position=opened.position,
                           confirmation_token=opened.confirmation_token, **base)

    def account(self) -> AccountState:
        """
        Ledger numbers plus entries the ledger cannot see yet.

        Proposed and pending-confirmation positions hold no fill, so the
        ledger does not count them; they still reserve exposure and a slot.
        """
        account = account_state(self.ledger)
        reserved_count, reserved_usd = self.lifecycle.reserved_exposure()
        if not reserved_count:
            return account
        return replace(
            account,
            open_exposure_usd=account.open_exposure_usd + reserved_usd,
            open_positions=account.open_positions + reserved_count,
        )

    def _fetch(self, symbol: str):
        try:
            snapshot = self.feed.get_snapshot(symbol)
            candles = list(self.feed.get_candles(symbol, self.history_candles))
        except DataUnavailable:
            raise
        except Exception as exc:
            raise DataUnavailable(f"market data for {symbol}", exc) from exc
        if snapshot is None or not snapshot.price or not math.isfinite(snapshot.price) or snapshot.price <= 0:
            raise DataUnavailable(f"snapshot price for {symbol}")
        return snapshot, candles

    def _stops(self, candles, price: float, side: str, regime: RegimeState):
        """ATR stop scaled by the regime, target at target_rr times the stop distance."""
        _, highs, lows, closes = split_ohlc(candles)
        distance = atr(highs, lows, closes, self.atr_period) * self.stop_atr_multiple * regime.stop_multiplier
        if distance <= 0 or distance >= price:
            return None, None
        if side == "buy":
            return price - distance, price + distance * self.target_rr
        return price + distance, price - distance * self.target_rr
