"""
Core: Risk Gate

Hard account-level constraints from policy.yaml. Every proposal passes
every check or it is denied; no signal strength overrides a check.

Checks (in order):
1. Circuit breaker not tripped
2. Daily realized P&L >= -max_daily_loss_usd (latched until next UTC midnight)
3. Drawdown < max_drawdown_pct
4. Regime tradeable (crisis/off deny everything)
5. Reward:risk >= min_reward_risk
6. No active position on the symbol
7. Open exposure + proposed notional <= balance * max_exposure_pct
8. Open positions < max_open_positions

The daily-loss latch is also fed by observe(), which the service calls on
every close and at the start of every tick, so a breach latches even when
no proposal reaches the gate that day.
"""

from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, Dict, List, Optional
import logging
import threading

from core.circuit_breaker import CircuitBreaker
from core.models import AccountState
from core.regime import RegimeState
from infra.alerting import AlertService, AlertSeverity, AlertType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TradeProposal:
    """A sized trade awaiting the gate."""
    symbol: str
    side: str  # "buy" or "sell"
    notional_usd: float
    entry_price: float
    stop_loss: float
    take_profit: float
    regime: Optional[RegimeState] = None
    confidence: float = 0.0

    @property
    def reward_risk(self) -> float:
        if self.side == "buy":
            reward = self.take_profit - self.entry_price
            risk = self.entry_price - self.stop_loss
        else:
            reward = self.entry_price - self.take_profit
            risk = self.stop_loss - self.entry_price
        if risk <= 0 or reward <= 0:
            return 0.0
        return reward / risk


@dataclass(frozen=True)
class RiskDecision:
    """Result of a risk check"""
    allowed: bool
    reason: Optional[str] = None
    check: Optional[str] = None

    @classmethod
    def allow(cls) -> "RiskDecision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, check: str, reason: str) -> "RiskDecision":
        return cls(allowed=False, reason=reason, check=check)


class RiskGate:
    """
    Enforces account-level constraints and may veto a proposed trade.

    Reads AccountState and the CircuitBreaker flag. The only state it keeps
    is the daily-loss latch and per-check denial counters for alerting.
    """

    # Checks whose breach is an account-level event and always alerts
    ACCOUNT_CHECKS = frozenset({"daily_loss", "max_drawdown"})

    def __init__(
        self,
        config: Optional[Dict],
        circuit_breaker: CircuitBreaker,
        has_active_position: Optional[Callable[[str], bool]] = None,
        alert_service: Optional[AlertService] = None,
        metrics=None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        cfg = config or {}
        self.min_reward_risk = float(cfg.get("min_reward_risk", 2.0))
        self.max_daily_loss_usd = abs(float(cfg.get("max_daily_loss_usd", 500.0)))
        self.max_drawdown_pct = float(cfg.get("max_drawdown_pct", 10.0))
        self.max_exposure_pct = float(cfg.get("max_exposure_pct", 50.0))
        self.max_open_positions = int(cfg.get("max_open_positions", 10))
        self.warning_utilization = float(cfg.get("warning_utilization", 0.8))
        self.repeat_alert_threshold = int(cfg.get("repeat_alert_threshold", 3))

        self.circuit_breaker = circuit_breaker
        self._has_active_position = has_active_position or (lambda symbol: False)
        self.alert_service = alert_service
        self.metrics = metrics
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._lock = threading.Lock()
        self._daily_halt_date: Optional[date] = None
        self._denials: Counter = Counter()

        logger.info(
            f"Initialized RiskGate (min R:R {self.min_reward_risk}, daily loss ${self.max_daily_loss_usd:,.0f}, "
            f"max DD {self.max_drawdown_pct}%, max exposure {self.max_exposure_pct}%, "
            f"max positions {self.max_open_positions})"
        )

    def check(self, proposal: TradeProposal, account: AccountState) -> RiskDecision:
        """
        Run every check against a proposal.

        Returns:
            RiskDecision(allowed=True) or the first failing check's denial
        """
        checks = (
            self._check_circuit_breaker,
            lambda: self._check_daily_loss(account),
            lambda: self._check_drawdown(account),
            lambda: self._check_regime(proposal),
            lambda: self._check_reward_risk(proposal),
            lambda: self._check_active_position(proposal),
            lambda: self._check_exposure(proposal, account),
            lambda: self._check_max_open_positions(account),
        )
        for run in checks:
            decision = run()
            if not decision.allowed:
                self._on_denied(proposal, decision)
                return decision

        with self._lock:
            self._denials.clear()
        self._warn_on_utilization(account)
        logger.info(
            f"Risk APPROVED {proposal.side} {proposal.symbol} ${proposal.notional_usd:,.2f} "
            f"(R:R {proposal.reward_risk:.2f})"
        )
        return RiskDecision.allow()

    def check_circuit_breaker(self) -> RiskDecision:
        """Standalone breaker re-check, run again right before a position is committed."""
        return self._check_circuit_breaker()

    def observe(self, account: AccountState) -> bool:
        """
        Feed the latest account numbers to the daily-loss latch.

        Returns:
            True if new trades are halted for the rest of the UTC day
        """
        today = self._clock().astimezone(timezone.utc).date()
        newly_halted = False
        with self._lock:
            if self._daily_halt_date is not None and self._daily_halt_date != today:
                logger.info(f"Daily loss halt from {self._daily_halt_date} cleared at UTC day boundary")
                self._daily_halt_date = None
            if account.daily_realized_pnl < -self.max_daily_loss_usd and self._daily_halt_date is None:
                self._daily_halt_date = today
                newly_halted = True
            halted = self._daily_halt_date == today

        if newly_halted:
            logger.error(
                f"DAILY LOSS LIMIT HIT: ${account.daily_realized_pnl:,.2f} "
                f"(limit -${self.max_daily_loss_usd:,.2f}) - NO NEW TRADES until next UTC day"
            )
            if self.alert_service:
                self.alert_service.alert(
                    AlertType.RISK_BREACH, AlertSeverity.CRITICAL,
                    "Risk limit breached: daily_loss",
                    "New trades are denied until the limit clears",
                    check="daily_loss",
                    daily_realized_pnl=round(account.daily_realized_pnl, 2),
                )
        return halted

    def is_daily_halted(self, now: Optional[datetime] = None) -> bool:
        today = (now or self._clock()).astimezone(timezone.utc).date()
        with self._lock:
            return self._daily_halt_date == today

    def risk_level(self, account: AccountState) -> str:
        """Utilisation of the tightest limit: low (<50%), medium (<80%) or high."""
        utilization = max(self._utilizations(account).values() or [0.0])
        if utilization >= self.warning_utilization:
            return "high"
        if utilization >= 0.5:
            return "medium"
        return "low"

    def _check_circuit_breaker(self) -> RiskDecision:
        if self.circuit_breaker.is_tripped():
            return RiskDecision.deny("circuit_breaker", f"circuit breaker tripped: {self.circuit_breaker.reason}")
        return RiskDecision.allow()

    def _check_regime(self, proposal: TradeProposal) -> RiskDecision:
        regime = proposal.regime
        if regime is None:
            return RiskDecision.deny("regime", "no regime classification for proposal")
        if not regime.tradeable:
            return RiskDecision.deny("regime", f"regime {regime.state} is not tradeable ({regime.reason})")
        return RiskDecision.allow()

    def _check_reward_risk(self, proposal: TradeProposal) -> RiskDecision:
        rr = proposal.reward_risk
        if rr < self.min_reward_risk:
            return RiskDecision.deny("reward_risk", f"reward:risk {rr:.2f} < minimum {self.min_reward_risk:.2f}")
        return RiskDecision.allow()

    def _check_active_position(self, proposal: TradeProposal) -> RiskDecision:
        if self._has_active_position(proposal.symbol):
            return RiskDecision.deny("active_position", f"{proposal.symbol} already has an active position")
        return RiskDecision.allow()

    def _check_daily_loss(self, account: AccountState) -> RiskDecision:
        if not self.observe(account):
            return RiskDecision.allow()
        return RiskDecision.deny(
            "daily_loss",
            f"daily loss limit breached (${account.daily_realized_pnl:,.2f} vs -${self.max_daily_loss_usd:,.2f}); "
            f"halted until next UTC day",
        )

    def _check_drawdown(self, account: AccountState) -> RiskDecision:
        if account.current_drawdown_pct >= self.max_drawdown_pct:
            return RiskDecision.deny(
                "max_drawdown",
                f"drawdown {account.current_drawdown_pct:.2f}% >= limit {self.max_drawdown_pct:.2f}%",
            )
        return RiskDecision.allow()

    def _check_exposure(self, proposal: TradeProposal, account: AccountState) -> RiskDecision:
        cap = account.balance_usd * self.max_exposure_pct / 100.0
        projected = account.open_exposure_usd + proposal.notional_usd
        if projected > cap:
            return RiskDecision.deny(
                "exposure",
                f"exposure ${projected:,.2f} would exceed cap ${cap:,.2f} ({self.max_exposure_pct:.0f}% of balance)",
            )
        return RiskDecision.allow()

    def _check_max_open_positions(self, account: AccountState) -> RiskDecision:
        if account.open_positions >= self.max_open_positions:
            return RiskDecision.deny(
                "max_open_positions",
                f"{account.open_positions} open positions >= limit {self.max_open_positions}",
            )
        return RiskDecision.allow()

    def _utilizations(self, account: AccountState) -> Dict[str, float]:
        loss = max(0.0, -account.daily_realized_pnl)
        exposure_cap = account.balance_usd * self.max_exposure_pct / 100.0
        return {
            "daily_loss": loss / self.max_daily_loss_usd if self.max_daily_loss_usd else 0.0,
            "max_drawdown": account.current_drawdown_pct / self.max_drawdown_pct if self.max_drawdown_pct else 0.0,
            "exposure": account.open_exposure_usd / exposure_cap if exposure_cap > 0 else 0.0,
            "max_open_positions": (account.open_positions / self.max_open_positions
                                   if self.max_open_positions else 0.0),
        }

    def _warn_on_utilization(self, account: AccountState) -> None:
        for name, value in self._utilizations(account).items():
            if value >= self.warning_utilization:
                logger.warning(f"Risk utilisation high: {name} at {value:.0%} of limit")

    def _on_denied(self, proposal: TradeProposal, decision: RiskDecision) -> None:
        logger.warning(f"Risk DENIED {proposal.side} {proposal.symbol}: {decision.reason}")
        if self.metrics:
            self.metrics.record_risk_denial(decision.check)

        with self._lock:
            self._denials[decision.check] += 1
            count = self._denials[decision.check]

        if not self.alert_service:
            return
        if decision.check in self.ACCOUNT_CHECKS:
            self.alert_service.alert(
                AlertType.RISK_BREACH, AlertSeverity.CRITICAL,
                f"Risk limit breached: {decision.check}",
                "New trades are denied until the limit clears",
                check=decision.check,
                reason=decision.reason,
            )
        elif count == self.repeat_alert_threshold:
            self.alert_service.alert(
                AlertType.RISK_BREACH, AlertSeverity.WARNING,
                f"Repeated risk denials: {decision.check}",
                f"{count} consecutive denials, latest for {proposal.symbol}: {decision.reason}",
                check=decision.check,
                symbol=proposal.symbol,
            )

    def denial_counts(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._denials)


__all__: List[str] = ["RiskGate", "RiskDecision", "TradeProposal"]
