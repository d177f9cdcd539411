"""
Position Management: Lifecycle, Trailing Stops and Exits

The PositionLifecycleManager is the single owner of Position state. It keeps
the in-memory index of non-terminal positions and the persisted copy in step:
every transition is written to the PersistenceStore first and only then
becomes visible in memory.

Responsibilities:
- Open positions from risk-approved decisions (paper: fill now; live: wait
  for an explicit confirmation within a TTL)
- Trailing stops and stop-loss / take-profit exits while Monitoring
- Manual close and circuit-breaker flatten
- Restore non-terminal positions after a restart

All mutations for a symbol run under that symbol's lock, so at most one
position per symbol can be active at any instant.
"""

import hashlib
import hmac
import logging
import secrets
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from core.circuit_breaker import CircuitBreaker
from core.exceptions import (
    ConfirmationExpired,
    ExecutionFailure,
    InvalidConfirmation,
    InvalidTransition,
    PersistenceFailure,
    RiskLimitBreached,
)
from core.interfaces import ExecutionBroker, PersistenceStore
from core.models import Decision, side_for_action
from core.position_state import ACTIVE_STATES, CloseReason, Position, PositionState
from infra.alerting import AlertService, AlertSeverity, AlertType
from infra.retry import RetryPolicy, retry_call

logger = logging.getLogger(__name__)

PositionListener = Callable[[Position], None]

# Blocks a second entry on the symbol while an open is in flight
_BLOCKING_STATES = ACTIVE_STATES | {PositionState.PROPOSED}


@dataclass(frozen=True)
class OpenResult:
    """Outcome of open(). confirmation_token is only set for live (pending) opens."""
    position: Position
    confirmation_token: Optional[str] = None


def _token_hash(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class PositionLifecycleManager:
    """
    Owns the state machine and persistence of each trade from proposal to close.

    Config (policy.yaml `lifecycle`):
        confirmation_ttl_seconds: Live confirmation window (default 600)
        trailing_fraction: Share of unrealized profit the stop locks in (default 0.5)
        fee_bps: Fee per side in basis points, deducted from realized P&L (default 10)
    """

    def __init__(
        self,
        store: PersistenceStore,
        broker: ExecutionBroker,
        config: Optional[Dict] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        alert_service: Optional[AlertService] = None,
        metrics=None,
        live: bool = False,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        cfg = config or {}
        self.confirmation_ttl = timedelta(seconds=float(cfg.get("confirmation_ttl_seconds", 600)))
        self.trailing_fraction = float(cfg.get("trailing_fraction", 0.5))
        self.fee_bps = float(cfg.get("fee_bps", 10.0))

        self.store = store
        self.broker = broker
        self.circuit_breaker = circuit_breaker
        self.alert_service = alert_service
        self.metrics = metrics
        self.live = live
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._positions: Dict[str, Position] = {}
        self._index_lock = threading.Lock()
        self._symbol_locks: Dict[str, threading.RLock] = {}
        self._symbol_locks_guard = threading.Lock()
        self._last_prices: Dict[str, float] = {}
        self._open_listeners: List[PositionListener] = []
        self._close_listeners: List[PositionListener] = []

        logger.info(
            f"PositionLifecycleManager initialized (mode={'LIVE' if live else 'PAPER'}, "
            f"ttl={self.confirmation_ttl.total_seconds():.0f}s, trailing={self.trailing_fraction}, "
            f"fee={self.fee_bps}bps)"
        )

    # ─── Queries ──────────────────────────────────────────────────────────

    def symbol_lock(self, symbol: str) -> threading.RLock:
        with self._symbol_locks_guard:
            lock = self._symbol_locks.get(symbol)
            if lock is None:
                lock = threading.RLock()
                self._symbol_locks[symbol] = lock
            return lock

    def get(self, position_id: str) -> Optional[Position]:
        with self._index_lock:
            return self._positions.get(position_id)

    def positions(self, states=None) -> List[Position]:
        with self._index_lock:
            values = list(self._positions.values())
        if states is None:
            return values
        return [p for p in values if p.state in states]

    def active_position(self, symbol: str) -> Optional[Position]:
        with self._index_lock:
            for p in self._positions.values():
                if p.symbol == symbol and p.state in _BLOCKING_STATES:
                    return p
        return None

    def has_active_position(self, symbol: str) -> bool:
        return self.active_position(symbol) is not None

    def active_count(self) -> int:
        return sum(1 for p in self.positions() if p.is_active)

    def open_exposure_usd(self) -> float:
        return sum(p.notional_usd for p in self.positions({PositionState.OPEN, PositionState.MONITORING}))

    def reserved_exposure(self) -> Tuple[int, float]:
        """Count and notional of entries not yet filled (Proposed, PendingConfirmation)."""
        unfilled = self.positions({PositionState.PROPOSED, PositionState.PENDING_CONFIRMATION})
        return len(unfilled), sum(p.notional_usd for p in unfilled)

    def add_open_listener(self, listener: PositionListener) -> None:
        self._open_listeners.append(listener)

    def add_close_listener(self, listener: PositionListener) -> None:
        self._close_listeners.append(listener)

    # ─── Open / confirm ───────────────────────────────────────────────────

    def open(self, decision: Decision) -> OpenResult:
        """
        Create a position from a risk-approved decision.

        Raises:
            RiskLimitBreached: breaker tripped or symbol already active (re-checked under the lock)
            ExecutionFailure: the broker failed; the position is marked Failed
            PersistenceFailure: a transition could not be written
        """
        if decision.action not in ("buy", "sell"):
            raise ValueError(f"open() needs a buy/sell decision, got {decision.action}")
        if not decision.reference_price or decision.reference_price <= 0:
            raise ValueError("open() needs a positive reference price")

        with self.symbol_lock(decision.symbol):
            if self.circuit_breaker is not None and self.circuit_breaker.is_tripped():
                raise RiskLimitBreached("circuit_breaker",
                                        f"circuit breaker tripped: {self.circuit_breaker.reason}")
            existing = self.active_position(decision.symbol)
            if existing is not None:
                raise RiskLimitBreached(
                    "active_position",
                    f"{decision.symbol} already has position {existing.id} in {existing.state.value}",
                )

            position = Position(
                id=f"pos_{uuid.uuid4().hex[:12]}",
                symbol=decision.symbol,
                side=side_for_action(decision.action),
                entry_price=decision.reference_price,
                quantity=decision.size,
                stop_loss=decision.stop_loss,
                take_profit=decision.take_profit,
                idempotency_key=decision.idempotency_key,
                rationale=decision.rationale,
                created_at=self._clock(),
            )
            self._commit(position)

            try:
                if self.live:
                    return self._request_confirmation(position)
                return OpenResult(self._execute_entry(position, decision))
            except PersistenceFailure:
                self._abandon(position.id, "persistence failure during open")
                raise

    def _request_confirmation(self, position: Position) -> OpenResult:
        token = secrets.token_urlsafe(24)
        expires = self._clock() + self.confirmation_ttl
        pending = position.transition(
            PositionState.PENDING_CONFIRMATION,
            at=self._clock(),
            confirmation_token_hash=_token_hash(token),
            confirmation_expires_at=expires,
        )
        self._commit(pending)
        logger.info(f"{pending.id} {pending.symbol} awaiting confirmation until {expires.isoformat()}")
        self._alert(
            AlertType.CONFIRMATION_REQUIRED, AlertSeverity.WARNING,
            f"Confirm {pending.side} {pending.symbol}",
            f"{pending.quantity:.6f} @ {pending.entry_price:.4f}, stop {pending.stop_loss:.4f}, "
            f"target {pending.take_profit:.4f}; expires {expires.isoformat()}",
            position_id=pending.id,
        )
        return OpenResult(pending, confirmation_token=token)

    def confirm_pending(self, position_id: str, token: str, approve: bool) -> Position:
        """
        Approve or reject a pending live order.

        Raises:
            InvalidConfirmation: unknown id, not pending, or token mismatch
            ConfirmationExpired: TTL passed; the position is cancelled
        """
        position = self.get(position_id)
        if position is None:
            raise InvalidConfirmation(f"unknown position {position_id}")

        with self.symbol_lock(position.symbol):
            position = self.get(position_id)
            if position is None or position.state != PositionState.PENDING_CONFIRMATION:
                state = position.state.value if position else "gone"
                raise InvalidConfirmation(f"{position_id} is not pending confirmation ({state})")
            if not position.confirmation_token_hash or \
                    not hmac.compare_digest(_token_hash(token or ""), position.confirmation_token_hash):
                raise InvalidConfirmation(f"confirmation token mismatch for {position_id}")

            now = self._clock()
            if position.confirmation_expires_at and now > position.confirmation_expires_at:
                self._expire(position, now)
                raise ConfirmationExpired(position_id)

            if not approve:
                cancelled = position.transition(PositionState.CANCELLED, at=now, error="rejected by operator")
                self._commit(cancelled)
                logger.info(f"{position_id} rejected by operator")
                return cancelled

            if self.circuit_breaker is not None and self.circuit_breaker.is_tripped():
                cancelled = position.transition(PositionState.CANCELLED, at=now,
                                                error=f"circuit breaker tripped: {self.circuit_breaker.reason}")
                self._commit(cancelled)
                logger.warning(f"{position_id} cancelled on confirmation: circuit breaker tripped")
                return cancelled

            decision = Decision(
                action="buy" if position.side == "long" else "sell",
                symbol=position.symbol,
                size=position.quantity,
                stop_loss=position.stop_loss,
                take_profit=position.take_profit,
                rationale=position.rationale,
                idempotency_key=position.idempotency_key,
                reference_price=position.entry_price,
            )
            return self._execute_entry(position, decision)

    def reap_expired(self) -> List[Position]:
        """Cancel pending confirmations whose TTL has passed."""
        now = self._clock()
        expired = [
            p for p in self.positions({PositionState.PENDING_CONFIRMATION})
            if p.confirmation_expires_at and now > p.confirmation_expires_at
        ]
        reaped = []
        for candidate in expired:
            with self.symbol_lock(candidate.symbol):
                current = self.get(candidate.id)
                if current is None or current.state != PositionState.PENDING_CONFIRMATION:
                    continue
                try:
                    reaped.append(self._expire(current, now))
                except PersistenceFailure as exc:
                    logger.error(f"Could not cancel expired {current.id}: {exc}")
        if reaped:
            logger.info(f"Reaped {len(reaped)} expired confirmation(s)")
        return reaped

    def _expire(self, position: Position, now: datetime) -> Position:
        cancelled = position.transition(PositionState.CANCELLED, at=now, error="confirmation expired")
        self._commit(cancelled)
        logger.info(f"{position.id} {position.symbol} cancelled: confirmation expired")
        self._alert(
            AlertType.CONFIRMATION_EXPIRED, AlertSeverity.INFO,
            f"Confirmation expired: {position.symbol}",
            f"Pending {position.side} {position.symbol} ({position.id}) was cancelled",
            position_id=position.id,
        )
        return cancelled

    def _execute_entry(self, position: Position, decision: Decision) -> Position:
        try:
            fill = self.broker.submit(decision)
        except Exception as exc:
            self._fail(position, f"entry order failed: {exc}")
            raise ExecutionFailure(f"entry for {position.symbol} failed: {exc}", exc) from exc

        opened = position.transition(
            PositionState.OPEN,
            at=self._clock(),
            entry_price=fill.price,
            quantity=fill.quantity,
            order_id=fill.order_id,
            opened_at=fill.filled_at,
        )
        self._commit(opened)
        monitoring = opened.transition(PositionState.MONITORING, at=self._clock())
        self._commit(monitoring)
        self._last_prices[monitoring.symbol] = fill.price

        logger.info(
            f"OPENED {monitoring.side} {monitoring.symbol} {monitoring.quantity:.6f} @ {fill.price:.4f} "
            f"(stop {monitoring.stop_loss:.4f}, target {monitoring.take_profit:.4f}) [{monitoring.id}]"
        )
        self._notify(self._open_listeners, monitoring)
        self._alert(
            AlertType.TRADE_OPENED, AlertSeverity.INFO,
            f"Opened {monitoring.side} {monitoring.symbol}",
            f"{monitoring.quantity:.6f} @ {fill.price:.4f}, notional ${monitoring.notional_usd:,.2f}",
            position_id=monitoring.id,
        )
        return monitoring

    # ─── Monitoring / close ───────────────────────────────────────────────

    def on_price(self, symbol: str, price: float) -> Optional[Position]:
        """
        Apply a market price to the symbol's monitored position.

        Exits on stop/target first; otherwise ratchets the trailing stop.

        Returns:
            The updated or closed position, or None if nothing is monitored
        """
        if price is None or price <= 0:
            return None

        with self.symbol_lock(symbol):
            self._last_prices[symbol] = price
            position = self.active_position(symbol)
            if position is None or position.state != PositionState.MONITORING:
                return None

            reason = self._exit_reason(position, price)
            if reason is not None:
                return self._close_locked(position, price, reason)

            new_stop = self.trailing_stop(position, price)
            if new_stop != position.stop_loss:
                updated = position.with_changes(at=self._clock(), stop_loss=new_stop)
                self._commit(updated)
                logger.info(f"Trailing stop {symbol}: {position.stop_loss:.4f} -> {new_stop:.4f} (price {price:.4f})")
                return updated
            return position

    def trailing_stop(self, position: Position, price: float) -> float:
        """Stop after applying the trailing rule; never moves against the position."""
        if position.side == "long":
            if price <= position.entry_price:
                return position.stop_loss
            candidate = position.entry_price + self.trailing_fraction * (price - position.entry_price)
            return max(position.stop_loss, candidate)
        if price >= position.entry_price:
            return position.stop_loss
        candidate = position.entry_price - self.trailing_fraction * (position.entry_price - price)
        return min(position.stop_loss, candidate)

    @staticmethod
    def _exit_reason(position: Position, price: float) -> Optional[CloseReason]:
        if position.side == "long":
            if price >= position.take_profit:
                return CloseReason.TAKE_PROFIT
            if price <= position.stop_loss:
                return CloseReason.STOP_LOSS
        else:
            if price <= position.take_profit:
                return CloseReason.TAKE_PROFIT
            if price >= position.stop_loss:
                return CloseReason.STOP_LOSS
        return None

    def close(self, position_id: str, price: float, reason: CloseReason = CloseReason.MANUAL) -> Position:
        """
        Close an Open/Monitoring position at `price`.

        Raises:
            InvalidTransition: unknown position or not closable
            ExecutionFailure: the exit order failed; the position is marked Failed
        """
        position = self.get(position_id)
        if position is None:
            raise InvalidTransition(position_id, "unknown", PositionState.CLOSED.value)
        with self.symbol_lock(position.symbol):
            current = self.get(position_id)
            if current is None:
                raise InvalidTransition(position_id, "archived", PositionState.CLOSED.value)
            return self._close_locked(current, price, reason)

    def _close_locked(self, position: Position, price: float, reason: CloseReason) -> Position:
        if not position.can_transition(PositionState.CLOSED):
            raise InvalidTransition(position.id, position.state.value, PositionState.CLOSED.value)

        decision = Decision(
            action="close",
            symbol=position.symbol,
            size=position.quantity,
            stop_loss=None,
            take_profit=None,
            rationale=f"{reason.value} for {position.id}",
            idempotency_key=f"{position.idempotency_key or position.id}:close",
            reference_price=price,
        )
        try:
            fill = self.broker.submit(decision)
        except Exception as exc:
            self._fail(position, f"exit order failed ({reason.value}): {exc}")
            raise ExecutionFailure(f"exit for {position.symbol} failed: {exc}", exc) from exc

        exit_price = fill.price
        gross = position.unrealized_pnl(exit_price)
        fees = (position.entry_price + exit_price) * position.quantity * self.fee_bps / 10_000
        pnl = gross - fees
        closed = position.transition(
            PositionState.CLOSED,
            at=self._clock(),
            exit_price=exit_price,
            realized_pnl=pnl,
            close_reason=reason.value,
        )
        self._commit(closed)

        logger.info(
            f"CLOSED {closed.side} {closed.symbol} @ {exit_price:.4f} ({reason.value}) "
            f"P&L ${pnl:+,.2f} (fees ${fees:,.2f}) [{closed.id}]"
        )
        self._notify(self._close_listeners, closed)
        self._alert(
            AlertType.TRADE_CLOSED, AlertSeverity.INFO,
            f"Closed {closed.side} {closed.symbol} ({reason.value})",
            f"exit {exit_price:.4f}, realized P&L ${pnl:+,.2f}",
            position_id=closed.id,
            close_reason=reason.value,
        )
        return closed

    def flatten_all(self, price_lookup: Optional[Callable[[str], Optional[float]]] = None) -> List[Position]:
        """
        Emergency close every Open/Monitoring position and cancel pending confirmations.

        Uses price_lookup(symbol), falling back to the last observed price and
        finally the entry price. One failing position does not stop the others.
        """
        closed: List[Position] = []
        for position in self.positions(_BLOCKING_STATES):
            with self.symbol_lock(position.symbol):
                current = self.get(position.id)
                if current is None:
                    continue
                try:
                    if current.state in (PositionState.PENDING_CONFIRMATION, PositionState.PROPOSED):
                        cancelled = current.transition(PositionState.CANCELLED, at=self._clock(),
                                                       error="cancelled by emergency flatten")
                        self._commit(cancelled)
                        continue
                    price = self._best_price(current, price_lookup)
                    closed.append(self._close_locked(current, price, CloseReason.EMERGENCY_FLATTEN))
                except Exception as exc:
                    logger.error(f"Emergency flatten failed for {current.id} {current.symbol}: {exc}", exc_info=True)

        logger.critical(f"Emergency flatten closed {len(closed)} position(s)")
        return closed

    def _best_price(self, position: Position, price_lookup) -> float:
        if price_lookup is not None:
            try:
                price = price_lookup(position.symbol)
                if price and price > 0:
                    return price
            except Exception as exc:
                logger.warning(f"Price lookup failed for {position.symbol} during flatten: {exc}")
        return self._last_prices.get(position.symbol) or position.entry_price

    # ─── Restart ──────────────────────────────────────────────────────────

    def restore(self) -> List[Position]:
        """
        Reload non-terminal positions and resume monitoring.

        Open positions move to Monitoring. A Proposed position never reached
        the broker with a known outcome, so it is marked Failed for review.
        """
        loaded = self.store.load_non_terminal_positions()
        restored: List[Position] = []
        for position in loaded:
            with self._index_lock:
                self._positions[position.id] = position
            with self.symbol_lock(position.symbol):
                if position.state == PositionState.OPEN:
                    position = position.transition(PositionState.MONITORING, at=self._clock())
                    self._commit(position)
                elif position.state == PositionState.PROPOSED:
                    self._fail(position, "interrupted before submission; verify with the venue")
                    continue
            restored.append(position)

        symbols = [p.symbol for p in restored]
        duplicates = {s for s in symbols if symbols.count(s) > 1}
        if duplicates:
            logger.error(f"Restored more than one active position for {sorted(duplicates)}")
        if self.metrics:
            self.metrics.record_open_positions(self.active_count())
        logger.info(f"Restored {len(restored)} non-terminal position(s)")
        return restored

    # ─── Internals ────────────────────────────────────────────────────────

    def _commit(self, position: Position) -> None:
        """Persist, then publish to the in-memory index. Never publishes an unwritten state."""
        try:
            retry_call(
                lambda: self.store.save_transition(position),
                self.retry_policy,
                retry_on=(PersistenceFailure, OSError),
                description=f"persist {position.id} -> {position.state.value}",
                sleep=self._sleep,
            )
        except (PersistenceFailure, OSError) as exc:
            if self.metrics:
                self.metrics.record_persistence_failure()
            self._alert(
                AlertType.PERSISTENCE_FAILURE, AlertSeverity.CRITICAL,
                f"Persistence failure: {position.symbol}",
                f"Transition of {position.id} to {position.state.value} was not committed",
                position_id=position.id,
                error=str(exc),
            )
            if isinstance(exc, PersistenceFailure):
                raise
            raise PersistenceFailure(str(exc), exc) from exc

        with self._index_lock:
            if position.is_terminal:
                self._positions.pop(position.id, None)
            else:
                self._positions[position.id] = position

        logger.debug(f"Committed {position.id} {position.symbol} -> {position.state.value}")
        if self.metrics:
            self.metrics.record_transition(position.state.value)
            self.metrics.record_open_positions(self.active_count())

    def _fail(self, position: Position, error: str) -> None:
        logger.error(f"Position {position.id} {position.symbol} FAILED: {error}")
        self._alert(
            AlertType.EXECUTION_FAILURE, AlertSeverity.CRITICAL,
            f"Execution failure: {position.symbol}",
            f"{position.id} marked failed and needs manual attention: {error}",
            position_id=position.id,
        )
        failed = position.transition(PositionState.FAILED, at=self._clock(), error=error)
        try:
            self._commit(failed)
        except PersistenceFailure:
            self._abandon(position.id, error)
            raise

    def _abandon(self, position_id: str, why: str) -> None:
        """Drop a position whose state could not be written from the live index."""
        with self._index_lock:
            dropped = self._positions.pop(position_id, None)
        if dropped is not None:
            logger.critical(
                f"Dropped {position_id} {dropped.symbol} from the live index ({why}); "
                f"verify venue state manually"
            )

    def _notify(self, listeners: List[PositionListener], position: Position) -> None:
        for listener in listeners:
            try:
                listener(position)
            except Exception as exc:
                logger.error(f"Position listener failed for {position.id}: {exc}", exc_info=True)

    def _alert(self, alert_type: AlertType, severity: AlertSeverity, title: str, message: str, **context) -> None:
        if self.alert_service:
            self.alert_service.alert(alert_type, severity, title, message, **context)
