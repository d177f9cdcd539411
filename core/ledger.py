"""
Core: Paper Account Ledger

Tracks the account numbers the RiskGate reads for PAPER runs:
- balance (starting balance plus realized P&L)
- realized P&L for the current UTC day (resets at UTC midnight)
- drawdown from peak equity, as a percent
- open notional and open position count

Driven by the lifecycle manager's open/close listeners.
"""

from datetime import date, datetime, timezone
from typing import Callable, Dict, Iterable, Optional
import logging
import threading

from core.interfaces import AccountLedger
from core.models import AccountState
from core.position_state import Position

logger = logging.getLogger(__name__)


class PaperLedger(AccountLedger):
    def __init__(self, starting_balance_usd: float = 10_000.0,
                 clock: Optional[Callable[[], datetime]] = None):
        if starting_balance_usd <= 0:
            raise ValueError("starting_balance_usd must be positive")
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self._balance = float(starting_balance_usd)
        self._peak_equity = self._balance
        self._day: date = self._today()
        self._daily_pnl = 0.0
        self._open: Dict[str, float] = {}  # position id -> notional

        logger.info(f"PaperLedger initialized with ${self._balance:,.2f}")

    def _today(self) -> date:
        return self._clock().astimezone(timezone.utc).date()

    def _roll_day(self) -> None:
        today = self._today()
        if today != self._day:
            logger.info(f"New UTC day {today}: daily realized P&L reset (was ${self._daily_pnl:+,.2f})")
            self._day = today
            self._daily_pnl = 0.0

    # ─── Listeners ────────────────────────────────────────────────────────

    def on_position_opened(self, position: Position) -> None:
        with self._lock:
            self._open[position.id] = position.notional_usd

    def on_position_closed(self, position: Position) -> None:
        pnl = position.realized_pnl or 0.0
        with self._lock:
            self._roll_day()
            self._open.pop(position.id, None)
            self._balance += pnl
            self._daily_pnl += pnl
            self._peak_equity = max(self._peak_equity, self._balance)
            balance = self._balance
        logger.info(f"Ledger: realized ${pnl:+,.2f} on {position.symbol}, balance ${balance:,.2f}")

    def sync_open_positions(self, positions: Iterable[Position]) -> None:
        """Seed open notional after a restart."""
        with self._lock:
            self._open = {p.id: p.notional_usd for p in positions}

    # ─── AccountLedger ────────────────────────────────────────────────────

    def get_balance(self) -> float:
        with self._lock:
            return self._balance

    def get_open_positions(self) -> int:
        with self._lock:
            return len(self._open)

    def get_daily_realized_pnl(self) -> float:
        with self._lock:
            self._roll_day()
            return self._daily_pnl

    def get_drawdown_pct(self) -> float:
        with self._lock:
            if self._peak_equity <= 0:
                return 0.0
            return max(0.0, (self._peak_equity - self._balance) / self._peak_equity * 100.0)

    def get_open_exposure_usd(self) -> float:
        with self._lock:
            return sum(self._open.values())


def account_state(ledger: AccountLedger) -> AccountState:
    """Read every number the RiskGate needs from a ledger."""
    return AccountState(
        balance_usd=ledger.get_balance(),
        daily_realized_pnl=ledger.get_daily_realized_pnl(),
        current_drawdown_pct=ledger.get_drawdown_pct(),
        open_exposure_usd=ledger.get_open_exposure_usd(),
        open_positions=ledger.get_open_positions(),
    )
