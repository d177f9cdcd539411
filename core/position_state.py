"""
Core: Position State Machine

Explicit position lifecycle with validated transitions.

States: PROPOSED → (OPEN | PENDING_CONFIRMATION) → MONITORING → CLOSED
        PENDING_CONFIRMATION → CANCELLED
        any non-terminal → FAILED (execution failure)

Position values are immutable; a transition returns a new Position so a
failed persistence write leaves the committed value untouched.
"""

from enum import Enum
from dataclasses import dataclass, fields, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import logging

from core.exceptions import InvalidTransition

logger = logging.getLogger(__name__)


class PositionState(Enum):
    """Position lifecycle states"""
    PROPOSED = "proposed"                          # Risk-approved, nothing submitted yet
    PENDING_CONFIRMATION = "pending_confirmation"  # Live: waiting for explicit confirmation
    OPEN = "open"                                  # Entry filled
    MONITORING = "monitoring"                      # Trailing stop active
    CLOSED = "closed"                              # Exited, P&L realized
    CANCELLED = "cancelled"                        # Rejected or confirmation expired
    FAILED = "failed"                              # Execution failure, needs manual attention


class CloseReason(str, Enum):
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    MANUAL = "manual"
    EMERGENCY_FLATTEN = "emergency_flatten"


# Counted against the one-position-per-symbol rule
ACTIVE_STATES = frozenset({
    PositionState.PENDING_CONFIRMATION,
    PositionState.OPEN,
    PositionState.MONITORING,
})

TERMINAL_STATES = frozenset({
    PositionState.CLOSED,
    PositionState.CANCELLED,
    PositionState.FAILED,
})

VALID_TRANSITIONS = {
    PositionState.PROPOSED: {PositionState.OPEN, PositionState.PENDING_CONFIRMATION,
                             PositionState.CANCELLED, PositionState.FAILED},
    PositionState.PENDING_CONFIRMATION: {PositionState.OPEN, PositionState.CANCELLED, PositionState.FAILED},
    PositionState.OPEN: {PositionState.MONITORING, PositionState.CLOSED, PositionState.FAILED},
    PositionState.MONITORING: {PositionState.CLOSED, PositionState.FAILED},
    # Terminal states have no outbound transitions
    PositionState.CLOSED: set(),
    PositionState.CANCELLED: set(),
    PositionState.FAILED: set(),
}

_DATETIME_FIELDS = ("created_at", "updated_at", "opened_at", "closed_at", "confirmation_expires_at")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Position:
    """
    One trade from proposal to close. Owned by the PositionLifecycleManager.

    confirmation_token_hash holds a sha256 of the live confirmation token,
    never the token itself.
    """
    id: str
    symbol: str
    side: str  # "long" or "short"
    entry_price: float
    quantity: float
    stop_loss: float
    take_profit: float
    state: PositionState = PositionState.PROPOSED
    idempotency_key: str = ""
    rationale: str = ""
    initial_stop: Optional[float] = None
    created_at: datetime = None  # type: ignore[assignment]
    updated_at: Optional[datetime] = None
    opened_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    exit_price: Optional[float] = None
    realized_pnl: Optional[float] = None
    close_reason: Optional[str] = None
    order_id: Optional[str] = None
    confirmation_token_hash: Optional[str] = None
    confirmation_expires_at: Optional[datetime] = None
    error: Optional[str] = None

    def __post_init__(self):
        if not self.symbol:
            raise ValueError("Position symbol is required")
        if self.side not in ("long", "short"):
            raise ValueError(f"Position side must be long or short, got {self.side!r}")
        if self.quantity <= 0:
            raise ValueError("Position quantity must be positive")
        if self.created_at is None:
            object.__setattr__(self, "created_at", datetime.now(timezone.utc))
        if self.initial_stop is None:
            object.__setattr__(self, "initial_stop", self.stop_loss)

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def notional_usd(self) -> float:
        return self.entry_price * self.quantity

    def unrealized_pnl(self, price: float) -> float:
        direction = 1.0 if self.side == "long" else -1.0
        return (price - self.entry_price) * self.quantity * direction

    def can_transition(self, target: PositionState) -> bool:
        return target in VALID_TRANSITIONS.get(self.state, set())

    def transition(self, target: PositionState, at: Optional[datetime] = None, **changes: Any) -> "Position":
        """
        Return a copy in `target` state with `changes` applied.

        Raises:
            InvalidTransition: edge not in VALID_TRANSITIONS
        """
        if not self.can_transition(target):
            raise InvalidTransition(self.id, self.state.value, target.value)
        now = at or datetime.now(timezone.utc)
        if target == PositionState.OPEN and self.opened_at is None and "opened_at" not in changes:
            changes["opened_at"] = now
        if target in TERMINAL_STATES and "closed_at" not in changes:
            changes["closed_at"] = now
        return replace(self, state=target, updated_at=now, **changes)

    def with_changes(self, at: Optional[datetime] = None, **changes: Any) -> "Position":
        """Same-state update (e.g. trailing stop move)."""
        return replace(self, updated_at=at or datetime.now(timezone.utc), **changes)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "state":
                value = value.value
            elif f.name in _DATETIME_FIELDS:
                value = _iso(value)
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs["state"] = PositionState(kwargs.get("state", PositionState.PROPOSED.value))
        for name in _DATETIME_FIELDS:
            if name in kwargs:
                kwargs[name] = _parse_dt(kwargs[name])
        return cls(**kwargs)
