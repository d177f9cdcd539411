"""
Core: Shared value types

Plain data carried between the pipeline stages and the external collaborators.
All of these are immutable; stages build new values instead of mutating.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional, Tuple

Side = Literal["long", "short"]
Action = Literal["buy", "sell", "close"]


@dataclass(frozen=True)
class Candle:
    """One OHLCV bar. Series are ordered oldest first, most recent last."""
    open: float
    high: float
    low: float
    close: float
    volume: float
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class MarketSnapshot:
    """Point-in-time market view for a symbol (MarketDataFeed.get_snapshot)."""
    symbol: str
    price: float
    volume: float = 0.0
    spread_bps: float = 0.0
    volatility: Optional[float] = None  # fractional, e.g. 0.03 == 3%
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class AccountState:
    """Account-level numbers the risk gate reads. Owned by the AccountLedger."""
    balance_usd: float
    daily_realized_pnl: float
    current_drawdown_pct: float
    open_exposure_usd: float
    open_positions: int = 0


@dataclass(frozen=True)
class Decision:
    """
    Order instruction emitted to the execution collaborator.

    idempotency_key is stable for the same symbol, tick and signal so a retried
    submission can be deduplicated downstream.
    """
    action: Action
    symbol: str
    size: float
    stop_loss: Optional[float]
    take_profit: Optional[float]
    rationale: str
    idempotency_key: str
    reference_price: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "symbol": self.symbol,
            "size": self.size,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "rationale": self.rationale,
            "idempotency_key": self.idempotency_key,
            "reference_price": self.reference_price,
        }


@dataclass(frozen=True)
class Fill:
    """Execution report returned by a broker."""
    idempotency_key: str
    symbol: str
    price: float
    quantity: float
    order_id: str
    filled_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def side_for_action(action: str) -> Side:
    """Map an entry action (buy/sell) to a position side."""
    if action == "buy":
        return "long"
    if action == "sell":
        return "short"
    raise ValueError(f"No position side for action '{action}'")


def split_ohlc(candles) -> Tuple[list, list, list, list]:
    """Return (opens, highs, lows, closes) lists for a candle series."""
    opens = [c.open for c in candles]
    highs = [c.high for c in candles]
    lows = [c.low for c in candles]
    closes = [c.close for c in candles]
    return opens, highs, lows, closes
