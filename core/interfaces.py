"""
Core: Collaborator interfaces

The decision pipeline is constructed with these injected; nothing in core
reaches for a global market-data client, ledger or database.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from core.models import Candle, Decision, Fill, MarketSnapshot
from core.position_state import Position


class MarketDataFeed(ABC):
    """Source of snapshots and OHLCV history. Implementations raise on I/O failure."""

    @abstractmethod
    def get_snapshot(self, symbol: str) -> MarketSnapshot:
        ...

    @abstractmethod
    def get_candles(self, symbol: str, n: int) -> Sequence[Candle]:
        """Most recent `n` candles, oldest first."""


class AccountLedger(ABC):
    """Account-level numbers the RiskGate reads."""

    @abstractmethod
    def get_balance(self) -> float:
        ...

    @abstractmethod
    def get_open_positions(self) -> int:
        ...

    @abstractmethod
    def get_daily_realized_pnl(self) -> float:
        ...

    @abstractmethod
    def get_drawdown_pct(self) -> float:
        ...

    @abstractmethod
    def get_open_exposure_usd(self) -> float:
        ...


class PersistenceStore(ABC):
    """Durable position storage. save_transition must be atomic per call."""

    @abstractmethod
    def save_transition(self, position: Position) -> None:
        ...

    @abstractmethod
    def load_non_terminal_positions(self) -> List[Position]:
        ...

    def save_breaker_state(self, state: Dict[str, Any]) -> None:
        """Persist circuit breaker state; stores without breaker support ignore it."""

    def load_breaker_state(self) -> Optional[Dict[str, Any]]:
        return None


class ExecutionBroker(ABC):
    """Places orders for decisions. Must dedupe by Decision.idempotency_key."""

    @abstractmethod
    def submit(self, decision: Decision) -> Fill:
        ...
