"""
Core: Paper Execution

Simulated fills for PAPER mode. Orders fill immediately at the observed
market price (the decision's reference price, or the feed's latest price
when a feed is attached), optionally worsened by a fixed slippage.

Submissions are idempotent: a second submit with the same idempotency key
returns the original fill instead of trading again.
"""

from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional
import logging
import threading

from core.interfaces import ExecutionBroker, MarketDataFeed
from core.models import Decision, Fill

logger = logging.getLogger(__name__)


class PaperBroker(ExecutionBroker):
    """
    In-process broker that never touches a venue.

    Args:
        feed: Optional market feed; when set, fills use its snapshot price
        slippage_bps: Adverse slippage applied to every fill (default 0)
        clock: Timestamp source for fills
    """

    def __init__(
        self,
        feed: Optional[MarketDataFeed] = None,
        slippage_bps: float = 0.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.feed = feed
        self.slippage_bps = float(slippage_bps)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._fills: Dict[str, Fill] = {}
        self._order_log: List[Decision] = []
        self._lock = threading.Lock()
        logger.info(f"PaperBroker initialized (slippage={self.slippage_bps}bps)")

    def submit(self, decision: Decision) -> Fill:
        with self._lock:
            existing = self._fills.get(decision.idempotency_key)
            if existing is not None:
                logger.info(f"PAPER: duplicate submission {decision.idempotency_key}, returning original fill")
                return existing

            price = self._market_price(decision)
            fill = Fill(
                idempotency_key=decision.idempotency_key,
                symbol=decision.symbol,
                price=self._apply_slippage(price, decision),
                quantity=decision.size,
                order_id=f"paper_{decision.idempotency_key}",
                filled_at=self._clock(),
            )
            self._fills[decision.idempotency_key] = fill
            self._order_log.append(decision)

        logger.info(
            f"PAPER: {decision.action.upper()} {fill.quantity:.6f} {decision.symbol} @ {fill.price:.4f} "
            f"({fill.order_id})"
        )
        return fill

    def _market_price(self, decision: Decision) -> float:
        if self.feed is not None:
            price = self.feed.get_snapshot(decision.symbol).price
        else:
            price = decision.reference_price
        if not price or price <= 0:
            raise ValueError(f"No market price to fill {decision.symbol}")
        return price

    def _apply_slippage(self, price: float, decision: Decision) -> float:
        if not self.slippage_bps:
            return price
        adverse = self.slippage_bps / 10_000
        # close orders cross the opposite way of the position's entry; the
        # decision only says "close", so slippage is applied to buys and sells only
        if decision.action == "buy":
            return price * (1 + adverse)
        if decision.action == "sell":
            return price * (1 - adverse)
        return price

    @property
    def submitted(self) -> List[Decision]:
        """Decisions that produced a new fill, in submission order."""
        with self._lock:
            return list(self._order_log)
