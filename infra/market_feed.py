"""
CSV replay market data feed for paper runs.

Reads `<data_dir>/<symbol>.csv` with columns
timestamp,open,high,low,close,volume[,spread_bps] (oldest first) and
replays it one bar per advance(). The snapshot is always the bar under the
cursor; get_candles never looks past it.
"""

import csv
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from core.exceptions import DataUnavailable, InsufficientHistory
from core.indicators import normalized_range
from core.interfaces import MarketDataFeed
from core.models import Candle, MarketSnapshot

logger = logging.getLogger(__name__)


def _parse_timestamp(raw: str) -> datetime:
    raw = raw.strip()
    try:
        ts = datetime.fromtimestamp(float(raw), tz=timezone.utc)
    except ValueError:
        ts = datetime.fromisoformat(raw)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def load_candles_csv(path: Path) -> List[Candle]:
    """Parse one OHLCV CSV file into candles sorted by timestamp."""
    candles: List[Candle] = []
    with open(path, "r", newline="") as f:
        reader = csv.DictReader(f)
        for line, row in enumerate(reader, start=2):
            try:
                candles.append(Candle(
                    timestamp=_parse_timestamp(row["timestamp"]),
                    open=float(row["open"]),
                    high=float(row["high"]),
                    low=float(row["low"]),
                    close=float(row["close"]),
                    volume=float(row.get("volume") or 0.0),
                ))
            except (KeyError, ValueError) as exc:
                logger.warning(f"Skipping malformed row {line} in {path}: {exc}")
    candles.sort(key=lambda c: c.timestamp)
    return candles


def load_spreads_csv(path: Path) -> List[Optional[float]]:
    with open(path, "r", newline="") as f:
        reader = csv.DictReader(f)
        if "spread_bps" not in (reader.fieldnames or []):
            return []
        return [float(row["spread_bps"]) if row.get("spread_bps") else None for row in reader]


class CsvReplayFeed(MarketDataFeed):
    """
    Replays local CSV history as if it were live.

    Args:
        data_dir: Directory holding one CSV per symbol
        start_index: Bar the cursor starts on (default: the warmup-th bar, or the last bar)
        default_spread_bps: Spread reported when the file has no spread column
        volatility_period: ATR period for the snapshot volatility
    """

    def __init__(self, data_dir, start_index: Optional[int] = None,
                 default_spread_bps: float = 5.0, volatility_period: int = 14):
        self.data_dir = Path(data_dir)
        self.start_index = start_index
        self.default_spread_bps = float(default_spread_bps)
        self.volatility_period = int(volatility_period)
        self._candles: Dict[str, List[Candle]] = {}
        self._spreads: Dict[str, List[Optional[float]]] = {}
        self._cursor: Dict[str, int] = {}
        self._lock = threading.Lock()
        logger.info(f"CsvReplayFeed initialized: data_dir={self.data_dir}")

    def _series(self, symbol: str) -> List[Candle]:
        with self._lock:
            if symbol in self._candles:
                return self._candles[symbol]
            path = self.data_dir / f"{symbol}.csv"
            if not path.exists():
                raise DataUnavailable(f"no replay file {path}")
            try:
                candles = load_candles_csv(path)
                spreads = load_spreads_csv(path)
            except OSError as exc:
                raise DataUnavailable(f"replay file {path}", exc) from exc
            if not candles:
                raise DataUnavailable(f"replay file {path} has no candles")
            self._candles[symbol] = candles
            self._spreads[symbol] = spreads if len(spreads) == len(candles) else []
            start = self.start_index if self.start_index is not None else len(candles) - 1
            self._cursor[symbol] = max(0, min(start, len(candles) - 1))
            logger.info(f"Loaded {len(candles)} candles for {symbol} from {path}")
            return candles

    def advance(self, symbol: Optional[str] = None) -> bool:
        """
        Move the cursor forward one bar (for one symbol or every loaded one).

        Returns:
            False once every advanced series is exhausted
        """
        symbols = [symbol] if symbol else list(self._candles)
        moved = False
        for sym in symbols:
            candles = self._series(sym)
            with self._lock:
                if self._cursor[sym] < len(candles) - 1:
                    self._cursor[sym] += 1
                    moved = True
        return moved

    def get_snapshot(self, symbol: str) -> MarketSnapshot:
        candles = self._series(symbol)
        with self._lock:
            i = self._cursor[symbol]
            spreads = self._spreads.get(symbol) or []
        bar = candles[i]
        spread = spreads[i] if spreads and spreads[i] is not None else self.default_spread_bps
        return MarketSnapshot(
            symbol=symbol,
            price=bar.close,
            volume=bar.volume,
            spread_bps=spread,
            volatility=self._volatility(candles[:i + 1]),
            timestamp=bar.timestamp or datetime.now(timezone.utc),
        )

    def get_candles(self, symbol: str, n: int) -> Sequence[Candle]:
        candles = self._series(symbol)
        with self._lock:
            i = self._cursor[symbol]
        return candles[max(0, i + 1 - n):i + 1]

    def _volatility(self, window: Sequence[Candle]) -> Optional[float]:
        try:
            return normalized_range(
                [c.high for c in window],
                [c.low for c in window],
                [c.close for c in window],
                self.volatility_period,
            )
        except InsufficientHistory:
            return None
