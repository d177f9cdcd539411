"""
Core: Technical indicators

Small pure functions over price lists (oldest first). Each returns the value
for the most recent bar. Callers are responsible for passing enough history;
functions raise InsufficientHistory rather than guessing.
"""

from typing import List, Sequence, Tuple

from core.exceptions import InsufficientHistory


def _require(values: Sequence, n: int, what: str = "prices") -> None:
    if len(values) < n:
        raise InsufficientHistory(required=n, available=len(values), what=what)


def sma(prices: Sequence[float], period: int) -> float:
    _require(prices, period)
    window = prices[-period:]
    return sum(window) / period


def ema_series(prices: Sequence[float], period: int) -> List[float]:
    """EMA seeded with the SMA of the first `period` values."""
    _require(prices, period)
    k = 2.0 / (period + 1)
    seed = sum(prices[:period]) / period
    out = [seed]
    for price in prices[period:]:
        out.append(price * k + out[-1] * (1 - k))
    return out


def ema(prices: Sequence[float], period: int) -> float:
    return ema_series(prices, period)[-1]


def rsi(prices: Sequence[float], period: int = 14) -> float:
    """Wilder RSI. Returns 100 when there were no losses over the window."""
    _require(prices, period + 1)
    gains = 0.0
    losses = 0.0
    for i in range(1, period + 1):
        change = prices[i] - prices[i - 1]
        if change > 0:
            gains += change
        else:
            losses -= change
    avg_gain = gains / period
    avg_loss = losses / period
    for i in range(period + 1, len(prices)):
        change = prices[i] - prices[i - 1]
        avg_gain = (avg_gain * (period - 1) + max(change, 0.0)) / period
        avg_loss = (avg_loss * (period - 1) + max(-change, 0.0)) / period
    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))


def macd(prices: Sequence[float], fast: int = 12, slow: int = 26, signal: int = 9) -> Tuple[float, float, float]:
    """Return (macd_line, signal_line, histogram) for the latest bar."""
    _require(prices, slow + signal)
    fast_series = ema_series(prices, fast)
    slow_series = ema_series(prices, slow)
    # Align: slow series starts (slow - fast) bars later than the fast series
    offset = slow - fast
    line = [f - s for f, s in zip(fast_series[offset:], slow_series)]
    signal_series = ema_series(line, signal)
    macd_line = line[-1]
    signal_line = signal_series[-1]
    return macd_line, signal_line, macd_line - signal_line


def true_ranges(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float]) -> List[float]:
    out = []
    for i in range(1, len(closes)):
        out.append(max(
            highs[i] - lows[i],
            abs(highs[i] - closes[i - 1]),
            abs(lows[i] - closes[i - 1]),
        ))
    return out


def atr(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float], period: int = 14) -> float:
    """Wilder average true range."""
    _require(closes, period + 1)
    trs = true_ranges(highs, lows, closes)
    value = sum(trs[:period]) / period
    for tr in trs[period:]:
        value = (value * (period - 1) + tr) / period
    return value


def adx(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float],
        period: int = 14) -> Tuple[float, float, float]:
    """
    Wilder ADX.

    Returns:
        (adx, plus_di, minus_di) for the latest bar
    """
    _require(closes, 2 * period + 1)
    plus_dm: List[float] = []
    minus_dm: List[float] = []
    for i in range(1, len(closes)):
        up = highs[i] - highs[i - 1]
        down = lows[i - 1] - lows[i]
        plus_dm.append(up if up > down and up > 0 else 0.0)
        minus_dm.append(down if down > up and down > 0 else 0.0)
    trs = true_ranges(highs, lows, closes)

    tr_s = sum(trs[:period])
    plus_s = sum(plus_dm[:period])
    minus_s = sum(minus_dm[:period])
    dxs: List[float] = []
    plus_di = minus_di = 0.0
    for i in range(period, len(trs) + 1):
        if i > period:
            tr_s = tr_s - tr_s / period + trs[i - 1]
            plus_s = plus_s - plus_s / period + plus_dm[i - 1]
            minus_s = minus_s - minus_s / period + minus_dm[i - 1]
        plus_di = 100.0 * plus_s / tr_s if tr_s else 0.0
        minus_di = 100.0 * minus_s / tr_s if tr_s else 0.0
        di_sum = plus_di + minus_di
        dxs.append(100.0 * abs(plus_di - minus_di) / di_sum if di_sum else 0.0)

    value = sum(dxs[:period]) / period
    for dx in dxs[period:]:
        value = (value * (period - 1) + dx) / period
    return value, plus_di, minus_di


def momentum(prices: Sequence[float], lookback: int) -> float:
    """Fractional rate of change over `lookback` bars."""
    _require(prices, lookback + 1)
    base = prices[-lookback - 1]
    if base == 0:
        return 0.0
    return (prices[-1] - base) / base


def normalized_range(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float],
                     period: int) -> float:
    """ATR divided by the latest close: a unitless volatility estimate."""
    value = atr(highs, lows, closes, period)
    last = closes[-1]
    return value / last if last else 0.0
