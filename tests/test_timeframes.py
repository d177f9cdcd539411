"""Tests for multi-timeframe alignment."""

import pytest

from core.exceptions import InsufficientHistory
from core.timeframes import TimeframeAligner, TimeframeSignal, resample
from tests.helpers import falling_candles, make_candles, ranging_candles, trending_candles

FAST = {"resample_factors": {"higher": 4, "medium": 2, "lower": 1}}


def _signal(horizon, direction, confidence=1.0):
    return TimeframeSignal(horizon=horizon, direction=direction, confidence=confidence)


def test_resample_anchors_on_latest_bar():
    candles = make_candles([float(i) for i in range(1, 11)])
    out = resample(candles, 4)
    assert len(out) == 2  # the two oldest bars are dropped
    assert out[-1].close == candles[-1].close
    assert out[-1].open == candles[6].open
    assert out[-1].high == max(c.high for c in candles[6:])
    assert out[-1].volume == sum(c.volume for c in candles[6:])


def test_min_candles_scales_with_largest_factor():
    aligner = TimeframeAligner(FAST)
    assert aligner.min_bars == 35
    assert aligner.min_candles == 140
    assert TimeframeAligner().min_candles == 35 * 16


def test_uptrend_aligns_bullish():
    result = TimeframeAligner(FAST).analyze(trending_candles(200))
    assert result.aligned
    assert result.direction == "bullish"
    assert result.trade_side == "buy"
    assert result.confidence == pytest.approx(0.9)
    assert all(s.direction == "bullish" for s in result.signals.values())


def test_downtrend_aligns_bearish():
    result = TimeframeAligner(FAST).analyze(falling_candles(200))
    assert result.aligned
    assert result.trade_side == "sell"


def test_short_history_is_neutral():
    result = TimeframeAligner(FAST).analyze(trending_candles(100))
    assert not result.aligned
    assert result.direction == "neutral"
    assert "insufficient" in result.reasoning


def test_chop_is_not_aligned():
    result = TimeframeAligner(FAST).analyze(ranging_candles(200))
    assert not result.aligned
    assert result.trade_side is None


def test_two_of_three_is_enough():
    aligner = TimeframeAligner()
    result = aligner.align({
        "higher": _signal("higher", "bullish"),
        "medium": _signal("medium", "bullish"),
        "lower": _signal("lower", "bearish"),
    })
    assert result.aligned
    assert result.direction == "bullish"
    assert result.confidence == pytest.approx(2 / 3 * 0.9, abs=1e-4)


def test_one_direction_and_two_neutral_is_not_aligned():
    result = TimeframeAligner().align({
        "higher": _signal("higher", "bullish"),
        "medium": _signal("medium", "neutral", 0.3),
        "lower": _signal("lower", "neutral", 0.3),
    })
    assert not result.aligned
    assert result.confidence == 0.0


def test_evaluate_horizon_requires_min_bars():
    aligner = TimeframeAligner()
    with pytest.raises(InsufficientHistory):
        aligner.evaluate_horizon("lower", trending_candles(20))


def test_analyze_series_with_separately_sourced_horizons():
    aligner = TimeframeAligner()
    series = {h: trending_candles(60) for h in ("higher", "medium", "lower")}
    result = aligner.analyze_series(series)
    assert result.aligned
    assert result.confidence == pytest.approx(0.9)
