"""Tests for fractional-Kelly position sizing."""

import pytest

from core.sizing import PerformanceTracker, PositionSizer, volatility_adjustment


@pytest.fixture
def sizer():
    return PositionSizer({"kelly_fraction": 0.5, "max_position_pct": 15.0, "min_trade_usd": 10})


def test_full_kelly_formula():
    assert PositionSizer.full_kelly(0.6, 2.0) == pytest.approx(0.4)
    assert PositionSizer.full_kelly(0.5, 1.0) == pytest.approx(0.0)
    assert PositionSizer.full_kelly(0.9, 0.0) == 0.0


def test_capped_at_max_position(sizer):
    # p=0.60, b=2.5: full Kelly 0.44, half Kelly 0.22, capped at 15%
    result = sizer.size(balance_usd=10_000, price=100.0, win_probability=0.60, reward_risk=2.5)
    assert result.full_kelly == pytest.approx(0.44)
    assert result.notional_usd == pytest.approx(1_500.0)
    assert result.quantity == pytest.approx(15.0)
    assert result.kelly_fraction == pytest.approx(0.15)
    assert "capped" in result.rationale


def test_uncapped_half_kelly(sizer):
    # p=0.40, b=2.0: full Kelly 0.10, half Kelly 0.05
    result = sizer.size(balance_usd=10_000, price=50.0, win_probability=0.40, reward_risk=2.0)
    assert result.notional_usd == pytest.approx(500.0)
    assert result.quantity == pytest.approx(10.0)


def test_negative_edge_is_zero(sizer):
    result = sizer.size(balance_usd=10_000, price=100.0, win_probability=0.40, reward_risk=1.0)
    assert result.is_zero
    assert result.full_kelly < 0
    assert "no edge" in result.rationale


def test_regime_multiplier_scales_size(sizer):
    full = sizer.size(10_000, 100.0, 0.40, 2.0, regime_multiplier=1.0)
    half = sizer.size(10_000, 100.0, 0.40, 2.0, regime_multiplier=0.5)
    assert half.notional_usd == pytest.approx(full.notional_usd / 2)


def test_zero_regime_multiplier_is_zero(sizer):
    assert sizer.size(10_000, 100.0, 0.70, 3.0, regime_multiplier=0.0).is_zero


def test_below_minimum_trade_is_zero(sizer):
    result = sizer.size(balance_usd=100, price=100.0, win_probability=0.40, reward_risk=2.0)
    assert result.is_zero
    assert "below minimum" in result.rationale


@pytest.mark.parametrize("volatility, expected", [
    (None, 1.0), (0.02, 1.0), (0.04, 0.8), (0.07, 0.5), (0.12, 0.25),
])
def test_volatility_adjustment_tiers(volatility, expected):
    assert volatility_adjustment(volatility) == expected


def test_high_volatility_shrinks_size(sizer):
    calm = sizer.size(10_000, 100.0, 0.40, 2.0, volatility=0.01)
    wild = sizer.size(10_000, 100.0, 0.40, 2.0, volatility=0.10)
    assert wild.notional_usd == pytest.approx(calm.notional_usd * 0.25)


def test_reward_risk_both_sides():
    assert PositionSizer.reward_risk(100, 95, 112.5, "buy") == pytest.approx(2.5)
    assert PositionSizer.reward_risk(100, 105, 87.5, "sell") == pytest.approx(2.5)
    assert PositionSizer.reward_risk(100, 101, 110, "buy") == 0.0


def test_win_probability_uses_confidence_until_history(sizer):
    assert sizer.estimate_win_probability(0.7) == 0.7
    for pnl in [5.0] * 10:
        sizer.record_outcome(pnl)
    # 70% realized win rate weight, 30% confidence
    assert sizer.estimate_win_probability(0.5) == pytest.approx(1.0 * 0.7 + 0.5 * 0.3)


def test_tracker_stats():
    tracker = PerformanceTracker(max_history=3)
    for pnl in (10.0, -5.0, 20.0, -10.0):
        tracker.record(pnl)
    stats = tracker.stats()
    assert stats["total_trades"] == 3
    assert stats["win_rate"] == pytest.approx(1 / 3)
    assert stats["profit_factor"] == pytest.approx(20.0 / 15.0)


@pytest.mark.parametrize("cfg", [{"kelly_fraction": 0}, {"kelly_fraction": 1.5}, {"max_position_pct": 0}])
def test_invalid_config_rejected(cfg):
    with pytest.raises(ValueError):
        PositionSizer(cfg)
