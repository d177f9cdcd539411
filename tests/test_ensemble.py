"""Tests for the family-vote signal ensemble."""

import pytest

from core.sizing import PerformanceTracker
from strategy.base_strategy import StrategySignal
from strategy.ensemble import SignalEnsemble


def sig(name, family, score, confidence, weight=1.0):
    return StrategySignal(strategy=name, family=family, score=score, confidence=confidence, weight=weight)


@pytest.fixture
def ensemble():
    return SignalEnsemble()


def test_no_signals_means_no_trade(ensemble):
    decision = ensemble.combine([])
    assert decision.direction == "none"
    assert decision.resolution == "NONE"
    assert not decision.is_directional


def test_cross_family_disagreement_vetoes(ensemble):
    decision = ensemble.combine([
        sig("momentum", "momentum", 0.9, 0.9),
        sig("mean_reversion", "mean_reversion", -0.8, 0.8),
    ])
    assert decision.resolution == "VETO"
    assert decision.direction == "none"
    assert decision.confidence == 0.0
    assert decision.family_votes == {"momentum": "buy", "mean_reversion": "sell"}


def test_two_families_agreeing_is_consensus(ensemble):
    decision = ensemble.combine([
        sig("momentum", "momentum", 0.6, 0.8),
        sig("mtf", "trend", 1.0, 0.9),
        sig("mean_reversion", "mean_reversion", 0.02, 0.3),  # abstains
    ])
    assert decision.resolution == "CONSENSUS"
    assert decision.direction == "buy"
    assert decision.confidence == pytest.approx(0.85)
    assert set(decision.contributing_models) == {"momentum", "mtf"}


def test_consensus_confidence_is_weighted(ensemble):
    decision = ensemble.combine([
        sig("a", "momentum", -0.6, 0.6, weight=3.0),
        sig("b", "trend", -0.6, 1.0, weight=1.0),
    ])
    assert decision.direction == "sell"
    assert decision.confidence == pytest.approx(0.7)


def test_same_family_votes_once(ensemble):
    decision = ensemble.combine([
        sig("momentum_fast", "momentum", 0.4, 0.55),
        sig("momentum_slow", "momentum", 0.4, 0.55),
    ])
    # One family only and neither model is strong enough to override
    assert decision.resolution == "NONE"


def test_family_members_net_out(ensemble):
    decision = ensemble.combine([
        sig("m1", "momentum", 0.5, 0.9),
        sig("m2", "momentum", -0.5, 0.9),
        sig("trend", "trend", 0.9, 0.9),
    ])
    assert decision.family_votes["momentum"] == "none"
    assert decision.resolution == "OVERRIDE"
    assert decision.direction == "buy"


def test_single_strong_model_overrides_with_penalty(ensemble):
    decision = ensemble.combine([sig("momentum", "momentum", 0.9, 0.7)])
    assert decision.resolution == "OVERRIDE"
    assert decision.direction == "buy"
    assert decision.confidence == pytest.approx(min(0.7 * 0.8, 0.6))
    assert decision.contributing_models == ("momentum",)


def test_override_confidence_is_capped(ensemble):
    decision = ensemble.combine([sig("momentum", "momentum", 0.95, 0.95)])
    assert decision.confidence == pytest.approx(0.6)


def test_weak_single_model_stands_down(ensemble):
    decision = ensemble.combine([sig("momentum", "momentum", 0.4, 0.9)])
    assert decision.resolution == "NONE"


def test_override_must_match_directional_family(ensemble):
    decision = ensemble.combine([
        sig("mr", "mean_reversion", 0.3, 0.5),
        sig("noise", "momentum", 0.05, 0.95),
    ])
    assert decision.resolution == "NONE"


def test_losing_streak_degrades_confidence():
    tracker = PerformanceTracker()
    for pnl in [10] * 10 + [-10] * 10:
        tracker.record(pnl)
    ensemble = SignalEnsemble(tracker=tracker)
    decision = ensemble.combine([
        sig("momentum", "momentum", 0.8, 0.8),
        sig("mtf", "trend", 0.8, 0.8),
    ])
    assert decision.resolution == "CONSENSUS"
    assert decision.confidence == pytest.approx(0.4)
    assert "degraded" in decision.rationale


def test_deep_losing_streak_auto_disables():
    tracker = PerformanceTracker()
    for pnl in [10] * 5 + [-10] * 15:
        tracker.record(pnl)
    ensemble = SignalEnsemble(tracker=tracker)
    decision = ensemble.combine([sig("momentum", "momentum", 0.9, 0.7)])
    assert decision.resolution == "AUTO_DISABLED"
    assert decision.direction == "none"


def test_gate_waits_for_enough_trades():
    tracker = PerformanceTracker()
    for _ in range(5):
        tracker.record(-10)
    ensemble = SignalEnsemble(tracker=tracker)
    decision = ensemble.combine([sig("a", "momentum", 0.8, 0.8), sig("b", "trend", 0.8, 0.8)])
    assert decision.confidence == pytest.approx(0.8)


def test_fingerprint_is_stable_and_distinguishes_direction(ensemble):
    a = ensemble.combine([sig("a", "momentum", 0.8, 0.8), sig("b", "trend", 0.8, 0.8)])
    b = ensemble.combine([sig("a", "momentum", 0.8, 0.8), sig("b", "trend", 0.8, 0.8)])
    c = ensemble.combine([sig("a", "momentum", -0.8, 0.8), sig("b", "trend", -0.8, 0.8)])
    assert a.fingerprint() == b.fingerprint()
    assert a.fingerprint() != c.fingerprint()
