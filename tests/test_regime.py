"""Tests for the volatility/spread regime classifier."""

import dataclasses
import math
from pathlib import Path

import pytest
import yaml

from core.regime import RegimeClassifier
from tests.helpers import crisis_candles, ranging_candles, trending_candles, volatile_candles


@pytest.fixture
def classifier():
    return RegimeClassifier()


def test_trending_band(classifier):
    state = classifier.classify(trending_candles(), spread_bps=5)
    assert state.state == "trending"
    assert 0.005 <= state.volatility < 0.03
    assert state.size_multiplier == 1.0
    assert state.stop_multiplier == 1.0
    assert state.tradeable


def test_ranging_band(classifier):
    state = classifier.classify(ranging_candles(), spread_bps=5)
    assert state.state == "ranging"
    assert state.volatility < 0.005
    assert state.stop_multiplier == 0.75


def test_volatile_band_halves_size_and_widens_stops(classifier):
    state = classifier.classify(volatile_candles(), spread_bps=5)
    assert state.state == "volatile"
    assert state.size_multiplier == 0.5
    assert state.stop_multiplier == 1.5
    assert state.tradeable


def test_crisis_is_never_tradeable(classifier):
    state = classifier.classify(crisis_candles(), spread_bps=5)
    assert state.state == "crisis"
    assert state.size_multiplier == 0.0
    assert not state.tradeable


def test_wide_spread_turns_regime_off(classifier):
    state = classifier.classify(trending_candles(), spread_bps=30)
    assert state.state == "off"
    assert not state.tradeable
    assert "spread" in state.reason


@pytest.mark.parametrize("spread", [None, -1.0, math.nan, math.inf])
def test_missing_spread_fails_closed(classifier, spread):
    assert classifier.classify(trending_candles(), spread_bps=spread).state == "off"


def test_short_history_fails_closed(classifier):
    state = classifier.classify(trending_candles(n=10), spread_bps=5)
    assert state.state == "off"
    assert "insufficient" in state.reason


def test_min_candles_tracks_atr_period():
    assert RegimeClassifier({"atr_period": 20}).min_candles == 21


def test_thresholds_must_be_ordered():
    with pytest.raises(ValueError):
        RegimeClassifier({"ranging_volatility": 0.05, "volatile_volatility": 0.03})


def test_profile_overrides_from_config():
    classifier = RegimeClassifier({"profiles": {"volatile": {"size_multiplier": 0.25}}})
    state = classifier.classify(volatile_candles(), spread_bps=5)
    assert state.size_multiplier == 0.25
    assert state.stop_multiplier == 1.5


def test_confidence_is_bounded(classifier):
    for candles in (trending_candles(), ranging_candles(), volatile_candles(), crisis_candles()):
        state = classifier.classify(candles, spread_bps=5)
        assert 0.0 <= state.confidence <= 1.0


@pytest.mark.parametrize("index, field", [(100, "high"), (150, "low"), (-1, "close")])
def test_non_finite_candle_fails_closed(classifier, index, field):
    candles = trending_candles()
    candles[index] = dataclasses.replace(candles[index], **{field: math.nan})
    state = classifier.classify(candles, spread_bps=5)
    assert state.state == "off"
    assert not state.tradeable
    assert state.size_multiplier == 0.0


def test_zero_last_close_fails_closed(classifier):
    candles = trending_candles()
    candles[-1] = dataclasses.replace(candles[-1], close=0.0)
    assert classifier.classify(candles, spread_bps=5).state == "off"


def test_unquoted_off_profile_key_is_rejected():
    profiles = yaml.safe_load("off: {size_multiplier: 0.0, stop_multiplier: 0.0}")
    with pytest.raises(ValueError, match="quote the key"):
        RegimeClassifier({"profiles": profiles})


def test_shipped_profiles_load():
    policy = yaml.safe_load((Path(__file__).resolve().parents[1] / "config" / "policy.yaml").read_text())
    shipped = RegimeClassifier(policy["regime"])
    assert shipped.profile("off").size_multiplier == 0.0
    assert shipped.profile("volatile").size_multiplier == 0.5
