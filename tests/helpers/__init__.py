"""Test helpers for the regime-trader test suite"""

from tests.helpers.builders import (
    FailingBroker,
    MemoryStore,
    StaticLedger,
    StubFeed,
    crisis_candles,
    falling_candles,
    make_candles,
    make_decision,
    ranging_candles,
    trending_candles,
    volatile_candles,
)

__all__ = [
	"FailingBroker",
	"MemoryStore",
	"StaticLedger",
	"StubFeed",
	"crisis_candles",
	"falling_candles",
	"make_candles",
	"make_decision",
	"ranging_candles",
	"trending_candles",
	"volatile_candles",
]
