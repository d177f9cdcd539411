import pytest

from core.execution import PaperBroker
from core.models import MarketSnapshot
from tests.helpers import StubFeed, make_decision, trending_candles


def test_fills_at_reference_price():
    fill = PaperBroker().submit(make_decision(price=101.5, size=2.0))
    assert fill.price == 101.5
    assert fill.quantity == 2.0
    assert fill.order_id == "paper_dec_BTC-USD_buy"


def test_duplicate_submission_returns_original_fill():
    broker = PaperBroker()
    first = broker.submit(make_decision(key="dec_same", price=100.0))
    second = broker.submit(make_decision(key="dec_same", price=120.0))
    assert second is first
    assert len(broker.submitted) == 1


def test_feed_price_takes_precedence():
    feed = StubFeed({"BTC-USD": trending_candles(50)})
    feed.prices["BTC-USD"] = 250.0
    assert PaperBroker(feed=feed).submit(make_decision(price=100.0)).price == 250.0


def test_slippage_is_adverse():
    broker = PaperBroker(slippage_bps=10)
    assert broker.submit(make_decision(key="b", action="buy")).price == pytest.approx(100.1)
    assert broker.submit(make_decision(key="s", action="sell")).price == pytest.approx(99.9)
    assert broker.submit(make_decision(key="c", action="close")).price == pytest.approx(100.0)


def test_no_price_is_an_error():
    with pytest.raises(ValueError):
        PaperBroker().submit(make_decision(price=0.0))


def test_snapshot_model_defaults():
    snapshot = MarketSnapshot(symbol="BTC-USD", price=1.0)
    assert snapshot.spread_bps == 0.0
    assert snapshot.timestamp.tzinfo is not None
