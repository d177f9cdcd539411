import pytest

from core.exceptions import DataUnavailable
from infra.market_feed import CsvReplayFeed, load_candles_csv


def _write_csv(path, rows, spread=False):
    header = "timestamp,open,high,low,close,volume" + (",spread_bps" if spread else "")
    lines = [header]
    for i, close in enumerate(rows):
        line = f"{1704067200 + i * 900},{close},{close * 1.01},{close * 0.99},{close},10"
        if spread:
            line += ",7.5"
        lines.append(line)
    path.write_text("\n".join(lines) + "\n")


def test_load_candles_skips_malformed_rows(tmp_path):
    path = tmp_path / "BTC-USD.csv"
    path.write_text(
        "timestamp,open,high,low,close,volume\n"
        "2024-01-01T00:15:00+00:00,2,3,1,2,5\n"
        "2024-01-01T00:00:00,1,2,0.5,1.5,5\n"
        "garbage,1,2,3,4,5\n"
    )
    candles = load_candles_csv(path)
    assert [c.close for c in candles] == [1.5, 2.0]
    assert all(c.timestamp.tzinfo is not None for c in candles)


def test_replay_never_looks_ahead(tmp_path):
    _write_csv(tmp_path / "BTC-USD.csv", [100.0 + i for i in range(50)])
    feed = CsvReplayFeed(tmp_path, start_index=19)

    assert feed.get_snapshot("BTC-USD").price == 119.0
    candles = feed.get_candles("BTC-USD", 100)
    assert len(candles) == 20
    assert candles[-1].close == 119.0

    assert feed.advance()
    assert feed.get_snapshot("BTC-USD").price == 120.0
    assert len(feed.get_candles("BTC-USD", 5)) == 5


def test_advance_stops_at_end(tmp_path):
    _write_csv(tmp_path / "BTC-USD.csv", [100.0, 101.0, 102.0])
    feed = CsvReplayFeed(tmp_path)
    assert feed.get_snapshot("BTC-USD").price == 102.0
    assert not feed.advance("BTC-USD")


def test_snapshot_volatility_and_spread(tmp_path):
    _write_csv(tmp_path / "ETH-USD.csv", [100.0] * 30, spread=True)
    snapshot = CsvReplayFeed(tmp_path).get_snapshot("ETH-USD")
    assert snapshot.spread_bps == 7.5
    assert snapshot.volatility == pytest.approx(0.02)


def test_default_spread_and_missing_volatility(tmp_path):
    _write_csv(tmp_path / "ETH-USD.csv", [100.0] * 5)
    snapshot = CsvReplayFeed(tmp_path, default_spread_bps=3.0).get_snapshot("ETH-USD")
    assert snapshot.spread_bps == 3.0
    assert snapshot.volatility is None


def test_missing_file_is_data_unavailable(tmp_path):
    with pytest.raises(DataUnavailable):
        CsvReplayFeed(tmp_path).get_snapshot("DOGE-USD")
