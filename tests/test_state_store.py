import json

import pytest

from core.exceptions import PersistenceFailure
from core.position_state import Position, PositionState
from infra.state_store import StateStore


def _position(**overrides):
    data = dict(id="pos_1", symbol="BTC-USD", side="long", entry_price=100.0, quantity=0.5,
                stop_loss=95.0, take_profit=112.5, state=PositionState.MONITORING, idempotency_key="dec_1")
    data.update(overrides)
    return Position(**data)


def test_round_trip_through_disk(tmp_path):
    path = tmp_path / "state.json"
    StateStore(str(path)).save_transition(_position())

    loaded = StateStore(str(path)).load_non_terminal_positions()
    assert len(loaded) == 1
    position = loaded[0]
    assert position.state == PositionState.MONITORING
    assert position.initial_stop == 95.0
    assert position.created_at.tzinfo is not None


def test_terminal_positions_move_to_archive(tmp_path):
    store = StateStore(str(tmp_path / "state.json"))
    open_position = _position()
    store.save_transition(open_position)
    store.save_transition(open_position.transition(PositionState.CLOSED, exit_price=101.0, realized_pnl=0.4))

    assert store.load_non_terminal_positions() == []
    archived = store.load_archive()
    assert [p.state for p in archived] == [PositionState.CLOSED]
    assert store.get_position("pos_1").exit_price == 101.0


def test_file_is_valid_json_without_temp_leftovers(tmp_path):
    path = tmp_path / "state.json"
    store = StateStore(str(path))
    store.save_transition(_position())
    data = json.loads(path.read_text())
    assert "pos_1" in data["positions"]
    assert data["updated_at"]
    assert not list(tmp_path.glob(".state_*.tmp"))


def test_breaker_state_round_trip(tmp_path):
    path = tmp_path / "state.json"
    StateStore(str(path)).save_breaker_state({"tripped": True, "reason": "x", "tripped_at": None})
    assert StateStore(str(path)).load_breaker_state()["reason"] == "x"


def test_missing_file_means_empty_state(tmp_path):
    store = StateStore(str(tmp_path / "nested" / "state.json"))
    assert store.load_non_terminal_positions() == []
    assert store.load_breaker_state() is None


def test_corrupt_file_raises(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{not json")
    with pytest.raises(PersistenceFailure):
        StateStore(str(path)).load()


def test_failed_write_keeps_previous_state(tmp_path, monkeypatch):
    store = StateStore(str(tmp_path / "state.json"))
    store.save_transition(_position())

    def boom(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr("infra.state_store.os.replace", boom)
    with pytest.raises(PersistenceFailure):
        store.save_transition(_position(stop_loss=99.0))
    assert store.get_position("pos_1").stop_loss == 95.0
    assert not list(tmp_path.glob(".state_*.tmp"))


def test_state_file_does_not_grow_with_closed_history(tmp_path):
    path = tmp_path / "state.json"
    store = StateStore(str(path))
    for i in range(20):
        position = _position(id=f"pos_{i}", idempotency_key=f"dec_{i}")
        store.save_transition(position)
        store.save_transition(position.transition(PositionState.CLOSED, exit_price=101.0, realized_pnl=0.4))

    data = json.loads(path.read_text())
    assert data["positions"] == {}
    assert "archive" not in data
    assert len(store.archive_file.read_text().splitlines()) == 20
    assert len(StateStore(str(path)).load_archive()) == 20


def test_embedded_archive_is_moved_to_the_log(tmp_path):
    path = tmp_path / "state.json"
    closed = _position(state=PositionState.CLOSED, exit_price=101.0)
    path.write_text(json.dumps({"positions": {}, "archive": {"pos_1": closed.to_dict()}}))

    store = StateStore(str(path))
    assert store.get_position("pos_1").state == PositionState.CLOSED
    assert [p.id for p in store.load_archive()] == ["pos_1"]


def test_torn_archive_line_is_skipped(tmp_path):
    store = StateStore(str(tmp_path / "state.json"))
    position = _position()
    store.save_transition(position)
    store.save_transition(position.transition(PositionState.CLOSED, exit_price=101.0, realized_pnl=0.4))
    with open(store.archive_file, "a", encoding="utf-8") as f:
        f.write('{"id": "pos_2", "sta')

    assert [p.id for p in store.load_archive()] == ["pos_1"]
