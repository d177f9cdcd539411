"""
Tests for the position lifecycle: open, confirmation, monitoring, close,
restart recovery and failure handling.
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from core.exceptions import (
    ConfirmationExpired,
    ExecutionFailure,
    InvalidConfirmation,
    InvalidTransition,
    PersistenceFailure,
    RiskLimitBreached,
)
from core.position_manager import PositionLifecycleManager
from core.position_state import CloseReason, Position, PositionState
from tests.helpers import FailingBroker, MemoryStore, make_decision


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def live(store, broker, breaker, alerts, metrics, fast_retry, clock):
    return PositionLifecycleManager(
        store=store,
        broker=broker,
        config={"confirmation_ttl_seconds": 600},
        circuit_breaker=breaker,
        alert_service=alerts,
        metrics=metrics,
        live=True,
        retry_policy=fast_retry,
        sleep=lambda _: None,
        clock=clock,
    )


def _types(alerts):
    return [p["type"] for p in alerts.delivered]


# ─── Paper open ─────────────────────────────────────────────────────────────

def test_paper_open_goes_straight_to_monitoring(lifecycle, store):
    result = lifecycle.open(make_decision())
    position = result.position
    assert result.confirmation_token is None
    assert position.state == PositionState.MONITORING
    assert position.side == "long"
    assert position.entry_price == 100.0
    assert position.order_id == "paper_dec_BTC-USD_buy"
    assert store.states(position.id) == ["proposed", "open", "monitoring"]
    assert lifecycle.has_active_position("BTC-USD")


def test_sell_decision_opens_short(lifecycle):
    position = lifecycle.open(make_decision(action="sell", stop_loss=105.0, take_profit=87.5)).position
    assert position.side == "short"


def test_second_open_for_symbol_is_rejected(lifecycle):
    lifecycle.open(make_decision(key="k1"))
    with pytest.raises(RiskLimitBreached) as exc:
        lifecycle.open(make_decision(key="k2"))
    assert exc.value.check == "active_position"


def test_open_rejected_when_breaker_tripped(lifecycle, breaker):
    breaker.trip("test")
    with pytest.raises(RiskLimitBreached) as exc:
        lifecycle.open(make_decision())
    assert exc.value.check == "circuit_breaker"
    assert lifecycle.positions() == []


def test_open_requires_entry_action_and_price(lifecycle):
    with pytest.raises(ValueError):
        lifecycle.open(make_decision(action="hold"))
    with pytest.raises(ValueError):
        lifecycle.open(make_decision(price=0.0))


def test_concurrent_opens_create_exactly_one_position(lifecycle):
    barrier = threading.Barrier(8)
    outcomes = []

    def attempt(i):
        barrier.wait()
        try:
            outcomes.append(lifecycle.open(make_decision(key=f"k{i}")))
        except RiskLimitBreached as exc:
            outcomes.append(exc)

    threads = [threading.Thread(target=attempt, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    opened = [o for o in outcomes if not isinstance(o, Exception)]
    assert len(opened) == 1
    assert len(lifecycle.positions()) == 1


# ─── Live confirmation ──────────────────────────────────────────────────────

def test_live_open_waits_for_confirmation(live, store, alerts, broker):
    result = live.open(make_decision())
    pending = result.position
    assert pending.state == PositionState.PENDING_CONFIRMATION
    assert result.confirmation_token
    assert pending.confirmation_token_hash != result.confirmation_token
    assert result.confirmation_token not in str(store.positions[pending.id])
    assert broker.submitted == []
    assert "confirmation_required" in _types(alerts)
    assert live.has_active_position("BTC-USD")


def test_confirm_executes_entry(live, broker):
    result = live.open(make_decision())
    position = live.confirm_pending(result.position.id, result.confirmation_token, approve=True)
    assert position.state == PositionState.MONITORING
    assert len(broker.submitted) == 1


def test_reject_cancels(live, broker):
    result = live.open(make_decision())
    position = live.confirm_pending(result.position.id, result.confirmation_token, approve=False)
    assert position.state == PositionState.CANCELLED
    assert position.error == "rejected by operator"
    assert broker.submitted == []
    assert not live.has_active_position("BTC-USD")


def test_wrong_token_is_refused(live):
    result = live.open(make_decision())
    with pytest.raises(InvalidConfirmation):
        live.confirm_pending(result.position.id, "not-the-token", approve=True)
    assert live.get(result.position.id).state == PositionState.PENDING_CONFIRMATION


def test_unknown_position_is_refused(live):
    with pytest.raises(InvalidConfirmation):
        live.confirm_pending("pos_missing", "token", approve=True)


def test_confirmation_after_ttl_expires(live, clock, broker, alerts):
    result = live.open(make_decision())
    clock.now += timedelta(seconds=601)
    with pytest.raises(ConfirmationExpired):
        live.confirm_pending(result.position.id, result.confirmation_token, approve=True)
    assert live.get(result.position.id) is None
    assert broker.submitted == []
    assert "confirmation_expired" in _types(alerts)


def test_reaper_cancels_expired(live, clock, store):
    result = live.open(make_decision())
    assert live.reap_expired() == []
    clock.now += timedelta(seconds=601)
    reaped = live.reap_expired()
    assert [p.id for p in reaped] == [result.position.id]
    assert store.states(result.position.id)[-1] == "cancelled"
    assert not live.has_active_position("BTC-USD")


def test_confirm_after_breaker_trip_cancels(live, breaker, broker):
    result = live.open(make_decision())
    breaker.trip("test")
    position = live.confirm_pending(result.position.id, result.confirmation_token, approve=True)
    assert position.state == PositionState.CANCELLED
    assert broker.submitted == []


# ─── Monitoring ─────────────────────────────────────────────────────────────

def test_trailing_stop_only_ratchets_up_for_longs(lifecycle):
    position = lifecycle.open(make_decision(stop_loss=95.0, take_profit=130.0)).position

    updated = lifecycle.on_price("BTC-USD", 110.0)
    assert updated.stop_loss == pytest.approx(105.0)

    updated = lifecycle.on_price("BTC-USD", 106.0)
    assert updated.stop_loss == pytest.approx(105.0)

    updated = lifecycle.on_price("BTC-USD", 120.0)
    assert updated.stop_loss == pytest.approx(110.0)
    assert updated.initial_stop == 95.0
    assert updated.id == position.id


def test_trailing_stop_only_ratchets_down_for_shorts(lifecycle):
    lifecycle.open(make_decision(action="sell", stop_loss=105.0, take_profit=80.0))
    assert lifecycle.on_price("BTC-USD", 90.0).stop_loss == pytest.approx(95.0)
    assert lifecycle.on_price("BTC-USD", 94.0).stop_loss == pytest.approx(95.0)


def test_price_below_entry_keeps_stop(lifecycle):
    lifecycle.open(make_decision(stop_loss=95.0))
    assert lifecycle.on_price("BTC-USD", 98.0).stop_loss == 95.0


def test_stop_loss_exit(lifecycle, store, alerts):
    position = lifecycle.open(make_decision(stop_loss=95.0)).position
    closed = lifecycle.on_price("BTC-USD", 94.0)
    assert closed.state == PositionState.CLOSED
    assert closed.close_reason == CloseReason.STOP_LOSS.value
    assert closed.exit_price == 94.0
    fees = (100.0 + 94.0) * 1.0 * 10 / 10_000
    assert closed.realized_pnl == pytest.approx(-6.0 - fees)
    assert store.archive[position.id]["state"] == "closed"
    assert not lifecycle.has_active_position("BTC-USD")
    assert "trade_closed" in _types(alerts)


def test_take_profit_exit(lifecycle):
    lifecycle.open(make_decision(take_profit=112.5))
    closed = lifecycle.on_price("BTC-USD", 113.0)
    assert closed.close_reason == "take_profit"
    assert closed.realized_pnl > 0


def test_short_take_profit_exit(lifecycle):
    lifecycle.open(make_decision(action="sell", stop_loss=105.0, take_profit=87.5))
    closed = lifecycle.on_price("BTC-USD", 87.0)
    assert closed.close_reason == "take_profit"
    assert closed.realized_pnl == pytest.approx(13.0 - (100.0 + 87.0) * 10 / 10_000)


def test_trailed_stop_exit_locks_in_profit(lifecycle):
    lifecycle.open(make_decision(stop_loss=95.0, take_profit=130.0))
    lifecycle.on_price("BTC-USD", 120.0)
    closed = lifecycle.on_price("BTC-USD", 109.0)
    assert closed.close_reason == "stop_loss"
    assert closed.realized_pnl > 0


def test_price_for_unmonitored_symbol_is_ignored(lifecycle):
    assert lifecycle.on_price("ETH-USD", 10.0) is None


def test_trailing_update_is_stamped_by_the_manager_clock(store, broker, fast_retry, clock):
    manager = PositionLifecycleManager(store, broker, retry_policy=fast_retry, sleep=lambda _: None, clock=clock)
    manager.open(make_decision(stop_loss=95.0, take_profit=130.0))
    clock.now += timedelta(minutes=5)
    updated = manager.on_price("BTC-USD", 110.0)
    assert updated.updated_at == clock.now


# ─── Close ─────────────────────────────────────────────────────────────────

def test_manual_close(lifecycle):
    position = lifecycle.open(make_decision()).position
    closed = lifecycle.close(position.id, 101.0)
    assert closed.close_reason == "manual"
    with pytest.raises(InvalidTransition):
        lifecycle.close(position.id, 101.0)


def test_close_listeners_receive_closed_position(lifecycle):
    seen = []
    lifecycle.add_close_listener(seen.append)
    lifecycle.add_close_listener(lambda p: 1 / 0)  # a failing listener does not stop the close
    position = lifecycle.open(make_decision()).position
    lifecycle.close(position.id, 105.0)
    assert [p.id for p in seen] == [position.id]


def test_flatten_all_closes_and_cancels(lifecycle, store):
    a = lifecycle.open(make_decision(symbol="BTC-USD")).position
    b = lifecycle.open(make_decision(symbol="ETH-USD")).position
    closed = lifecycle.flatten_all(lambda symbol: {"BTC-USD": 99.0}.get(symbol))
    by_id = {p.id: p for p in closed}
    assert set(by_id) == {a.id, b.id}
    assert by_id[a.id].exit_price == 99.0
    assert by_id[b.id].exit_price == 100.0  # falls back to the last seen price
    assert all(p.close_reason == "emergency_flatten" for p in closed)
    assert lifecycle.active_count() == 0


def test_pending_entries_reserve_exposure(live):
    assert live.reserved_exposure() == (0, 0)
    live.open(make_decision(size=2.0, price=100.0))
    live.open(make_decision(symbol="ETH-USD", size=1.0, price=50.0))
    assert live.reserved_exposure() == (2, pytest.approx(250.0))
    assert live.open_exposure_usd() == 0


def test_flatten_all_cancels_pending(live):
    result = live.open(make_decision())
    assert live.flatten_all() == []
    assert live.get(result.position.id) is None


# ─── Failures ───────────────────────────────────────────────────────────────

def test_entry_failure_marks_failed(store, breaker, alerts, fast_retry):
    manager = PositionLifecycleManager(store, FailingBroker(), circuit_breaker=breaker, alert_service=alerts,
                                       retry_policy=fast_retry, sleep=lambda _: None)
    with pytest.raises(ExecutionFailure):
        manager.open(make_decision())
    failed = list(store.archive.values())
    assert len(failed) == 1
    assert failed[0]["state"] == "failed"
    assert "entry order failed" in failed[0]["error"]
    assert not manager.has_active_position("BTC-USD")
    assert "execution_failure" in _types(alerts)


def test_exit_failure_marks_failed(store, alerts, fast_retry):
    broker = FailingBroker(fail_on=("close",))
    manager = PositionLifecycleManager(store, broker, alert_service=alerts, retry_policy=fast_retry,
                                       sleep=lambda _: None)
    position = manager.open(make_decision()).position
    with pytest.raises(ExecutionFailure):
        manager.close(position.id, 101.0)
    assert store.archive[position.id]["state"] == "failed"


def test_transient_persistence_errors_are_retried(lifecycle, store):
    store.fail_next = 2
    position = lifecycle.open(make_decision()).position
    assert position.state == PositionState.MONITORING


def test_persistence_failure_is_never_silent(lifecycle, store, alerts, metrics):
    store.fail_always = True
    with pytest.raises(PersistenceFailure):
        lifecycle.open(make_decision())
    assert lifecycle.positions() == []
    assert "persistence_failure" in _types(alerts)
    assert metrics.sample("trader_persistence_failures_total") >= 1


def test_failed_write_leaves_memory_unchanged(lifecycle, store):
    lifecycle.open(make_decision(stop_loss=95.0, take_profit=130.0))
    store.fail_always = True
    with pytest.raises(PersistenceFailure):
        lifecycle.on_price("BTC-USD", 110.0)
    assert lifecycle.active_position("BTC-USD").stop_loss == 95.0


# ─── Restart ────────────────────────────────────────────────────────────────

def test_restore_resumes_monitoring(store, broker, fast_retry):
    first = PositionLifecycleManager(store, broker, retry_policy=fast_retry, sleep=lambda _: None)
    position = first.open(make_decision(stop_loss=95.0, take_profit=130.0)).position
    first.on_price("BTC-USD", 110.0)

    second = PositionLifecycleManager(store, broker, retry_policy=fast_retry, sleep=lambda _: None)
    restored = second.restore()
    assert [p.id for p in restored] == [position.id]
    assert restored[0].state == PositionState.MONITORING
    assert restored[0].stop_loss == pytest.approx(105.0)
    assert second.has_active_position("BTC-USD")


def test_restore_moves_open_to_monitoring_and_fails_proposed(broker, fast_retry):
    store = MemoryStore()
    opened = Position(id="pos_open", symbol="BTC-USD", side="long", entry_price=100.0, quantity=1.0,
                      stop_loss=95.0, take_profit=112.5, state=PositionState.OPEN)
    proposed = Position(id="pos_prop", symbol="ETH-USD", side="long", entry_price=10.0, quantity=1.0,
                        stop_loss=9.0, take_profit=12.5)
    store.save_transition(opened)
    store.save_transition(proposed)

    manager = PositionLifecycleManager(store, broker, retry_policy=fast_retry, sleep=lambda _: None)
    restored = manager.restore()
    assert [p.id for p in restored] == ["pos_open"]
    assert manager.get("pos_open").state == PositionState.MONITORING
    assert store.archive["pos_prop"]["state"] == "failed"


def test_restore_keeps_pending_confirmation(live, store, broker, fast_retry, clock):
    result = live.open(make_decision())
    again = PositionLifecycleManager(store, broker, live=True, retry_policy=fast_retry,
                                     sleep=lambda _: None, clock=clock)
    again.restore()
    position = again.confirm_pending(result.position.id, result.confirmation_token, approve=True)
    assert position.state == PositionState.MONITORING
