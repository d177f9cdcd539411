"""
Tests for AlertService dedupe, escalation and webhook delivery.

time.monotonic() is replaced by a settable clock so windows can be crossed
without sleeping.
"""

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import yaml

from infra.alerting import AlertConfig, AlertService, AlertSeverity, AlertType


class MonotonicClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    clock = MonotonicClock()
    with patch("infra.alerting.time.monotonic", clock):
        yield clock


def _service(**overrides):
    cfg = dict(enabled=True, webhook_url=None, min_severity=AlertSeverity.INFO, dry_run=True)
    cfg.update(overrides)
    return AlertService(AlertConfig(**cfg))


def test_identical_alerts_are_deduped_within_window(clock):
    service = _service()
    service.notify(AlertSeverity.WARNING, "Spread wide", "BTC-USD 40bps")
    clock.now = 30.0
    service.notify(AlertSeverity.WARNING, "Spread wide", "BTC-USD 40bps")
    assert len(service.delivered) == 1

    clock.now = 61.0
    service.notify(AlertSeverity.WARNING, "Spread wide", "BTC-USD 40bps")
    assert len(service.delivered) == 2


def test_different_messages_are_not_deduped(clock):
    service = _service()
    service.notify(AlertSeverity.WARNING, "Spread wide", "BTC-USD 40bps")
    service.notify(AlertSeverity.WARNING, "Spread wide", "ETH-USD 40bps")
    assert len(service.delivered) == 2


def test_unresolved_alert_escalates_with_boosted_severity(clock):
    service = _service()
    service.notify(AlertSeverity.WARNING, "Feed stale", "no candles")
    clock.now = 130.0
    service.notify(AlertSeverity.WARNING, "Feed stale", "no candles")

    escalated = service.delivered[-1]
    assert escalated["title"] == "ESCALATED: Feed stale"
    assert escalated["severity"] == "CRITICAL"
    assert "2 occurrences" in escalated["message"]


def test_resolved_alert_does_not_escalate(clock):
    service = _service()
    service.notify(AlertSeverity.WARNING, "Feed stale", "no candles")
    service.resolve_alert(AlertSeverity.WARNING, "Feed stale", "no candles")
    clock.now = 130.0
    service.notify(AlertSeverity.WARNING, "Feed stale", "no candles")
    assert service.delivered[-1]["title"] == "Feed stale"


def test_severity_filter(clock):
    service = _service(min_severity=AlertSeverity.WARNING)
    service.notify(AlertSeverity.INFO, "Opened", "x")
    assert service.delivered == []


def test_disabled_without_transport():
    service = AlertService(AlertConfig(enabled=True, webhook_url=None,
                                       min_severity=AlertSeverity.INFO, dry_run=False))
    assert not service.is_enabled()
    service.notify(AlertSeverity.CRITICAL, "x", "y")
    assert service.delivered == []


def test_alert_carries_type_and_context(clock):
    service = _service()
    service.alert(AlertType.TRADE_OPENED, AlertSeverity.INFO, "Opened long BTC-USD", "1.0 @ 100",
                  position_id="pos_1")
    payload = service.delivered[0]
    assert payload["type"] == "trade_opened"
    assert '"position_id": "pos_1"' in payload["text"]


def test_webhook_post(clock):
    service = _service(dry_run=False, webhook_url="https://hooks.example/alert")
    response = MagicMock(status=200)
    with patch("infra.alerting.urllib.request.urlopen") as urlopen:
        urlopen.return_value.__enter__.return_value = response
        service.alert(AlertType.CIRCUIT_BREAKER_TRIP, AlertSeverity.CRITICAL, "Circuit breaker tripped", "halt")

    request = urlopen.call_args[0][0]
    assert request.full_url == "https://hooks.example/alert"
    body = json.loads(request.data.decode("utf-8"))
    assert body["severity"] == "CRITICAL"
    assert body["type"] == "circuit_breaker_trip"


def test_webhook_errors_are_logged_not_raised(clock):
    import urllib.error

    service = _service(dry_run=False, webhook_url="https://hooks.example/alert")
    with patch("infra.alerting.urllib.request.urlopen", side_effect=urllib.error.URLError("down")):
        service.notify(AlertSeverity.CRITICAL, "x", "y")
    assert len(service.delivered) == 1


def test_from_config_reads_env(monkeypatch):
    monkeypatch.setenv("TEST_ALERT_HOOK", "https://hooks.example/env")
    service = AlertService.from_config({"enabled": True, "webhook_env": "TEST_ALERT_HOOK"})
    assert service.is_enabled()
    assert service._config.webhook_url == "https://hooks.example/env"
    assert service._config.min_severity == AlertSeverity.WARNING


def test_from_config_disabled_by_default():
    assert not AlertService.from_config(None).is_enabled()


def test_shipped_config_delivers_trade_alerts(clock):
    app = yaml.safe_load((Path(__file__).resolve().parents[1] / "config" / "app.yaml").read_text())
    service = AlertService.from_config(dict(app["alerts"], enabled=True, dry_run=True))
    service.alert(AlertType.TRADE_OPENED, AlertSeverity.INFO, "Opened long BTC-USD", "0.5 @ 100")
    service.alert(AlertType.TRADE_CLOSED, AlertSeverity.INFO, "Closed long BTC-USD (take_profit)", "exit 112.5")
    assert [p["type"] for p in service.delivered] == ["trade_opened", "trade_closed"]
