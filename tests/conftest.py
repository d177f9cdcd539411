"""
Pytest configuration and fixtures for the regime-trader tests.

Every fixture builds fresh collaborators, so no state leaks between tests.
"""
import pytest

from core.circuit_breaker import CircuitBreaker
from core.execution import PaperBroker
from core.position_manager import PositionLifecycleManager
from infra.alerting import AlertConfig, AlertService, AlertSeverity
from infra.metrics import MetricsRecorder
from infra.retry import RetryPolicy
from tests.helpers import MemoryStore


@pytest.fixture
def alerts():
    """Dry-run alert service that keeps every delivered payload."""
    return AlertService(AlertConfig(
        enabled=True,
        webhook_url=None,
        min_severity=AlertSeverity.INFO,
        dry_run=True,
    ))


@pytest.fixture
def metrics():
    return MetricsRecorder(enabled=False)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def breaker(store, alerts, metrics):
    return CircuitBreaker(store=store, alert_service=alerts, metrics=metrics)


@pytest.fixture
def broker():
    return PaperBroker()


@pytest.fixture
def fast_retry():
    return RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0)


@pytest.fixture
def lifecycle(store, broker, breaker, alerts, metrics, fast_retry):
    return PositionLifecycleManager(
        store=store,
        broker=broker,
        circuit_breaker=breaker,
        alert_service=alerts,
        metrics=metrics,
        retry_policy=fast_retry,
        sleep=lambda _: None,
    )

