"""Infrastructure modules: alerts, persistence, retries, metrics and paper market data."""

from .alerting import AlertService, AlertSeverity, AlertType  # noqa: F401
from .metrics import MetricsRecorder  # noqa: F401
from .state_store import StateStore  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"AlertType",
	"MetricsRecorder",
	"StateStore",
]
