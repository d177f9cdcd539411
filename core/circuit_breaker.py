"""
Core: Circuit Breaker

Global kill switch. Once tripped:
- the RiskGate denies every new proposal
- every Open/Monitoring position is flattened (close reason emergency_flatten)
- the flag stays set, across restarts, until an explicit reset()

Trip state is persisted through the PersistenceStore. A failed write never
prevents the trip from taking effect in memory; a failed write on reset()
leaves the breaker tripped.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
import logging
import threading

from core.exceptions import PersistenceFailure
from core.interfaces import PersistenceStore
from infra.alerting import AlertService, AlertSeverity, AlertType

logger = logging.getLogger(__name__)

TripListener = Callable[[str], Any]


class CircuitBreaker:
    def __init__(
        self,
        store: Optional[PersistenceStore] = None,
        alert_service: Optional[AlertService] = None,
        metrics=None,
    ):
        self._store = store
        self._alert_service = alert_service
        self._metrics = metrics
        self._lock = threading.Lock()
        self._tripped = False
        self._reason: Optional[str] = None
        self._tripped_at: Optional[datetime] = None
        self._listeners: List[TripListener] = []
        self._restore()

    def _restore(self) -> None:
        if self._store is None:
            return
        saved = self._store.load_breaker_state()
        if saved and saved.get("tripped"):
            self._tripped = True
            self._reason = saved.get("reason")
            tripped_at = saved.get("tripped_at")
            self._tripped_at = datetime.fromisoformat(tripped_at) if tripped_at else None
            logger.critical(f"Circuit breaker restored in TRIPPED state: {self._reason}")
        if self._metrics:
            self._metrics.record_circuit_breaker_state(self._tripped)

    @property
    def tripped(self) -> bool:
        with self._lock:
            return self._tripped

    def is_tripped(self) -> bool:
        return self.tripped

    @property
    def reason(self) -> Optional[str]:
        with self._lock:
            return self._reason

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "tripped": self._tripped,
                "reason": self._reason,
                "tripped_at": self._tripped_at.isoformat() if self._tripped_at else None,
            }

    def add_trip_listener(self, listener: TripListener) -> None:
        """Register a callback run after each trip (e.g. lifecycle flatten_all)."""
        self._listeners.append(listener)

    def trip(self, reason: str) -> List[Any]:
        """
        Set the flag, alert, and run trip listeners.

        Returns:
            Results of each listener (e.g. the flattened positions)
        """
        with self._lock:
            already = self._tripped
            self._tripped = True
            self._reason = reason
            self._tripped_at = datetime.now(timezone.utc)
            state = {
                "tripped": True,
                "reason": reason,
                "tripped_at": self._tripped_at.isoformat(),
            }

        logger.critical(f"CIRCUIT BREAKER TRIPPED: {reason}")
        if self._metrics:
            self._metrics.record_circuit_breaker_trip()

        try:
            if self._store is not None:
                self._store.save_breaker_state(state)
        except PersistenceFailure as exc:
            logger.error(f"Circuit breaker trip not persisted: {exc}")
            if self._alert_service:
                self._alert_service.alert(
                    AlertType.PERSISTENCE_FAILURE, AlertSeverity.CRITICAL,
                    "Circuit breaker state not persisted",
                    f"Trip '{reason}' is active in memory only: {exc}",
                )

        if self._alert_service:
            self._alert_service.alert(
                AlertType.CIRCUIT_BREAKER_TRIP, AlertSeverity.CRITICAL,
                "Circuit breaker tripped",
                f"All new trading halted and open positions flattened: {reason}",
                reason=reason,
                already_tripped=already,
            )

        results = []
        for listener in list(self._listeners):
            try:
                results.append(listener(reason))
            except Exception as exc:
                logger.error(f"Circuit breaker trip listener failed: {exc}", exc_info=True)
        return results

    def reset(self) -> None:
        """
        Clear the flag. Administrative only; never called automatically.

        Raises:
            PersistenceFailure: the cleared state could not be written (breaker stays tripped)
        """
        with self._lock:
            if not self._tripped:
                logger.info("Circuit breaker reset requested but it is not tripped")
                return
            previous = self._reason
            if self._store is not None:
                self._store.save_breaker_state({"tripped": False, "reason": None, "tripped_at": None})
            self._tripped = False
            self._reason = None
            self._tripped_at = None

        logger.warning(f"Circuit breaker RESET (was: {previous})")
        if self._metrics:
            self._metrics.record_circuit_breaker_state(False)
        if self._alert_service:
            self._alert_service.alert(
                AlertType.CIRCUIT_BREAKER_RESET, AlertSeverity.WARNING,
                "Circuit breaker reset",
                f"Trading may resume (previous trip: {previous})",
                previous_reason=previous,
            )
