"""Shared exception types for core trading logic."""

from typing import Optional


class TradingError(RuntimeError):
    """Base class for every failure the decision pipeline knows how to classify."""


class DataUnavailable(TradingError):
    """Raised when required market or account data cannot be fetched safely."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


class InsufficientHistory(TradingError):
    """Raised when a series is shorter than the longest lookback a calculation needs."""

    def __init__(self, required: int, available: int, what: str = "candles"):
        super().__init__(f"need {required} {what}, have {available}")
        self.required = required
        self.available = available


class RiskLimitBreached(TradingError):
    """A proposal was denied by a risk check."""

    def __init__(self, check: str, reason: str):
        super().__init__(reason)
        self.check = check
        self.reason = reason


class ConfirmationExpired(TradingError):
    """A pending live order was confirmed after its TTL."""

    def __init__(self, position_id: str):
        super().__init__(f"confirmation window expired for {position_id}")
        self.position_id = position_id


class InvalidConfirmation(TradingError):
    """Unknown pending position id, wrong state, or token mismatch."""


class PersistenceFailure(TradingError):
    """A state transition could not be written after bounded retries."""

    def __init__(self, message: str, original: Optional[Exception] = None):
        super().__init__(message)
        self.original = original


class ExecutionFailure(TradingError):
    """The execution collaborator failed to place an order."""

    def __init__(self, message: str, original: Optional[Exception] = None):
        super().__init__(message)
        self.original = original


class InvalidTransition(TradingError):
    """Attempted a position state change the lifecycle does not allow."""

    def __init__(self, position_id: str, current: str, target: str):
        super().__init__(f"{position_id}: {current} -> {target} is not a valid transition")
        self.position_id = position_id
        self.current = current
        self.target = target
